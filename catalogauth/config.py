from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from catalogauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/catalog", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/catalogauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI (no background housekeeping).",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_issuer: str = env_field("mdl-api", "JWT_ISSUER")
    jwt_audience: str = env_field("mdl-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    clock_skew_leeway_seconds: int = env_field(
        30,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Grace period applied to access token expiry checks",
    )
    revoke_family_on_reuse: bool = env_field(
        True,
        "REVOKE_FAMILY_ON_REUSE",
        description="Revoke the remaining refresh chain when a revoked token is replayed",
    )

    # Credential policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    api_key_prefix: str = env_field("mdl_", "API_KEY_PREFIX")

    # Store access
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    store_retry_attempts: int = env_field(
        1,
        "STORE_RETRY_ATTEMPTS",
        description="Retries after a transient store failure (0 disables)",
    )
    cleanup_interval_seconds: int = env_field(
        3600,
        "CLEANUP_INTERVAL_SECONDS",
        description="Expired token/key pruning interval; 0 disables the background job",
    )
    default_admin_password: str | None = env_field(
        None,
        "DEFAULT_ADMIN_PASSWORD",
        description="Password scripts/create_admin.py uses when --password is omitted",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("password_min_length")
    @classmethod
    def _min_length_floor(cls, value: int) -> int:
        if value < 4:
            raise ValueError("password_min_length must be at least 4")
        return value

    @model_validator(mode="after")
    def _check_length_bounds(self) -> "Settings":
        if self.password_max_length < self.password_min_length:
            raise ValueError("password_max_length must be >= password_min_length")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/catalogauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
