from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from catalogauth.config import Settings, get_settings, reset_settings_cache
from catalogauth.logging import get_logger
from catalogauth.service.api_keys import ApiKeyManager
from catalogauth.service.auth import AuthService
from catalogauth.service.credentials import CredentialVerifier, PasswordPolicy
from catalogauth.service.guard import AuthorizationGuard
from catalogauth.service.tokens import TokenService
from catalogauth.storage.memory import MemoryStore
from catalogauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` so it can be logged."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_hasher(settings: Settings) -> PasswordHasher:
    if settings.test_mode:
        # argon2 defaults cost ~50ms per hash; tests hash hundreds of passwords
        return PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)
    return PasswordHasher(type=Type.ID)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Services receive their collaborators explicitly; this is the only place
    that decides which store adapter and which settings they see.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.credentials = CredentialVerifier(
            PasswordPolicy.from_settings(self.settings), _build_hasher(self.settings)
        )
        self.tokens = TokenService(self.settings)
        self.api_keys = ApiKeyManager(self.store, self.settings)
        self.auth = AuthService(self.store, self.credentials, self.tokens, self.settings)
        self.guard = AuthorizationGuard(self.tokens, self.api_keys)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from fresh settings; only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
