"""Tests for store retry mapping and environment-driven settings."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from catalogauth.config import Settings, get_settings, reset_settings_cache
from catalogauth.service.errors import ConflictError, TransientError
from catalogauth.service.retry import call_with_retry
from catalogauth.storage.errors import ConstraintViolation, StoreUnavailable


class _Flaky:
    def __init__(self, failures, exc=None):
        self.failures = failures
        self.calls = 0
        self.exc = exc or StoreUnavailable("down", operation="op")

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


class TestCallWithRetry:
    def test_success_passes_through(self):
        fn = _Flaky(0)
        assert call_with_retry("op", fn, 42) == 42
        assert fn.calls == 1

    def test_retries_once_by_default(self):
        fn = _Flaky(1)
        assert call_with_retry("op", fn, "ok") == "ok"
        assert fn.calls == 2

    def test_exhausted_retries_raise_transient(self):
        fn = _Flaky(5)
        with pytest.raises(TransientError) as exc_info:
            call_with_retry("find_user", fn, "x", retries=2)
        assert fn.calls == 3
        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == {"operation": "find_user"}

    def test_zero_retries(self):
        fn = _Flaky(1)
        with pytest.raises(TransientError):
            call_with_retry("op", fn, "x", retries=0)
        assert fn.calls == 1

    def test_constraint_violation_becomes_conflict_without_retry(self):
        fn = _Flaky(1, ConstraintViolation("email already exists", {"field": "email"}))
        with pytest.raises(ConflictError) as exc_info:
            call_with_retry("create_user", fn, "x")
        assert fn.calls == 1
        assert exc_info.value.detail == {"field": "email"}

    def test_other_errors_propagate_untouched(self):
        fn = _Flaky(1, KeyError("boom"))
        with pytest.raises(KeyError):
            call_with_retry("op", fn, "x")
        assert fn.calls == 1


class TestSettings:
    def test_from_env_reads_aliases(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REVOKE_FAMILY_ON_REUSE", "false")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.revoke_family_on_reuse is False
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.jwt_issuer == "mdl-api"
        assert settings.jwt_audience == "mdl-client"
        assert settings.api_key_prefix == "mdl_"
        assert settings.revoke_family_on_reuse is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"access_token_ttl_minutes": 0},
            {"refresh_token_ttl_minutes": -1},
            {"password_min_length": 2},
            {"password_min_length": 20, "password_max_length": 10},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, **overrides)

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        assert get_settings() is get_settings()
        assert get_settings().allow_signup is False

        monkeypatch.setenv("ALLOW_SIGNUP", "true")
        reset_settings_cache()
        assert get_settings().allow_signup is True
