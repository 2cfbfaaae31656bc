from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from catalogauth.config import Settings
from catalogauth.logging import get_logger
from catalogauth.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from catalogauth.service.guard import Identity
from catalogauth.service.retry import call_with_retry
from catalogauth.storage.base import SessionStore
from catalogauth.storage.models import API_KEY_SCOPES, ApiKey, utcnow

logger = get_logger(__name__)


@dataclass
class CreatedApiKey:
    """The only place the raw key ever appears."""

    raw_key: str
    record: ApiKey


class ApiKeyManager:
    """Issue, verify and revoke long-lived API keys; only digests are stored."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.prefix = settings.api_key_prefix
        self._clock = clock or utcnow
        self.logger = logger

    def _store(self, operation: str, fn, *args, **kwargs):
        return call_with_retry(
            operation, fn, *args, retries=self.settings.store_retry_attempts, **kwargs
        )

    @staticmethod
    def digest(raw_key: str) -> str:
        return hashlib.sha256(raw_key.encode()).hexdigest()

    def _generate(self) -> str:
        return f"{self.prefix}{secrets.token_hex(32)}"

    @staticmethod
    def _normalize_scopes(scopes: Iterable[str]) -> List[str]:
        normalized = sorted({scope.strip() for scope in scopes if scope and scope.strip()})
        if not normalized:
            raise ValidationError("at least one scope is required", detail={"field": "scopes"})
        unknown = [scope for scope in normalized if scope not in API_KEY_SCOPES]
        if unknown:
            raise ValidationError(
                "unknown api key scope",
                detail={"field": "scopes", "unknown": unknown, "allowed": sorted(API_KEY_SCOPES)},
            )
        return normalized

    def create(
        self,
        user_id: str,
        name: str,
        scopes: Iterable[str],
        *,
        description: str = "",
        expires_at: Optional[datetime] = None,
    ) -> CreatedApiKey:
        name = (name or "").strip()
        if not name:
            raise ValidationError("api key name is required", detail={"field": "name"})
        normalized = self._normalize_scopes(scopes)
        now = self._clock()
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                raise ValidationError(
                    "expires_at must be in the future", detail={"field": "expires_at"}
                )
        if not self._store("find_user_by_id", self.store.find_user_by_id, user_id):
            raise NotFoundError("user not found")

        raw_key = self._generate()
        record = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            description=description or "",
            key_hash=self.digest(raw_key),
            scopes=normalized,
            created_at=now,
            expires_at=expires_at,
        )
        self._store("save_api_key", self.store.save_api_key, record)
        self.logger.info(
            "api_key_created", user_id=user_id, key_id=record.id, scopes=normalized
        )
        return CreatedApiKey(raw_key=raw_key, record=record)

    def verify(self, raw_key: str) -> Identity:
        """Resolve a presented key to its owner's identity.

        Raises:
            AuthenticationError: unknown, revoked or expired key, or inactive owner
        """
        if not raw_key or not raw_key.startswith(self.prefix):
            raise AuthenticationError("invalid api key")
        now = self._clock()
        record = self._store(
            "find_api_key_by_digest", self.store.find_api_key_by_digest, self.digest(raw_key)
        )
        if record is None:
            raise AuthenticationError("invalid api key")
        if not record.is_usable(now):
            self.logger.info(
                "api_key_unusable", key_id=record.id, revoked=record.revoked
            )
            raise AuthenticationError("invalid api key")
        owner = self._store("find_user_by_id", self.store.find_user_by_id, record.user_id)
        if owner is None or not owner.is_active:
            raise AuthenticationError("invalid api key")

        # last_used_at is advisory; a failed write must not fail the request
        try:
            self._store("touch_api_key", self.store.touch_api_key, record.id, now)
        except TransientError:
            self.logger.warning("api_key_touch_failed", key_id=record.id)

        return Identity(
            user_id=owner.id,
            username=owner.username,
            email=owner.email,
            role=owner.role,
            method="api_key",
            scopes=frozenset(record.scopes),
            key_id=record.id,
        )

    def revoke(self, key_id: str, requester: Identity) -> ApiKey:
        record = self._store("find_api_key_by_id", self.store.find_api_key_by_id, key_id)
        if record is None:
            raise NotFoundError("api key not found")
        if record.user_id != requester.user_id and not requester.is_admin:
            self.logger.warning(
                "api_key_revoke_denied", key_id=key_id, requester_id=requester.user_id
            )
            raise AuthorizationError("cannot revoke another user's api key")
        self._store("revoke_api_key", self.store.revoke_api_key, key_id)
        record.revoked = True
        self.logger.info("api_key_revoked", key_id=key_id, revoked_by=requester.user_id)
        return record

    def list_for_user(self, user_id: str) -> List[ApiKey]:
        return self._store(
            "list_api_keys_for_user", self.store.list_api_keys_for_user, user_id
        )
