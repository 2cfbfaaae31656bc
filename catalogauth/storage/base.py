from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from catalogauth.storage.models import ApiKey, RefreshTokenRecord, Role, User, UserStatus


@runtime_checkable
class SessionStore(Protocol):
    """Durable record of users, refresh-token digests and API keys.

    Every adapter implements the whole interface. An adapter that cannot offer
    an operation raises ``UnsupportedOperation`` instead of leaving the method
    out, so callers never test for capabilities at runtime.

    Failure contract:
    - ``ConstraintViolation`` for duplicate usernames/emails
    - ``StoreUnavailable`` when the backend cannot be reached or timed out
    """

    # Users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: str = "",
        role: Role = Role.VIEWER,
        status: UserStatus = UserStatus.ACTIVE,
        meta: Optional[dict] = None,
    ) -> User: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def find_user_by_username(self, username: str) -> Optional[User]: ...

    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        meta: Optional[dict] = None,
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> List[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> None: ...

    def change_password_digest(self, user_id: str, password_hash: str) -> bool: ...

    # Refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def find_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_id: str, replacement: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        """Revoke ``token_id`` and persist ``replacement`` as one atomic step.

        Returns False, leaving the store untouched, when the record is already
        revoked, expired or missing. Concurrent calls for the same token id have
        at most one winner.
        """
        ...

    def revoke_refresh_token(self, token_id: str) -> bool: ...

    def revoke_refresh_token_family(self, family_id: str) -> int: ...

    def revoke_all_refresh_tokens_for_user(self, user_id: str) -> int: ...

    # API keys
    def save_api_key(self, key: ApiKey) -> None: ...

    def find_api_key_by_id(self, key_id: str) -> Optional[ApiKey]: ...

    def find_api_key_by_digest(self, key_hash: str) -> Optional[ApiKey]: ...

    def list_api_keys_for_user(self, user_id: str) -> List[ApiKey]: ...

    def touch_api_key(self, key_id: str, at: datetime) -> None: ...

    def revoke_api_key(self, key_id: str) -> bool: ...

    # Housekeeping
    def cleanup_expired(self, now: datetime) -> Dict[str, int]: ...

    def ping(self) -> None:
        """Raise ``StoreUnavailable`` when the backend cannot serve requests."""
        ...


__all__ = ["SessionStore"]
