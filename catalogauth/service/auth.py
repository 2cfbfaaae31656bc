from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from catalogauth.config import Settings
from catalogauth.logging import get_logger
from catalogauth.service.credentials import CredentialVerifier
from catalogauth.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    MalformedTokenError,
    NotFoundError,
    ServiceError,
    TransientError,
    ValidationError,
)
from catalogauth.service.guard import Identity
from catalogauth.service.retry import call_with_retry
from catalogauth.service.tokens import IssuedTokens, TokenService
from catalogauth.storage.base import SessionStore
from catalogauth.storage.errors import UnsupportedOperation
from catalogauth.storage.models import RefreshTokenRecord, Role, User, UserStatus

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_LIST_LIMIT = 1000

# One message for unknown user and wrong password so logins cannot enumerate accounts
_INVALID_CREDENTIALS = "invalid username or password"
_INVALID_REFRESH = "invalid or expired refresh token"


@dataclass
class AuthResult:
    user: User
    tokens: IssuedTokens


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "username must be 3-50 characters of letters, digits, '_' or '-'",
            detail={"field": "username"},
        )
    return username


def validate_email(email: str) -> str:
    email = (email or "").strip()
    if len(email) > 254 or not EMAIL_PATTERN.match(email):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return email


class AuthService:
    """Registration, login, refresh rotation and user lifecycle.

    The service owns the session protocol; it holds no mutable state of its
    own, so every correctness guarantee rests on the store (in particular the
    atomic ``rotate_refresh_token``).
    """

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialVerifier,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.settings = settings
        self.logger = logger

    async def _store(self, operation: str, fn, *args, **kwargs):
        # Store drivers and the retry loop block; keep them off the event loop
        return await asyncio.to_thread(
            call_with_retry,
            operation,
            fn,
            *args,
            retries=self.settings.store_retry_attempts,
            **kwargs,
        )

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.credentials.hash, password)

    async def _verify(self, password: str, digest: str) -> bool:
        return await asyncio.to_thread(self.credentials.verify, password, digest)

    # -- registration ------------------------------------------------------

    async def _create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        full_name: str = "",
        role: Role = Role.VIEWER,
        status: UserStatus = UserStatus.ACTIVE,
        meta: Optional[dict] = None,
    ) -> User:
        username = validate_username(username)
        email = validate_email(email)
        self.credentials.ensure_strong(password)

        if await self._store("find_user_by_username", self.store.find_user_by_username, username):
            raise ConflictError("username already exists", detail={"field": "username"})
        if await self._store("find_user_by_email", self.store.find_user_by_email, email):
            raise ConflictError("email already exists", detail={"field": "email"})

        # A concurrent registration can still slip past the checks above; the
        # store's unique constraint turns that into ConflictError via _store.
        password_hash = await self._hash(password)
        return await self._store(
            "create_user",
            self.store.create_user,
            username,
            email,
            password_hash,
            full_name=(full_name or "").strip(),
            role=role,
            status=status,
            meta=meta,
        )

    async def _issue(self, user: User, *, family_id: Optional[str] = None) -> IssuedTokens:
        issued = self.tokens.issue_pair(user, family_id=family_id)
        try:
            await self._store(
                "save_refresh_token", self.store.save_refresh_token, issued.record
            )
        except ConflictError:
            # A retry after a lost acknowledgement finds its own earlier write
            if not await self._committed(issued.record):
                raise
            self.logger.info(
                "refresh_token_save_recovered", refresh_token_id=issued.refresh_token_id
            )
        return issued

    async def _committed(self, record: RefreshTokenRecord) -> bool:
        stored = await self._store(
            "find_refresh_token_by_id", self.store.find_refresh_token_by_id, record.id
        )
        return stored is not None and stored.token_hash == record.token_hash

    async def _rotation_committed(self, token_id: str, replacement: RefreshTokenRecord) -> bool:
        current = await self._store(
            "find_refresh_token_by_id", self.store.find_refresh_token_by_id, token_id
        )
        if current is None or current.replaced_by != replacement.id:
            return False
        return await self._committed(replacement)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        full_name: str = "",
        role: Role = Role.VIEWER,
        actor: Optional[Identity] = None,
    ) -> AuthResult:
        role = Role.parse(role)
        if role > Role.VIEWER and (actor is None or not actor.is_admin):
            raise AuthorizationError("only administrators can assign elevated roles")
        user = await self._create_user(
            username, email, password, full_name=full_name, role=role
        )
        issued = await self._issue(user)
        self.logger.info(
            "user_registered",
            user_id=user.id,
            role=user.role.value,
            created_by=actor.user_id if actor else None,
        )
        return AuthResult(user=user, tokens=issued)

    async def admin_create_user(
        self,
        actor: Identity,
        username: str,
        email: str,
        password: str,
        *,
        full_name: str = "",
        role: Role = Role.VIEWER,
        status: UserStatus = UserStatus.ACTIVE,
        meta: Optional[dict] = None,
    ) -> User:
        if not actor.is_admin:
            raise AuthorizationError("admin access required")
        user = await self._create_user(
            username,
            email,
            password,
            full_name=full_name,
            role=Role.parse(role),
            status=UserStatus(status),
            meta=meta,
        )
        self.logger.info(
            "user_created_by_admin",
            user_id=user.id,
            role=user.role.value,
            status=user.status.value,
            created_by=actor.user_id,
        )
        return user

    # -- login -------------------------------------------------------------

    async def login(self, username: str, password: str) -> AuthResult:
        user = None
        if username:
            user = await self._store(
                "find_user_by_username", self.store.find_user_by_username, username.strip()
            )
        if user is None:
            await asyncio.to_thread(self.credentials.verify_dummy, password or "")
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not await self._verify(password or "", user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.warning(
                "login_rejected_inactive", user_id=user.id, status=user.status.value
            )
            raise AccountInactiveError("account is not active")

        if self.credentials.needs_rehash(user.password_hash):
            try:
                await self._store(
                    "change_password_digest",
                    self.store.change_password_digest,
                    user.id,
                    await self._hash(password),
                )
                self.logger.info("password_rehashed", user_id=user.id)
            except TransientError:
                self.logger.warning("password_rehash_failed", user_id=user.id)

        now = self.tokens.now()
        await self._store("update_last_login", self.store.update_last_login, user.id, now)
        user = replace(user, last_login_at=now)
        issued = await self._issue(user)
        self.logger.info("user_logged_in", user_id=user.id, token_family=issued.family_id)
        return AuthResult(user=user, tokens=issued)

    # -- refresh rotation --------------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, revoking the presented one.

        Every rejection raises the same ``AuthenticationError``; which check
        failed is only logged.
        """
        try:
            token_id, secret = self.tokens.parse_refresh_token(refresh_token)
        except MalformedTokenError:
            self.logger.info("refresh_rejected", reason="malformed")
            raise AuthenticationError(_INVALID_REFRESH)

        record = await self._store(
            "find_refresh_token_by_id", self.store.find_refresh_token_by_id, token_id
        )
        if record is None:
            self.logger.info("refresh_rejected", reason="unknown_token", token_id=token_id)
            raise AuthenticationError(_INVALID_REFRESH)
        if not self.tokens.refresh_digest_matches(secret, record.token_hash):
            self.logger.warning(
                "refresh_rejected", reason="digest_mismatch", token_id=token_id
            )
            raise AuthenticationError(_INVALID_REFRESH)

        if record.revoked:
            revoked_count = 0
            if self.settings.revoke_family_on_reuse:
                revoked_count = await self._store(
                    "revoke_refresh_token_family",
                    self.store.revoke_refresh_token_family,
                    record.family_id,
                )
            self.logger.warning(
                "refresh_token_reuse_detected",
                token_id=token_id,
                user_id=record.user_id,
                token_family=record.family_id,
                revoked_tokens=revoked_count,
            )
            raise AuthenticationError(_INVALID_REFRESH)

        now = self.tokens.now()
        if record.is_expired(now):
            self.logger.info("refresh_rejected", reason="expired", token_id=token_id)
            raise AuthenticationError(_INVALID_REFRESH)

        user = await self._store("find_user_by_id", self.store.find_user_by_id, record.user_id)
        if user is None or not user.is_active:
            self.logger.warning(
                "refresh_rejected", reason="user_unavailable", user_id=record.user_id
            )
            raise AuthenticationError(_INVALID_REFRESH)

        issued = self.tokens.issue_pair(user, family_id=record.family_id)
        try:
            rotated = await self._store(
                "rotate_refresh_token",
                self.store.rotate_refresh_token,
                record.id,
                issued.record,
                now=now,
            )
        except ConflictError:
            rotated = False
        if not rotated and not await self._rotation_committed(record.id, issued.record):
            # Another request rotated the same token between our read and write
            self.logger.warning(
                "refresh_rotation_conflict", token_id=token_id, user_id=user.id
            )
            raise AuthenticationError(_INVALID_REFRESH)

        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            token_id=token_id,
            refresh_token_id=issued.refresh_token_id,
            token_family=record.family_id,
        )
        return AuthResult(user=user, tokens=issued)

    # -- logout & password change -----------------------------------------

    async def logout(self, refresh_token: str, *, user_id: Optional[str] = None) -> None:
        """Revoke one refresh token. Never raises; failures are only logged."""
        try:
            token_id, secret = self.tokens.parse_refresh_token(refresh_token)
        except MalformedTokenError:
            self.logger.info("logout_ignored", reason="malformed")
            return
        try:
            record = await self._store(
                "find_refresh_token_by_id", self.store.find_refresh_token_by_id, token_id
            )
            if record is None:
                self.logger.info("logout_ignored", reason="unknown_token", token_id=token_id)
                return
            if not self.tokens.refresh_digest_matches(secret, record.token_hash):
                self.logger.warning(
                    "logout_ignored", reason="digest_mismatch", token_id=token_id
                )
                return
            if user_id is not None and record.user_id != user_id:
                self.logger.warning(
                    "logout_ignored",
                    reason="not_owner",
                    token_id=token_id,
                    user_id=user_id,
                )
                return
            if record.revoked:
                self.logger.info("logout_ignored", reason="already_revoked", token_id=token_id)
                return
            await self._store("revoke_refresh_token", self.store.revoke_refresh_token, token_id)
            self.logger.info("user_logged_out", user_id=record.user_id, token_id=token_id)
        except ServiceError as exc:
            self.logger.warning(
                "logout_revoke_failed", token_id=token_id, error=exc.message
            )

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every refresh token the user holds.

        Returns the number of refresh tokens revoked. Access tokens already
        issued stay valid until they expire.
        """
        user = await self._store("find_user_by_id", self.store.find_user_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not await self._verify(current_password or "", user.password_hash):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        self.credentials.ensure_strong(new_password)

        await self._store(
            "change_password_digest",
            self.store.change_password_digest,
            user_id,
            await self._hash(new_password),
        )
        revoked = await self._store(
            "revoke_all_refresh_tokens_for_user",
            self.store.revoke_all_refresh_tokens_for_user,
            user_id,
        )
        self.logger.info("password_changed", user_id=user_id, revoked_tokens=revoked)
        return revoked

    # -- user management ---------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        user = await self._store("find_user_by_id", self.store.find_user_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def list_users(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> List[User]:
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_LIST_LIMIT}", detail={"field": "limit"}
            )
        if offset < 0:
            raise ValidationError("offset must not be negative", detail={"field": "offset"})
        return await self._store(
            "list_users",
            self.store.list_users,
            limit=limit,
            offset=offset,
            role=Role.parse(role) if role is not None else None,
            status=UserStatus(status) if status is not None else None,
        )

    async def update_user(
        self,
        user_id: str,
        *,
        actor: Identity,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        meta: Optional[dict] = None,
    ) -> User:
        """Admin update. Role or status changes end all of the user's sessions."""
        if not actor.is_admin:
            raise AuthorizationError("admin access required")
        current = await self.get_user(user_id)
        new_role = Role.parse(role) if role is not None else None
        new_status = UserStatus(status) if status is not None else None
        if email is not None:
            email = validate_email(email)
            existing = await self._store("find_user_by_email", self.store.find_user_by_email, email)
            if existing is not None and existing.id != user_id:
                raise ConflictError("email already exists", detail={"field": "email"})

        updated = await self._store(
            "update_user",
            self.store.update_user,
            user_id,
            email=email,
            full_name=full_name,
            role=new_role,
            status=new_status,
            meta=meta,
        )
        if updated is None:
            raise NotFoundError("user not found")

        privileges_changed = (new_role is not None and new_role != current.role) or (
            new_status is not None and new_status != current.status
        )
        if privileges_changed:
            revoked = await self._store(
                "revoke_all_refresh_tokens_for_user",
                self.store.revoke_all_refresh_tokens_for_user,
                user_id,
            )
            self.logger.info(
                "user_privileges_changed_sessions_revoked",
                user_id=user_id,
                role=updated.role.value,
                status=updated.status.value,
                revoked_tokens=revoked,
                updated_by=actor.user_id,
            )
        else:
            self.logger.info("user_updated", user_id=user_id, updated_by=actor.user_id)
        return updated

    async def delete_user(self, user_id: str, *, actor: Identity) -> None:
        if not actor.is_admin:
            raise AuthorizationError("admin access required")
        if user_id == actor.user_id:
            raise ValidationError("cannot delete your own account")
        if not await self._store("delete_user", self.store.delete_user, user_id):
            raise NotFoundError("user not found")
        self.logger.info("user_deleted", user_id=user_id, deleted_by=actor.user_id)

    # -- housekeeping ------------------------------------------------------

    async def cleanup_expired(self) -> Dict[str, int]:
        """Prune expired refresh tokens and dead API keys; purely advisory."""
        try:
            removed = await self._store(
                "cleanup_expired", self.store.cleanup_expired, self.tokens.now()
            )
        except UnsupportedOperation as exc:
            self.logger.info("cleanup_unsupported", adapter=exc.adapter)
            return {"refresh_tokens": 0, "api_keys": 0}
        self.logger.info("expired_credentials_cleaned", **removed)
        return removed
