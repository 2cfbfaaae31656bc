from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, FrozenSet, Optional

from catalogauth.logging import get_logger
from catalogauth.service.errors import AuthenticationError, AuthorizationError
from catalogauth.service.tokens import AccessTokenClaims, TokenService
from catalogauth.storage.models import Role

if TYPE_CHECKING:
    from catalogauth.service.api_keys import ApiKeyManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """Resolved caller for one request."""

    user_id: str
    username: str
    email: str
    role: Role
    method: str  # "bearer" or "api_key"
    # None means unrestricted (bearer tokens); API keys carry their scope set
    scopes: Optional[FrozenSet[str]] = None
    family_id: Optional[str] = None
    key_id: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: AccessTokenClaims) -> "Identity":
        return cls(
            user_id=claims.user_id,
            username=claims.username,
            email=claims.email,
            role=claims.role,
            method="bearer",
            family_id=claims.family_id,
        )

    @property
    def is_admin(self) -> bool:
        return self.role >= Role.ADMIN

    def has_scope(self, scope: str) -> bool:
        if self.scopes is None:
            return True
        return scope in self.scopes or "admin" in self.scopes


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthorizationGuard:
    """Per-request gate: resolves credentials to an Identity and enforces policy.

    Failures are coarse. Every authentication problem (missing
    header, bad signature, expired token, unknown key) surfaces as the same
    ``AuthenticationError`` message; the precise reason only goes to the log.
    """

    def __init__(self, tokens: TokenService, api_keys: "ApiKeyManager") -> None:
        self.tokens = tokens
        self.api_keys = api_keys
        self.logger = logger

    def authenticate(
        self, authorization: Optional[str], api_key: Optional[str] = None
    ) -> Identity:
        token = extract_bearer(authorization)
        if token:
            try:
                return Identity.from_claims(self.tokens.verify_access(token))
            except AuthenticationError as exc:
                self.logger.info(
                    "access_token_rejected", reason=type(exc).__name__
                )
                raise AuthenticationError("authentication required") from exc
        if api_key:
            try:
                return self.api_keys.verify(api_key)
            except AuthenticationError as exc:
                self.logger.info("api_key_rejected", reason=exc.message)
                raise AuthenticationError("authentication required") from exc
        raise AuthenticationError("authentication required")

    def require_role(
        self,
        min_role: Role,
        *,
        authorization: Optional[str],
        api_key: Optional[str] = None,
    ) -> Identity:
        identity = self.authenticate(authorization, api_key)
        self.check_role(identity, min_role)
        return identity

    def check_role(self, identity: Identity, min_role: Role) -> None:
        if not identity.role >= Role.parse(min_role):
            self.logger.warning(
                "authorization_failed",
                user_id=identity.user_id,
                role=identity.role.value,
                required_role=Role.parse(min_role).value,
            )
            raise AuthorizationError(
                f"access denied; requires role {Role.parse(min_role).value}"
            )

    def require_owner_or_admin(self, identity: Identity, owner_id: Optional[str]) -> Identity:
        if identity.is_admin or (owner_id is not None and identity.user_id == owner_id):
            return identity
        self.logger.warning(
            "ownership_authorization_failed",
            user_id=identity.user_id,
            resource_user_id=owner_id,
        )
        raise AuthorizationError("access denied; you can only access your own resources")

    def require_scope(self, identity: Identity, scope: str) -> Identity:
        if identity.has_scope(scope):
            return identity
        self.logger.warning(
            "scope_authorization_failed", user_id=identity.user_id, scope=scope
        )
        raise AuthorizationError(f"access denied; requires scope {scope}")

    def optional_authenticate(
        self, authorization: Optional[str], api_key: Optional[str] = None
    ) -> Optional[Identity]:
        """Resolve an identity when valid credentials are present; never fails."""
        if not extract_bearer(authorization) and not api_key:
            return None
        try:
            return self.authenticate(authorization, api_key)
        except AuthenticationError:
            return None
