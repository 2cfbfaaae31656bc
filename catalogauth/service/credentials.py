from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from catalogauth.config import Settings
from catalogauth.logging import get_logger
from catalogauth.service.errors import ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_lower: bool = True
    require_upper: bool = True
    require_digit: bool = True
    require_special: bool = True
    special_characters: str = "@$!%*?&"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_special=settings.password_require_special,
        )


@dataclass
class StrengthResult:
    reasons: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.reasons


class CredentialVerifier:
    """Password policy checks plus the argon2id hash/verify primitive.

    Verification cost is the same whether or not the password matches, and
    ``verify_dummy`` lets callers spend that cost for unknown accounts too.
    """

    def __init__(
        self,
        policy: Optional[PasswordPolicy] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.policy = policy or PasswordPolicy()
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_digest = self._hasher.hash("catalogauth-dummy-password")

    def validate_strength(self, password: str) -> StrengthResult:
        policy = self.policy
        result = StrengthResult()
        if len(password) < policy.min_length:
            result.reasons.append(
                f"password must be at least {policy.min_length} characters long"
            )
        if len(password) > policy.max_length:
            result.reasons.append(
                f"password must not exceed {policy.max_length} characters"
            )
        if policy.require_lower and not re.search(r"[a-z]", password):
            result.reasons.append("password must contain at least one lowercase letter")
        if policy.require_upper and not re.search(r"[A-Z]", password):
            result.reasons.append("password must contain at least one uppercase letter")
        if policy.require_digit and not re.search(r"\d", password):
            result.reasons.append("password must contain at least one number")
        if policy.require_special and not any(
            ch in policy.special_characters for ch in password
        ):
            result.reasons.append(
                "password must contain at least one special character "
                f"({policy.special_characters})"
            )
        return result

    def ensure_strong(self, password: str) -> None:
        result = self.validate_strength(password)
        if not result.valid:
            raise ValidationError(
                "password does not meet requirements",
                detail={"reasons": result.reasons},
            )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_digest_unverifiable")
            return False

    def verify_dummy(self, password: str) -> None:
        """Spend one verification so unknown users cost the same as wrong passwords."""
        self.verify(password, self._dummy_digest)

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True
