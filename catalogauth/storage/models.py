from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Access levels, totally ordered: viewer < editor < admin."""

    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        return value if isinstance(value, cls) else cls(str(value).lower())

    def _cmp_rank(self, other: object) -> Optional[int]:
        if isinstance(other, Role):
            return other.rank
        if isinstance(other, str):
            try:
                return Role(other).rank
            except ValueError:
                return None
        return None

    def __lt__(self, other: object) -> bool:
        rank = self._cmp_rank(other)
        if rank is None:
            return NotImplemented
        return self.rank < rank

    def __le__(self, other: object) -> bool:
        rank = self._cmp_rank(other)
        if rank is None:
            return NotImplemented
        return self.rank <= rank

    def __gt__(self, other: object) -> bool:
        rank = self._cmp_rank(other)
        if rank is None:
            return NotImplemented
        return self.rank > rank

    def __ge__(self, other: object) -> bool:
        rank = self._cmp_rank(other)
        if rank is None:
            return NotImplemented
        return self.rank >= rank


_ROLE_RANK = {Role.VIEWER: 0, Role.EDITOR: 1, Role.ADMIN: 2}


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISABLED = "disabled"


API_KEY_SCOPES = frozenset({
    "metrics:read",
    "metrics:write",
    "domains:read",
    "domains:write",
    "objectives:read",
    "objectives:write",
    "admin",
})


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    full_name: str = ""
    role: Role = Role.VIEWER
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class RefreshTokenRecord:
    """Server-side half of a refresh token; only the digest of the secret is kept."""

    id: str
    user_id: str
    token_hash: str
    family_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    key_hash: str
    scopes: List[str] = field(default_factory=list)
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked: bool = False

    def is_usable(self, now: datetime) -> bool:
        if self.revoked:
            return False
        return self.expires_at is None or self.expires_at > now
