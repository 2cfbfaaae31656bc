from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from catalogauth.logging import get_correlation_id
from catalogauth.storage.models import API_KEY_SCOPES, ApiKey, Role, User, UserStatus

# Upper bound on any password we are willing to hash; policy limits are enforced
# by CredentialVerifier so every violated rule is reported together.
MAX_PASSWORD_INPUT = 1024


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must be 3-50 characters of letters, digits, underscores or hyphens"
        )
    return value


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    full_name: str = Field(default="", max_length=200)
    # anything above viewer requires an admin caller
    role: Role = Role.VIEWER

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    scopes: List[str] = Field(..., min_length=1, max_length=len(API_KEY_SCOPES))
    expires_at: Optional[datetime] = None


class AdminCreateUserRequest(BaseModel):
    username: str
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    full_name: str = Field(default="", max_length=200)
    role: Role = Role.VIEWER
    status: UserStatus = UserStatus.ACTIVE

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class UserUpdateRequest(BaseModel):
    email: Optional[str] = None
    full_name: Optional[str] = Field(default=None, max_length=200)
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    meta: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    full_name: str = ""
    role: Role
    status: UserStatus
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None
    meta: Optional[dict] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            status=user.status,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
            meta=user.meta,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class UserListResponse(BaseModel):
    items: List[UserResponse]
    count: int
    limit: int
    offset: int


class ApiKeyResponse(BaseModel):
    """API key metadata; the digest is never exposed."""

    id: str
    user_id: str
    name: str
    description: str = ""
    scopes: List[str]
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked: bool = False

    @classmethod
    def from_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            user_id=key.user_id,
            name=key.name,
            description=key.description,
            scopes=list(key.scopes),
            created_at=key.created_at,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
            revoked=key.revoked,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    api_key: str
