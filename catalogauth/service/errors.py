from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or weak input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Access token is past its expiry."""
    pass


class MalformedTokenError(AuthenticationError):
    """Token could not be parsed."""
    pass


class BadSignatureError(AuthenticationError):
    """Token signature, key id, issuer or audience did not verify."""
    pass


class AccountInactiveError(AuthenticationError):
    """Correct credentials for a suspended or disabled account (403).

    Only raised after the password verified, so it never reveals whether an
    account exists.
    """
    status_code = 403
    error_code = "forbidden"


class AuthorizationError(ServiceError):
    """Valid identity with insufficient privilege (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique field (409)."""
    status_code = 409
    error_code = "conflict"


class TransientError(ServiceError):
    """Store unavailable after retries were exhausted (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "MalformedTokenError",
    "BadSignatureError",
    "AccountInactiveError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "TransientError",
    "ServerError",
]
