from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from catalogauth.config import Settings
from catalogauth.logging import get_logger
from catalogauth.service.errors import (
    BadSignatureError,
    MalformedTokenError,
    TokenExpiredError,
)
from catalogauth.storage.models import RefreshTokenRecord, Role, User, utcnow

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]*\Z")


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    username: str
    email: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    family_id: str
    token_id: str
    key_id: str


@dataclass
class IssuedTokens:
    """A freshly minted access/refresh pair.

    ``refresh_token`` is what the client stores (``<token_id>.<secret>``);
    ``record`` is what the store keeps, which holds only the secret's digest.
    """

    access_token: str
    refresh_token: str
    refresh_token_id: str
    family_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    record: RefreshTokenRecord
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return int((self.access_expires_at - self.record.created_at).total_seconds())

    def as_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenService:
    """Stateless issuance and verification of access tokens plus opaque refresh secrets.

    Nothing here touches the store: verification of an access token is a pure
    function of (token, verification keys, clock).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        verification_keys: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.key_id = settings.jwt_key_id
        self._signing_key = settings.jwt_secret.encode()
        # kid -> secret; extra keys are accepted for verification only
        keys: Dict[str, bytes] = {
            kid: secret.encode() for kid, secret in (verification_keys or {}).items()
        }
        keys[self.key_id] = self._signing_key
        self._verification_keys = keys
        self._clock = clock or utcnow
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def now(self) -> datetime:
        return self._clock()

    # -- encoding helpers --------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        digest = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": self.key_id}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self._signing_key)}"

    # -- issuance ----------------------------------------------------------

    def issue_pair(self, user: User, *, family_id: Optional[str] = None) -> IssuedTokens:
        """Mint an access token and a new refresh secret for ``user``.

        A login starts a new token family; rotation passes the parent's
        ``family_id`` so the chain can be revoked as a unit.
        """
        now = self.now().replace(microsecond=0)
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        family = family_id or str(uuid.uuid4())
        refresh_id = str(uuid.uuid4())
        # 256 bits of entropy
        secret = secrets.token_urlsafe(32)

        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "email": user.email,
            "role": Role.parse(user.role).value,
            "fid": family,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_exp.timestamp()),
        }
        record = RefreshTokenRecord(
            id=refresh_id,
            user_id=user.id,
            token_hash=self.digest_refresh_secret(secret),
            family_id=family,
            expires_at=refresh_exp,
            created_at=now,
        )
        return IssuedTokens(
            access_token=self._encode_jwt(payload),
            refresh_token=f"{refresh_id}.{secret}",
            refresh_token_id=refresh_id,
            family_id=family,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            record=record,
        )

    # -- verification ------------------------------------------------------

    def verify_access(self, token: str) -> AccessTokenClaims:
        """Verify signature, issuer, audience and expiry; return the claims.

        Raises:
            MalformedTokenError: token is not a decodable three-part JWT
            BadSignatureError: signature, algorithm, key id, issuer or audience mismatch
            TokenExpiredError: ``exp`` has passed (beyond the clock-skew leeway)
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            # json.JSONDecodeError, binascii.Error and UnicodeDecodeError are ValueErrors
            raise MalformedTokenError("malformed token")
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise MalformedTokenError("malformed token")

        # Pin the algorithm to block alg-confusion ("none", RS256 with an HMAC key)
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise BadSignatureError("invalid token signature")
        key = self._verification_keys.get(header.get("kid") or self.key_id)
        if key is None:
            logger.warning("jwt_unknown_key_id", kid=header.get("kid"))
            raise BadSignatureError("invalid token signature")
        if not _SEGMENT_RE.match(sig_b64):
            raise BadSignatureError("invalid token signature")
        expected = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise BadSignatureError("invalid token signature")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise BadSignatureError("invalid token issuer")
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if self.settings.jwt_audience not in audiences:
            raise BadSignatureError("invalid token audience")

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
            role = Role.parse(payload["role"])
            claims = AccessTokenClaims(
                user_id=str(payload["sub"]),
                username=str(payload.get("username", "")),
                email=str(payload.get("email", "")),
                role=role,
                issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
                family_id=str(payload.get("fid", "")),
                token_id=str(payload.get("jti", "")),
                key_id=str(header.get("kid") or self.key_id),
            )
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("malformed token")

        if claims.expires_at <= self.now() - self._leeway:
            raise TokenExpiredError("access token expired")
        return claims

    # -- refresh secrets ---------------------------------------------------

    @staticmethod
    def digest_refresh_secret(secret: str) -> str:
        """Fast deterministic digest used only for equality checks against the store."""
        return hashlib.sha256(secret.encode()).hexdigest()

    @staticmethod
    def parse_refresh_token(raw: str) -> Tuple[str, str]:
        """Split a presented ``<token_id>.<secret>`` value.

        Raises:
            MalformedTokenError: the value does not have both parts
        """
        if not raw or not isinstance(raw, str):
            raise MalformedTokenError("invalid refresh token")
        token_id, sep, secret = raw.strip().partition(".")
        if not sep or not token_id or not secret:
            raise MalformedTokenError("invalid refresh token")
        try:
            uuid.UUID(token_id)
        except ValueError:
            raise MalformedTokenError("invalid refresh token")
        return token_id, secret

    @staticmethod
    def refresh_digest_matches(secret: str, digest: str) -> bool:
        return hmac.compare_digest(TokenService.digest_refresh_secret(secret), digest)
