from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from catalogauth.logging import get_logger
from catalogauth.storage.errors import ConstraintViolation, StoreUnavailable
from catalogauth.storage.models import (
    ApiKey,
    RefreshTokenRecord,
    Role,
    User,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-memory session store with JSON file persistence.

    Suitable for development, tests and single-process deployments. All reads
    and writes go through one re-entrant lock, which also makes refresh-token
    rotation a single atomic step.
    """

    def __init__(self, fs_root: str = "/tmp/catalogauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- users -------------------------------------------------------------

    def _user_by_field(self, attr: str, value: str) -> Optional[User]:
        needle = value.lower()
        return next(
            (u for u in self.users.values() if getattr(u, attr).lower() == needle),
            None,
        )

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
    ) -> User:
        with self._data_lock:
            if self._user_by_field("username", username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self._user_by_field("email", email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                role=Role.parse(role),
                status=UserStatus(status),
                created_at=now,
                updated_at=now,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            self.logger.info("user_created", user_id=user.id, username=username)
            return replace(user)

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_field("username", username)
            return replace(user) if user else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_field("email", email)
            return replace(user) if user else None

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        meta: Optional[dict] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                existing = self._user_by_field("email", email)
                if existing and existing.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            if full_name is not None:
                user.full_name = full_name
            if role is not None:
                user.role = Role.parse(role)
            if status is not None:
                user.status = UserStatus(status)
            if meta is not None:
                user.meta = dict(meta)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.refresh_tokens = {
                tid: rec for tid, rec in self.refresh_tokens.items() if rec.user_id != user_id
            }
            self.api_keys = {
                kid: key for kid, key in self.api_keys.items() if key.user_id != user_id
            }
            self._persist_state()
            self.logger.info("user_deleted", user_id=user_id)
            return True

    def list_users(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> List[User]:
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if (role is None or u.role == role) and (status is None or u.status == status)
            ]
            results.sort(key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[offset : offset + limit]]

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            self._persist_state()

    def change_password_digest(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return True

    # -- refresh tokens ----------------------------------------------------

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id already exists", {"field": "id"})
            self.refresh_tokens[record.id] = replace(record)
            self._persist_state()

    def find_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, token_id: str, replacement: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or not current.is_active(now):
                return False
            if replacement.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id already exists", {"field": "id"})
            current.revoked = True
            current.revoked_at = now
            current.replaced_by = replacement.id
            self.refresh_tokens[replacement.id] = replace(replacement)
            self._persist_state()
            return True

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def _revoke_where(self, predicate) -> int:
        now = utcnow()
        count = 0
        for record in self.refresh_tokens.values():
            if not record.revoked and predicate(record):
                record.revoked = True
                record.revoked_at = now
                count += 1
        if count:
            self._persist_state()
        return count

    def revoke_refresh_token_family(self, family_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda rec: rec.family_id == family_id)

    def revoke_all_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda rec: rec.user_id == user_id)

    # -- api keys ----------------------------------------------------------

    def save_api_key(self, key: ApiKey) -> None:
        with self._data_lock:
            if key.id in self.api_keys:
                raise ConstraintViolation("api key id already exists", {"field": "id"})
            if any(existing.key_hash == key.key_hash for existing in self.api_keys.values()):
                raise ConstraintViolation("api key digest already exists", {"field": "key_hash"})
            self.api_keys[key.id] = replace(key, scopes=list(key.scopes))
            self._persist_state()

    def find_api_key_by_id(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            return replace(key, scopes=list(key.scopes)) if key else None

    def find_api_key_by_digest(self, key_hash: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = next((k for k in self.api_keys.values() if k.key_hash == key_hash), None)
            return replace(key, scopes=list(key.scopes)) if key else None

    def list_api_keys_for_user(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            keys = [k for k in self.api_keys.values() if k.user_id == user_id]
            keys.sort(key=lambda k: k.created_at, reverse=True)
            return [replace(k, scopes=list(k.scopes)) for k in keys]

    def touch_api_key(self, key_id: str, at: datetime) -> None:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if not key:
                return
            key.last_used_at = at
            self._persist_state()

    def revoke_api_key(self, key_id: str) -> bool:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None or key.revoked:
                return False
            key.revoked = True
            self._persist_state()
            return True

    # -- housekeeping ------------------------------------------------------

    def cleanup_expired(self, now: datetime) -> Dict[str, int]:
        """Drop expired refresh records and dead API keys.

        Revoked refresh records are kept until they expire so a replayed token
        is still recognised as reuse rather than as an unknown id.
        """
        with self._data_lock:
            tokens_before = len(self.refresh_tokens)
            self.refresh_tokens = {
                tid: rec for tid, rec in self.refresh_tokens.items() if not rec.is_expired(now)
            }
            keys_before = len(self.api_keys)
            self.api_keys = {
                kid: key for kid, key in self.api_keys.items() if key.is_usable(now)
            }
            removed = {
                "refresh_tokens": tokens_before - len(self.refresh_tokens),
                "api_keys": keys_before - len(self.api_keys),
            }
            if removed["refresh_tokens"] or removed["api_keys"]:
                self._persist_state()
            return removed

    def ping(self) -> None:
        with self._data_lock:
            if self.persist and not self.fs_root.is_dir():
                raise StoreUnavailable("state directory missing", operation="ping")

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            # Write to a temp file then replace; readers never see a partial state file
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".auth_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                os.fchmod(handle.fileno(), 0o600)
                handle.write(json.dumps(state, indent=2))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, str(path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except rather than exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            # Refuse to start rather than overwrite accounts with an empty store
            self.logger.error("auth_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(
                f"auth store state file {path} is unreadable; restore or remove it"
            ) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.api_keys = {
            k["id"]: self._deserialize_api_key(k) for k in data.get("api_keys", [])
        }
        self.logger.info(
            "auth_store_state_loaded",
            path=str(path),
            users=len(self.users),
            refresh_records=len(self.refresh_tokens),
            api_keys=len(self.api_keys),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "full_name": user.full_name,
            "role": user.role.value,
            "status": user.status.value,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            full_name=data.get("full_name", ""),
            role=Role.parse(data.get("role", "viewer")),
            status=UserStatus(data.get("status", "active")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            meta=data.get("meta"),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "family_id": record.family_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by": record.replaced_by,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            family_id=data.get("family_id") or data["id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )

    def _serialize_api_key(self, key: ApiKey) -> dict:
        return {
            "id": key.id,
            "user_id": key.user_id,
            "name": key.name,
            "description": key.description,
            "key_hash": key.key_hash,
            "scopes": list(key.scopes),
            "created_at": self._serialize_datetime(key.created_at),
            "expires_at": self._serialize_datetime(key.expires_at),
            "last_used_at": self._serialize_datetime(key.last_used_at),
            "revoked": key.revoked,
        }

    def _deserialize_api_key(self, data: dict) -> ApiKey:
        return ApiKey(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description", ""),
            key_hash=data["key_hash"],
            scopes=list(data.get("scopes", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            revoked=bool(data.get("revoked", False)),
        )


__all__ = ["MemoryStore"]
