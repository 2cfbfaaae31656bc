from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from catalogauth.logging import get_logger, sanitize_error_message
from catalogauth.storage.errors import ConstraintViolation, StoreUnavailable
from catalogauth.storage.models import (
    ApiKey,
    RefreshTokenRecord,
    Role,
    User,
    UserStatus,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        full_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'viewer' CHECK (role IN ('viewer', 'editor', 'admin')),
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'suspended', 'disabled')),
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_lower ON app_user (LOWER(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower ON app_user (LOWER(email))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        family_id UUID NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by UUID
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_id ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_family_id ON refresh_token (family_id)",
    """
    CREATE TABLE IF NOT EXISTS api_key (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        key_hash TEXT NOT NULL UNIQUE,
        scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_key_user_id ON api_key (user_id)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for field in ("username", "email", "key_hash"):
        if field in constraint:
            return field
    return "id"


class PostgresStore:
    """Postgres-backed session store built on a psycopg connection pool."""

    def __init__(self, dsn: str, *, timeout: float = 5.0, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
            },
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield a pooled connection; the transaction commits on clean exit.

        Connectivity failures, pool exhaustion and timeouts surface as
        ``StoreUnavailable`` and unique violations as ``ConstraintViolation``.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.OperationalError as exc:
            self.logger.warning(
                "postgres_unavailable",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreUnavailable("session store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            full_name=row.get("full_name") or "",
            role=Role.parse(row.get("role", "viewer")),
            status=UserStatus(row.get("status", "active")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            family_id=str(row["family_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
        )

    @staticmethod
    def _row_to_api_key(row: dict) -> ApiKey:
        scopes = row.get("scopes") or []
        if isinstance(scopes, str):
            scopes = json.loads(scopes)
        return ApiKey(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            description=row.get("description") or "",
            key_hash=row["key_hash"],
            scopes=list(scopes),
            created_at=row["created_at"],
            expires_at=row.get("expires_at"),
            last_used_at=row.get("last_used_at"),
            revoked=bool(row.get("revoked")),
        )

    # -- users -------------------------------------------------------------

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
        user_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, username, email, password_hash, full_name, role, status, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    username,
                    email,
                    password_hash,
                    full_name,
                    Role.parse(role).value,
                    UserStatus(status).value,
                    json.dumps(meta or {}),
                ),
            ).fetchone()
        self.logger.info("user_created", user_id=user_id, username=username)
        return self._row_to_user(row)

    def _find_user(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", (value,)).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._find_user("id = %s", user_id)

    def find_user_by_username(self, username: str) -> Optional[User]:
        return self._find_user("LOWER(username) = LOWER(%s)", username)

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user("LOWER(email) = LOWER(%s)", email)

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
        if not _is_uuid(user_id):
            return None
        assignments: List[str] = []
        params: List[Any] = []
        if email is not None:
            assignments.append("email = %s")
            params.append(email)
        if full_name is not None:
            assignments.append("full_name = %s")
            params.append(full_name)
        if role is not None:
            assignments.append("role = %s")
            params.append(Role.parse(role).value)
        if status is not None:
            assignments.append("status = %s")
            params.append(UserStatus(status).value)
        if meta is not None:
            assignments.append("meta = %s")
            params.append(json.dumps(meta))
        assignments.append("updated_at = now()")
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        # refresh_token and api_key rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            deleted = cur.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def list_users(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> List[User]:
        clauses = ["TRUE"]
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(Role.parse(role).value)
        if status is not None:
            clauses.append("status = %s")
            params.append(UserStatus(status).value)
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {' AND '.join(clauses)} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def change_password_digest(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    # -- refresh tokens ----------------------------------------------------

    def _insert_refresh_token(self, conn: Any, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, family_id, expires_at, created_at, revoked)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.family_id,
                record.expires_at,
                record.created_at,
                record.revoked,
            ),
        )

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._connect() as conn:
            self._insert_refresh_token(conn, record)

    def find_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]:
        if not _is_uuid(token_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def rotate_refresh_token(
        self, token_id: str, replacement: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        # Conditional update: under concurrent rotation only one UPDATE matches
        # the still-active row; the other sees zero rows and inserts nothing.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, replaced_by = %s
                WHERE id = %s AND revoked = FALSE AND expires_at > %s
                RETURNING id
                """,
                (now, replacement.id, token_id, now),
            ).fetchone()
            if not row:
                return False
            self._insert_refresh_token(conn, replacement)
        return True

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = now() "
                "WHERE id = %s AND revoked = FALSE",
                (token_id,),
            )
            return cur.rowcount > 0

    def revoke_refresh_token_family(self, family_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = now() "
                "WHERE family_id = %s AND revoked = FALSE",
                (family_id,),
            )
            return cur.rowcount

    def revoke_all_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = now() "
                "WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount

    # -- api keys ----------------------------------------------------------

    def save_api_key(self, key: ApiKey) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_key (id, user_id, name, description, key_hash, scopes, created_at, expires_at, revoked)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    key.id,
                    key.user_id,
                    key.name,
                    key.description,
                    key.key_hash,
                    json.dumps(list(key.scopes)),
                    key.created_at,
                    key.expires_at,
                    key.revoked,
                ),
            )

    def find_api_key_by_id(self, key_id: str) -> Optional[ApiKey]:
        if not _is_uuid(key_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_key WHERE id = %s", (key_id,)).fetchone()
        return self._row_to_api_key(row) if row else None

    def find_api_key_by_digest(self, key_hash: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key WHERE key_hash = %s", (key_hash,)
            ).fetchone()
        return self._row_to_api_key(row) if row else None

    def list_api_keys_for_user(self, user_id: str) -> List[ApiKey]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_api_key(row) for row in rows]

    def touch_api_key(self, key_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE api_key SET last_used_at = %s WHERE id = %s", (at, key_id))

    def revoke_api_key(self, key_id: str) -> bool:
        if not _is_uuid(key_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE api_key SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (key_id,),
            )
            return cur.rowcount > 0

    # -- housekeeping ------------------------------------------------------

    def cleanup_expired(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            tokens = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
            ).rowcount
            keys = conn.execute(
                "DELETE FROM api_key WHERE revoked = TRUE "
                "OR (expires_at IS NOT NULL AND expires_at <= %s)",
                (now,),
            ).rowcount
        return {"refresh_tokens": tokens, "api_keys": keys}


__all__ = ["PostgresStore"]
