from __future__ import annotations

import uuid
from typing import Any, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fixrx.logging import get_logger
from fixrx.storage.errors import ConstraintViolation
from fixrx.storage.models import (
    UPDATABLE_USER_FIELDS,
    User,
    UserRole,
    UserStatus,
    ensure_has_credential,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL CHECK (role IN ('CONSUMER', 'VENDOR', 'ADMIN')),
    status TEXT NOT NULL DEFAULT 'PENDING_VERIFICATION'
        CHECK (status IN ('PENDING_VERIFICATION', 'ACTIVE', 'SUSPENDED')),
    password_hash TEXT,
    auth0_id TEXT UNIQUE,
    phone TEXT UNIQUE,
    first_name TEXT,
    last_name TEXT,
    avatar TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login_at TIMESTAMPTZ,
    CONSTRAINT users_has_credential CHECK (password_hash IS NOT NULL OR auth0_id IS NOT NULL)
)
"""

# Unique constraint names as generated by Postgres for the table above
_CONSTRAINT_FIELDS = {
    "users_email_key": "email",
    "users_phone_key": "phone",
    "users_auth0_id_key": "auth0_id",
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "email")
    return ConstraintViolation(f"{field} already exists", field=field)


class PostgresStore:
    """Postgres-backed user store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=UserRole(row["role"]),
            status=UserStatus(row["status"]),
            password_hash=row.get("password_hash"),
            auth0_id=row.get("auth0_id"),
            phone=row.get("phone"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar=row.get("avatar"),
            email_verified=bool(row.get("email_verified", False)),
            phone_verified=bool(row.get("phone_verified", False)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        *,
        role: UserRole = UserRole.CONSUMER,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
        password_hash: Optional[str] = None,
        auth0_id: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        ensure_has_credential(password_hash, auth0_id)
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (
                        id, email, role, status, password_hash, auth0_id, phone,
                        first_name, last_name, avatar, email_verified
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        UserRole(role).value,
                        UserStatus(status).value,
                        password_hash,
                        auth0_id,
                        phone,
                        first_name,
                        last_name,
                        avatar,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(user_id)
        except (TypeError, ValueError):
            return None
        return self._fetch_one("SELECT * FROM users WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM users WHERE email = %s", (email.strip().lower(),)
        )

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE phone = %s", (phone,))

    def get_user_by_auth0_id(self, auth0_id: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE auth0_id = %s", (auth0_id,))

    def find_user_by_identity(
        self, *, auth0_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        if auth0_id:
            user = self.get_user_by_auth0_id(auth0_id)
            if user:
                return user
        if email:
            return self.get_user_by_email(email)
        return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder())
            for name in fields
        )
        query = sql.SQL(
            "UPDATE users SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*fields.values(), user_id)).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        except errors.CheckViolation as exc:
            raise ValueError("user requires a password hash or an external identity id") from exc
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            deleted = cur.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted
