from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from marketsphere.logging import get_logger
from marketsphere.storage.errors import ConstraintViolation
from marketsphere.storage.models import User

_USER_COLUMNS = (
    "id, email, name, role, password_hash, is_verified, is_suspended, refresh_token, "
    "google_id, avatar, last_login, last_active, login_count, created_at"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    password_hash TEXT,
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_suspended BOOLEAN NOT NULL DEFAULT FALSE,
    refresh_token TEXT,
    google_id TEXT UNIQUE,
    avatar TEXT,
    last_login TIMESTAMPTZ,
    last_active TIMESTAMPTZ,
    login_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        role=row.get("role", "user"),
        password_hash=row.get("password_hash"),
        is_verified=bool(row.get("is_verified", False)),
        is_suspended=bool(row.get("is_suspended", False)),
        refresh_token=row.get("refresh_token"),
        google_id=row.get("google_id"),
        avatar=row.get("avatar"),
        last_login=row.get("last_login"),
        last_active=row.get("last_active"),
        login_count=int(row.get("login_count") or 0),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


class PostgresUserStore:
    """Postgres-backed user records.

    Each public method runs in one pooled connection; the pool commits on a
    clean exit and rolls back when the block raises.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
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

    def _fetch_one(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _user_from_row(row) if row else None

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, name, role, password_hash, is_verified, google_id, avatar)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        email.strip().lower(),
                        name,
                        role,
                        password_hash,
                        is_verified,
                        google_id,
                        avatar,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
            (email.strip().lower(),),
        )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE google_id = %s", (google_id,)
        )

    def record_login(self, user_id: str, *, refresh_token: str) -> Optional[User]:
        return self._fetch_one(
            f"""
            UPDATE app_user
            SET refresh_token = %s,
                last_login = now(),
                last_active = now(),
                login_count = login_count + 1,
                updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (refresh_token, user_id),
        )

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool:
        # Conditional update: a concurrent rotation that landed first makes this a no-op
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET refresh_token = %s, last_active = now(), updated_at = now()
                WHERE id = %s AND refresh_token = %s
                RETURNING id
                """,
                (new, user_id, expected),
            ).fetchone()
        return row is not None

    def clear_refresh_token(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET refresh_token = NULL, updated_at = now() WHERE id = %s RETURNING id",
                (user_id,),
            ).fetchone()
        return row is not None

    def set_suspended(self, user_id: str, suspended: bool) -> Optional[User]:
        return self._fetch_one(
            f"""
            UPDATE app_user
            SET is_suspended = %s,
                refresh_token = CASE WHEN %s THEN NULL ELSE refresh_token END,
                updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (suspended, suspended, user_id),
        )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._fetch_one(
            f"UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
            (role, user_id),
        )

    def mark_verified(self, user_id: str) -> Optional[User]:
        return self._fetch_one(
            f"UPDATE app_user SET is_verified = TRUE, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
            (user_id,),
        )

    def find_or_create_oauth_user(
        self,
        *,
        email: str,
        google_id: str,
        password_hash: str,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Match by email, then Google subject id, else insert; in one transaction.

        A transaction-scoped advisory lock on the email serializes concurrent
        first logins for the same address, so only one of them inserts.
        """
        normalized = email.strip().lower()
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (normalized,))
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s FOR UPDATE",
                (normalized,),
            ).fetchone()
            if not row:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE google_id = %s FOR UPDATE",
                    (google_id,),
                ).fetchone()
            if row:
                updated = conn.execute(
                    f"""
                    UPDATE app_user
                    SET google_id = COALESCE(google_id, %s),
                        avatar = COALESCE(avatar, %s),
                        is_verified = TRUE,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (google_id, avatar, row["id"]),
                ).fetchone()
                return _user_from_row(updated), False
            created = conn.execute(
                f"""
                INSERT INTO app_user (id, email, name, password_hash, is_verified, google_id, avatar)
                VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (str(uuid.uuid4()), normalized, name, password_hash, google_id, avatar),
            ).fetchone()
        self.logger.info("oauth_user_created", user_id=str(created["id"]))
        return _user_from_row(created), True

    def close(self) -> None:
        self.pool.close()
