from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from turnstile.logging import get_logger
from turnstile.storage.common import (
    SecretCipher,
    two_factor_from_row,
    two_factor_to_columns,
)
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import (
    TokenRecord,
    TwoFactorState,
    User,
    UserSummary,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        google_id TEXT UNIQUE,
        avatar TEXT,
        two_factor_status TEXT NOT NULL DEFAULT 'disabled'
            CHECK (two_factor_status IN ('disabled', 'pending', 'enabled')),
        two_factor_secret TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token(user_id)",
    """
    CREATE TABLE IF NOT EXISTS heartbeat (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        last_seen_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS heartbeat_last_seen_idx ON heartbeat(last_seen_at)",
    """
    CREATE TABLE IF NOT EXISTS friend (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        friend_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, friend_id)
    )
    """,
)

_USER_COLUMNS = (
    "id, username, email, password_hash, google_id, avatar, "
    "two_factor_status, two_factor_secret, created_at, updated_at"
)


def _duplicate_user_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    if "google_id" in constraint:
        return ConstraintViolation("google account already linked", {"field": "google_id"})
    for field in ("username", "email"):
        if field in constraint:
            return ConstraintViolation("username or email already in use", {"field": field})
    return ConstraintViolation("duplicate value", {"constraint": constraint or None})


class PostgresStore:
    """Postgres-backed store using psycopg with a bounded connection pool.

    Every statement runs under ``statement_timeout`` and the pool wait is bounded
    by the same timeout, so a stalled database cannot hold request threads.
    """

    def __init__(self, dsn: str, cipher: SecretCipher, *, timeout_seconds: float = 2.0) -> None:
        self.dsn = dsn
        self.cipher = cipher
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            google_id=row.get("google_id"),
            avatar=row.get("avatar"),
            two_factor=two_factor_from_row(
                row.get("two_factor_status"), row.get("two_factor_secret"), self.cipher
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_summary(row: Dict[str, Any]) -> UserSummary:
        return UserSummary(id=str(row["id"]), username=row["username"], avatar=row.get("avatar"))

    # Users -------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, username, email, password_hash, google_id, avatar)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, username, email, password_hash, google_id, avatar),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _duplicate_user_violation(exc) from exc
        return self._row_to_user(row)

    def _fetch_user(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(user_id)
        except (TypeError, ValueError):
            return None
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_user("google_id", google_id)

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user
                    SET username = COALESCE(%s, username),
                        email = COALESCE(%s, email),
                        avatar = COALESCE(%s, avatar),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (username, email, avatar, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _duplicate_user_violation(exc) from exc
        return self._row_to_user(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def set_two_factor(
        self,
        user_id: str,
        state: TwoFactorState,
        *,
        expected: Optional[TwoFactorState] = None,
    ) -> bool:
        """Persist a 2FA state; with ``expected`` only if the stored state still equals it.

        Fernet ciphertexts differ per encryption, so the comparison happens on the
        decrypted row while it is locked.
        """
        status, encrypted = two_factor_to_columns(state, self.cipher)
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT two_factor_status, two_factor_secret FROM app_user "
                "WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                return False
            if expected is not None:
                current = two_factor_from_row(
                    row["two_factor_status"], row["two_factor_secret"], self.cipher
                )
                if current != expected:
                    return False
            conn.execute(
                "UPDATE app_user SET two_factor_status = %s, two_factor_secret = %s, "
                "updated_at = now() WHERE id = %s",
                (status, encrypted, user_id),
            )
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def list_users(self) -> List[UserSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, username, avatar FROM app_user ORDER BY created_at"
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    # Tokens ------------------------------------------------------------------

    def add_token(self, record: TokenRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (token, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.created_at, record.expires_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found", {"field": "user_id"}) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token already exists", {"field": "token"}) from exc

    def get_token_owner(self, token: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM auth_token WHERE token = %s", (token,)
            ).fetchone()
        return str(row["user_id"]) if row else None

    def delete_user_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    # Presence ----------------------------------------------------------------

    def upsert_heartbeat(self, user_id: str, seen_at: datetime) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO heartbeat (user_id, last_seen_at)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET last_seen_at = GREATEST(heartbeat.last_seen_at, EXCLUDED.last_seen_at)
                    """,
                    (user_id, seen_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found", {"field": "user_id"}) from exc

    def list_active_user_ids(self, since: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user_id FROM heartbeat WHERE last_seen_at > %s", (since,)
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # Friends -----------------------------------------------------------------

    def add_friend(self, user_id: str, friend_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO friend (user_id, friend_id) VALUES (%s, %s)",
                    (user_id, friend_id),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "friend already added", {"field": "friend_id", "reason": "duplicate"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found", {"field": "friend_id", "reason": "missing"}
            ) from exc

    def list_friends(self, user_id: str) -> List[UserSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.username, u.avatar
                FROM friend f JOIN app_user u ON u.id = f.friend_id
                WHERE f.user_id = %s
                ORDER BY u.username
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]


__all__ = ["PostgresStore"]
