from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokensmith.logging import get_logger
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import RefreshToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        value TEXT NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        user_id UUID NOT NULL,
        CONSTRAINT refresh_token_value_key UNIQUE (value),
        CONSTRAINT refresh_token_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES app_user (id) ON UPDATE CASCADE ON DELETE RESTRICT
    )
    """,
)

_TOKEN_COLUMNS = "id, value, user_id, expires_at, is_revoked, created_at, updated_at"


class PostgresStore:
    """Postgres-backed credential store.

    Each method runs exactly one statement; atomicity of the refresh-token
    claim comes from the conditional ``UPDATE ... RETURNING``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            value=row["value"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            revoked=bool(row["is_revoked"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def count_users_by_username(self, username: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM app_user WHERE username = %s",
                (username,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # Not a UUID, so it cannot name a user
            return None
        return self._user_from_row(row) if row else None

    def create_user(self, username: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, password_hash)
                    VALUES (%s, %s)
                    RETURNING *
                    """,
                    (username, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._user_from_row(row)

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, value: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (value, user_id, expires_at, is_revoked)
                    VALUES (%s, %s, %s, FALSE)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (value, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "value"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return self._token_from_row(row)

    def get_usable_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM refresh_token
                WHERE value = %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (value, now or utcnow()),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def claim_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE refresh_token
                SET is_revoked = TRUE, updated_at = now()
                WHERE value = %s AND is_revoked = FALSE AND expires_at > %s
                RETURNING {_TOKEN_COLUMNS}
                """,
                (value, now or utcnow()),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE refresh_token
                SET is_revoked = TRUE, updated_at = now()
                WHERE value = %s
                RETURNING {_TOKEN_COLUMNS}
                """,
                (value,),
            ).fetchone()
        return self._token_from_row(row) if row else None
