from __future__ import annotations

from datetime import datetime
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authsvc.logging import get_logger
from authsvc.storage.common import normalize_email, user_from_record
from authsvc.storage.errors import ConstraintViolation
from authsvc.storage.models import RevocationEntry, User, utcnow


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_digest TEXT,
        first_name TEXT,
        last_name TEXT,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        account_tier TEXT NOT NULL DEFAULT 'STANDARD',
        identity_provider TEXT NOT NULL DEFAULT 'LOCAL',
        external_provider_id TEXT,
        profile_picture_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token_id TEXT PRIMARY KEY,
        subject_email TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_at_idx ON revoked_token (expires_at)",
]

_USER_COLUMNS = (
    "id, email, password_digest, first_name, last_name, enabled, account_tier, "
    "identity_provider, external_provider_id, profile_picture_url, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed user directory and token denylist."""

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
        """Create the user and revocation tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def find_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return user_from_record(row) if row else None

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return row is not None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return user_from_record(row) if row else None

    def save(self, user: User) -> User:
        """Insert or update ``user`` keyed by id; the email column is unique."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user ({_USER_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (id) DO UPDATE SET
                        email = EXCLUDED.email,
                        password_digest = EXCLUDED.password_digest,
                        first_name = EXCLUDED.first_name,
                        last_name = EXCLUDED.last_name,
                        enabled = EXCLUDED.enabled,
                        account_tier = EXCLUDED.account_tier,
                        identity_provider = EXCLUDED.identity_provider,
                        external_provider_id = EXCLUDED.external_provider_id,
                        profile_picture_url = EXCLUDED.profile_picture_url,
                        updated_at = now()
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.id,
                        normalize_email(user.email),
                        user.password_digest,
                        user.first_name,
                        user.last_name,
                        user.enabled,
                        user.account_tier.value,
                        user.identity_provider.value,
                        user.external_provider_id,
                        user.profile_picture_url,
                        user.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_from_record(row)

    # revocations
    def insert_revocation(self, entry: RevocationEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_token (token_id, subject_email, expires_at, revoked_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (token_id) DO NOTHING
                """,
                (entry.token_id, entry.subject_email, entry.expires_at, entry.revoked_at),
            )

    def revocation_exists(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_token WHERE token_id = %s AND expires_at > now()",
                (token_id,),
            ).fetchone()
        return row is not None

    def purge_expired_revocations(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_token WHERE expires_at <= %s", (cutoff,)
            )
            removed = cur.rowcount or 0
        if removed:
            self.logger.debug("revocations_purged", count=removed)
        return removed
