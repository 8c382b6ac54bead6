from __future__ import annotations

import uuid
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokensmith.logging import get_logger
from tokensmith.storage.common import account_from_row
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import Account, normalize_email

_ACCOUNT_COLUMNS = (
    "id, email, password_digest, refresh_digest, refresh_jti, created_at, updated_at"
)


def connection_kwargs(statement_timeout_ms: int) -> dict:
    """Per-connection settings; queries past the server-side timeout are cancelled."""
    return {
        "row_factory": dict_row,
        "autocommit": False,
        "options": f"-c statement_timeout={int(statement_timeout_ms)}",
    }


class PostgresCredentialStore:
    """Postgres-backed credential store.

    The refresh digest and jti live in the same row and are only ever written
    together, so the conditional ``UPDATE`` in ``rotate_refresh_if_matches``
    is the single atomic compare-and-set the rotation relies on.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs=connection_kwargs(statement_timeout_ms),
        )
        self._ensure_account_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_account_table(self) -> None:
        """Create the ``account`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_digest TEXT NOT NULL,
                    refresh_digest TEXT,
                    refresh_jti TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT account_refresh_pair CHECK (
                        (refresh_digest IS NULL) = (refresh_jti IS NULL)
                    )
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def find_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return account_from_row(row) if row else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return account_from_row(row) if row else None

    def create(self, email: str, password_digest: str) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (id, email, password_digest)
                    VALUES (%s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (account_id, normalize_email(email), password_digest),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account_from_row(row)

    def set_refresh_state(self, account_id: str, digest: str, jti: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET refresh_digest = %s, refresh_jti = %s, updated_at = now()
                WHERE id = %s
                """,
                (digest, jti, account_id),
            )

    def clear_refresh_state(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET refresh_digest = NULL, refresh_jti = NULL, updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )

    def rotate_refresh_if_matches(
        self,
        account_id: str,
        expected_digest: str,
        expected_jti: str,
        next_digest: str,
        next_jti: str,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET refresh_digest = %s, refresh_jti = %s, updated_at = now()
                WHERE id = %s AND refresh_digest = %s AND refresh_jti = %s
                """,
                (next_digest, next_jti, account_id, expected_digest, expected_jti),
            )
            return result.rowcount == 1

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [account_from_row(row) for row in rows]
