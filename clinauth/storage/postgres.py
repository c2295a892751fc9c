from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from clinauth.logging import get_logger
from clinauth.storage.errors import ConstraintViolation, StoreTimeout, StoreUnavailable
from clinauth.storage.models import User

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
    locked_until TIMESTAMPTZ,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email));
"""


class PostgresCredentialStore:
    """User records in Postgres; every call holds a pooled connection only for its own duration."""

    def __init__(
        self,
        dsn: str,
        *,
        operation_timeout: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.operation_timeout = operation_timeout
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(operation_timeout * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        """Borrow a pooled connection; it returns to the pool on every exit path."""
        try:
            with self.pool.connection(timeout=self.operation_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("credential_store_timeout", operation=operation)
            raise StoreTimeout(
                f"credential store timed out during {operation}",
                backend="postgres",
                operation=operation,
            ) from exc
        except errors.QueryCanceled as exc:
            self.logger.error("credential_store_statement_timeout", operation=operation)
            raise StoreTimeout(
                f"credential store timed out during {operation}",
                backend="postgres",
                operation=operation,
            ) from exc
        except errors.OperationalError as exc:
            self.logger.error(
                "credential_store_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(
                f"credential store unavailable during {operation}",
                backend="postgres",
                operation=operation,
            ) from exc

    def ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            conn.execute(_SCHEMA)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            failed_login_attempts=row.get("failed_login_attempts", 0) or 0,
            locked_until=row.get("locked_until"),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at"),
        )

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, password_hash, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email.strip(),)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_lock_state(
        self,
        user_id: str,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> None:
        with self._connect("update_lock_state") as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = %s,
                    locked_until = %s,
                    last_login_at = COALESCE(%s, last_login_at)
                WHERE id = %s
                """,
                (failed_login_attempts, locked_until, last_login_at, user_id),
            )

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        # Right-hand sides see the pre-update row, so both columns agree on the new count
        with self._connect("record_failed_login") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN (CASE
                                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                                ELSE failed_login_attempts + 1
                            END) >= %(threshold)s THEN %(lock_until)s
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                        ELSE locked_until
                    END
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "user_id": user_id,
                },
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect("update_password") as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect("update_user_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def set_active(self, user_id: str, is_active: bool) -> None:
        with self._connect("set_active") as conn:
            conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s",
                (is_active, user_id),
            )

    def close(self) -> None:
        self.pool.close()
