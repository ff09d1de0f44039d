from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idgate.logging import get_logger
from idgate.storage.common import check_lookup_field, check_update_fields
from idgate.storage.errors import ConstraintViolation, StorageError

_USER_COLUMNS = (
    "id",
    "email",
    "username",
    "password_hash",
    "first_name",
    "last_name",
    "role",
    "status",
    "created_at",
    "updated_at",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email VARCHAR(255) NOT NULL UNIQUE,
    username VARCHAR(50) NOT NULL UNIQUE,
    password_hash VARCHAR(255) NOT NULL,
    first_name VARCHAR(100) NOT NULL DEFAULT '',
    last_name VARCHAR(100) NOT NULL DEFAULT '',
    role VARCHAR(50) NOT NULL DEFAULT 'user',
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_users_status ON users(status);
CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at DESC);
"""


def _valid_id(value: str) -> bool:
    """``users.id`` is a UUID column; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user document store."""

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

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            if constraint.endswith("_pkey"):
                field = "id"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StorageError(
                f"postgres {operation} failed", operation=operation, backend="postgres"
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``users`` table if it is missing."""
        with self._connect("ensure_schema") as conn:
            conn.execute(_SCHEMA)

    @staticmethod
    def _row_to_doc(row: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(row)
        doc["id"] = str(doc["id"])
        return doc

    def find_one(self, field: str, value: str) -> Optional[Dict[str, Any]]:
        column = check_lookup_field(field)
        if column == "id" and not _valid_id(value):
            return None
        with self._connect("find_one") as conn:
            row = conn.execute(
                f"SELECT * FROM users WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_doc(row) if row else None

    def insert_one(self, doc: Dict[str, Any]) -> None:
        values = tuple(doc[column] for column in _USER_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        with self._connect("insert_one") as conn:
            conn.execute(
                f"INSERT INTO users ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders})",
                values,
            )

    def update_one(self, user_id: str, fields: Dict[str, Any]) -> bool:
        check_update_fields(fields)
        if not _valid_id(user_id):
            return False
        if not fields:
            return self.find_one("id", user_id) is not None
        assignments = ", ".join(f"{column} = %s" for column in fields)
        with self._connect("update_one") as conn:
            cur = conn.execute(
                f"UPDATE users SET {assignments} WHERE id = %s",
                (*fields.values(), user_id),
            )
            return cur.rowcount > 0

    def delete_one(self, user_id: str) -> bool:
        if not _valid_id(user_id):
            return False
        with self._connect("delete_one") as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def count_documents(self) -> int:
        with self._connect("count_documents") as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"]) if row else 0

    def find_many(self, offset: int, limit: int) -> List[Dict[str, Any]]:
        with self._connect("find_many") as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_doc(row) for row in rows]

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
