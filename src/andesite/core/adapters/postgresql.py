"""PostgreSQL connection handle (asyncpg)."""

from __future__ import annotations

from typing import Any

from .base import (
    COLUMN_NOT_FOUND,
    DEADLOCK,
    DUPLICATE_KEY,
    FOREIGN_KEY_VIOLATION,
    NOT_NULL_VIOLATION,
    QUERY_ERROR_KEY,
    TABLE_NOT_FOUND,
    TIMEOUT,
    DatabaseHandle,
    driver_error,
)
from .types import DialectKind

# SQLSTATE → descriptive key
SQLSTATE_KEYS: dict[str, str] = {
    "23505": DUPLICATE_KEY,
    "23503": FOREIGN_KEY_VIOLATION,
    "23502": NOT_NULL_VIOLATION,
    "40P01": DEADLOCK,
    "57014": TIMEOUT,
    "42P01": TABLE_NOT_FOUND,
    "42703": COLUMN_NOT_FOUND,
}


class PostgreSQLHandle(DatabaseHandle):
    """
    PostgreSQL connection handle.

    Uses asyncpg through SQLAlchemy's async engine. The pool holds up to
    ``pool_max`` connections with no overflow.
    """

    kind = DialectKind.POSTGRES

    def engine_options(self) -> dict[str, Any]:
        return {
            "pool_size": self._config.pool_max,
            "max_overflow": 0,
            "pool_timeout": self._config.pool_timeout,
            "pool_pre_ping": True,
            "connect_args": dict(self._config.connect_args),
        }

    def describe_error(self, error: BaseException) -> str:
        orig = driver_error(error)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate is None:
            cause = getattr(orig, "__cause__", None)
            sqlstate = getattr(cause, "sqlstate", None)
        return SQLSTATE_KEYS.get(str(sqlstate), QUERY_ERROR_KEY)


__all__ = [
    "PostgreSQLHandle",
    "SQLSTATE_KEYS",
]
