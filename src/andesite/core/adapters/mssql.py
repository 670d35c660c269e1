"""Microsoft SQL Server connection handle (aioodbc)."""

from __future__ import annotations

import re
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

# SQL Server error number → descriptive key
ERROR_NUMBER_KEYS: dict[int, str] = {
    2627: DUPLICATE_KEY,
    2601: DUPLICATE_KEY,
    547: FOREIGN_KEY_VIOLATION,
    515: NOT_NULL_VIOLATION,
    1205: DEADLOCK,
    8645: TIMEOUT,
    208: TABLE_NOT_FOUND,
    207: COLUMN_NOT_FOUND,
}

_ERROR_NUMBER = re.compile(r"\((\d+)\)")


def error_number(error: BaseException) -> int | None:
    """Extract the SQL Server error number from an ODBC error message."""
    orig = driver_error(error)
    number = getattr(orig, "number", None)
    if isinstance(number, int):
        return number
    for arg in getattr(orig, "args", ()):
        for match in _ERROR_NUMBER.finditer(str(arg)):
            value = int(match.group(1))
            if value in ERROR_NUMBER_KEYS:
                return value
    return None


class MSSQLHandle(DatabaseHandle):
    """
    SQL Server connection handle.

    Requires the ``mssql`` extra (aioodbc) and an installed ODBC driver.
    """

    kind = DialectKind.MSSQL

    def engine_options(self) -> dict[str, Any]:
        return {
            "pool_size": self._config.pool_max,
            "max_overflow": 0,
            "pool_timeout": self._config.pool_timeout,
            "pool_pre_ping": True,
            "connect_args": dict(self._config.connect_args),
        }

    def describe_error(self, error: BaseException) -> str:
        number = error_number(error)
        if number is None:
            return QUERY_ERROR_KEY
        return ERROR_NUMBER_KEYS.get(number, QUERY_ERROR_KEY)


__all__ = [
    "MSSQLHandle",
    "ERROR_NUMBER_KEYS",
    "error_number",
]
