"""SQLite connection handle (aiosqlite)."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import StaticPool

from .base import (
    COLUMN_NOT_FOUND,
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

_MESSAGE_KEYS = (
    ("unique constraint failed", DUPLICATE_KEY),
    ("foreign key constraint failed", FOREIGN_KEY_VIOLATION),
    ("not null constraint failed", NOT_NULL_VIOLATION),
    ("no such table", TABLE_NOT_FOUND),
    ("no such column", COLUMN_NOT_FOUND),
    ("database is locked", TIMEOUT),
)


class SQLiteHandle(DatabaseHandle):
    """
    SQLite connection handle.

    Suitable for:
    - Development and testing
    - Single-process services

    ``:memory:`` databases share one connection through ``StaticPool`` so
    every statement sees the same data.
    """

    kind = DialectKind.SQLITE

    @property
    def in_memory(self) -> bool:
        url = self.url
        return url.endswith(":memory:") or url.rstrip("/").endswith("sqlite+aiosqlite:")

    def engine_options(self) -> dict[str, Any]:
        connect_args = {"check_same_thread": False, **self._config.connect_args}
        options: dict[str, Any] = {"connect_args": connect_args}
        if self.in_memory:
            options["poolclass"] = StaticPool
        return options

    def configure_engine(self, engine: AsyncEngine) -> None:
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    def describe_error(self, error: BaseException) -> str:
        message = str(driver_error(error)).lower()
        for fragment, key in _MESSAGE_KEYS:
            if fragment in message:
                return key
        return QUERY_ERROR_KEY


__all__ = [
    "SQLiteHandle",
]
