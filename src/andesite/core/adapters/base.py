"""Connection handle base class.

Manifesto:
    Every dialect shares the same lifecycle (connect/disconnect), the same
    transaction scope and the same schema reflection. The abstract base
    holds all of that so the registry and the repository never depend on
    a specific database vendor; a dialect subclass only contributes engine
    options and error translation.

Features:
    - ``connect()`` creates a pooled ``AsyncEngine``, pings it and reflects the schema
    - ``disconnect()`` disposes the pool and forgets reflected tables
    - ``transaction()`` async context manager yielding an ``AsyncConnection``
    - ``get_table()`` / ``get_repository()`` over reflected metadata
    - ``events`` channel for statement-level ``query`` events
    - ``describe_error()`` maps driver errors to descriptive keys

Tags:
    andesite-core, database, abstract-base, adapter-pattern, sqlalchemy-async

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, ClassVar

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from andesite.core.errors import DatabaseConnectionError, DatabaseNotConnected, TableNotFound
from andesite.core.events import EventChannel
from andesite.core.logging import get_logger
from andesite.core.schema import PrimaryKey, TableSchema

from .types import DatabaseConfig, DialectKind

if TYPE_CHECKING:
    from andesite.core.repository import Repository

log = get_logger(__name__)

QUERY_ERROR_KEY = "error.infrastructure.database.query_error"
DUPLICATE_KEY = "error.infrastructure.database.duplicate_key"
FOREIGN_KEY_VIOLATION = "error.infrastructure.database.foreign_key_violation"
NOT_NULL_VIOLATION = "error.infrastructure.database.not_null_violation"
DEADLOCK = "error.infrastructure.database.deadlock"
TIMEOUT = "error.infrastructure.database.timeout"
TABLE_NOT_FOUND = "error.infrastructure.database.table_not_found"
COLUMN_NOT_FOUND = "error.infrastructure.database.column_not_found"


class DatabaseHandle(ABC):
    """
    Reusable reference to one database connection pool.

    A handle is created by the registry in the not-connected state and only
    talks to the database after ``connect()``.
    """

    kind: ClassVar[DialectKind]

    def __init__(self, name: str, config: DatabaseConfig):
        self._name = name
        self._config = config
        self._engine: AsyncEngine | None = None
        self._metadata = sa.MetaData()
        self._tables: dict[str, TableSchema] = {}
        self._channels: dict[str, EventChannel] = {}
        self._reflect_lock = asyncio.Lock()
        self.events = EventChannel(source=name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        """Whether the pool is open."""
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        """The live engine. Raises DatabaseNotConnected before ``connect()``."""
        if self._engine is None:
            raise DatabaseNotConnected(self._name)
        return self._engine

    @property
    def url(self) -> str:
        return self._config.to_url(self.kind)

    @abstractmethod
    def engine_options(self) -> dict[str, Any]:
        """Keyword arguments for ``create_async_engine``."""
        ...

    def describe_error(self, error: BaseException) -> str:
        """Descriptive key for a driver error. Dialects refine this."""
        return QUERY_ERROR_KEY

    def create_engine(self) -> AsyncEngine:
        return create_async_engine(self.url, echo=self._config.echo, **self.engine_options())

    def configure_engine(self, engine: AsyncEngine) -> None:
        """Hook for dialect-specific engine listeners."""

    async def connect(self) -> None:
        """Open the pool, check it with ``SELECT 1`` and reflect the schema.

        Connecting an already connected handle is a no-op.
        """
        if self._engine is not None:
            return

        engine = self.create_engine()
        self.configure_engine(engine)
        try:
            async with engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
                await conn.run_sync(self._metadata.reflect)
        except (SQLAlchemyError, OSError) as e:
            await engine.dispose()
            log.error("database_connect_failed", database=self._name, dialect=self.kind.value, error=str(e))
            raise DatabaseConnectionError(
                f"Failed to connect to {self.kind.value} database {self._name}: {e}",
                context={"database": self._name, "dialect": self.kind.value},
                cause=e,
            ) from e

        self._engine = engine
        log.info(
            "database_connected",
            database=self._name,
            dialect=self.kind.value,
            tables=len(self._metadata.tables),
        )

    async def disconnect(self) -> None:
        """Dispose the pool. Raises DatabaseNotConnected if never connected."""
        if self._engine is None:
            raise DatabaseNotConnected(self._name)
        engine, self._engine = self._engine, None
        await engine.dispose()
        self._metadata.clear()
        self._tables.clear()
        log.info("database_disconnected", database=self._name)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Yield a connection inside a transaction, committed on success.

        Pass the yielded connection as ``QueryOptions.transaction`` to make
        repository calls participate in it.
        """
        async with self.engine.begin() as conn:
            yield conn

    # ── Schema ───────────────────────────────────────────────────────────

    async def reflect(self) -> None:
        """Reflect tables created since the last reflection."""
        async with self._reflect_lock:
            async with self.engine.connect() as conn:
                await conn.run_sync(self._metadata.reflect)

    def table_names(self) -> list[str]:
        """Names of the reflected tables."""
        if self._engine is None:
            raise DatabaseNotConnected(self._name)
        return sorted(self._metadata.tables)

    async def get_table(
        self,
        name: str,
        primary_key: PrimaryKey | Sequence[Any] | str | None = None,
    ) -> TableSchema:
        """Return the reflected schema for ``name``.

        An unknown name triggers one re-reflection before TableNotFound.
        """
        schema = self._tables.get(name)
        if schema is None:
            if name not in self._metadata.tables:
                await self.reflect()
            table = self._metadata.tables.get(name)
            if table is None:
                raise TableNotFound(
                    f"Table not found: {name}",
                    context={"database": self._name, "table": name},
                )
            schema = self._tables.setdefault(name, TableSchema.from_table(table, database=self._name))
        if primary_key is not None:
            return schema.with_primary_key(primary_key)
        return schema

    def table_events(self, table_name: str) -> EventChannel:
        """Event channel for one table of this connection."""
        channel = self._channels.get(table_name)
        if channel is None:
            channel = self._channels.setdefault(table_name, EventChannel(source=f"{self._name}.{table_name}"))
        return channel

    def get_repository(
        self,
        table_name: str,
        primary_key: PrimaryKey | Sequence[Any] | str | None = None,
        **kwargs: Any,
    ) -> Repository[Any]:
        from andesite.core.repository import Repository

        return Repository(self, table_name, primary_key, **kwargs)

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "registered"
        return f"{self.__class__.__name__}(name={self._name!r}, {state})"


def driver_error(error: BaseException) -> BaseException:
    """Unwrap SQLAlchemy's DBAPIError to the driver exception."""
    return getattr(error, "orig", None) or error


__all__ = [
    "DatabaseHandle",
    "driver_error",
    "QUERY_ERROR_KEY",
    "DUPLICATE_KEY",
    "FOREIGN_KEY_VIOLATION",
    "NOT_NULL_VIOLATION",
    "DEADLOCK",
    "TIMEOUT",
    "TABLE_NOT_FOUND",
    "COLUMN_NOT_FOUND",
]
