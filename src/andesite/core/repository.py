"""
Generic table repository - typed CRUD over one borrowed connection.

A ``Repository`` is bound to ``(handle, table, primary key)`` and holds no
other state, so it is cheap to build per call site and safe to share between
concurrent callers. Every operation compiles its search through
``FilterCompiler``, runs exactly one statement (or one per insert batch) and
emits a table event before returning.

Manifesto:
    - **One intent, one statement:** no hidden reads before writes
    - **Caller-owned transactions:** ``options.transaction`` is used as-is, never committed
    - **Loud failures:** driver errors become DatabaseQueryError with the cause attached
    - **Guarded deletes:** an empty search never reaches the database

Architecture:
    ::

        repo.find(search, options)
            │
            ├─ QueryOptions.coerce(options)
            ├─ schema = await handle.get_table(table)
            ├─ FilterCompiler(schema).compile(search, options)
            ├─ select(columns).where(...).order_by(...).limit().offset()
            ├─ _run()  ──► handle.events  query / query:response / query:error
            └─ table channel  "selected"  ──► subscribers (failures isolated)

    Operations:

    ========== ============================== =================
    insert     rows in, returned rows out     ModelNotCreated
    find       search → rows                  ModelNotFound
    find_one   find with limit 1              ModelNotFound
    find_stream async iterator over rows      -
    update     data + search → rows           ModelNotUpdated
    update_one data + primary key             ModelNotUpdated
    delete     search → rows (non-empty!)     ModelNotDeleted
    delete_one primary key                    ModelNotDeleted
    count      search → int                   -
    ========== ============================== =================

Examples:
    >>> repo = registry.get("primary").get_repository("users")
    >>> await repo.insert([{"name": "ada", "age": 36}])
    >>> await repo.find({"age": {"$gte": 18}}, {"orderBy": {"selectedField": "name"}})
    >>> async with registry.get("primary").transaction() as tx:
    ...     await repo.update_one({"age": 37}, 1, QueryOptions(transaction=tx))

Guardrails:
    ❌ DON'T: Call delete() with an empty search to clear a table
    ✅ DO: Use explicit filters; the repository refuses empty ones

    ❌ DON'T: Expect a commit after passing ``transaction``
    ✅ DO: Commit through the transaction's own context manager

Tags:
    andesite-core, repository, crud, sqlalchemy-async, transactions

Doc-Types:
    - API Reference
    - Data Access Guide
"""

from __future__ import annotations

import contextlib
import dataclasses
import uuid
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import pydantic
import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from andesite.core.errors import (
    CrudDeleteNoSearch,
    DatabaseQueryError,
    ModelNotCreated,
    ModelNotDeleted,
    ModelNotFound,
    ModelNotUpdated,
    NoResultError,
    ValidationError,
)
from andesite.core.events import EventChannel, EventHandler, EventKind, TableEvent
from andesite.core.filters import DEFAULT_LIMIT, FilterCompiler, QueryOptions
from andesite.core.logging import get_logger
from andesite.core.schema import PrimaryKey, TableSchema

if TYPE_CHECKING:
    from andesite.core.adapters.base import DatabaseHandle
    from andesite.core.registry import ConnectionRegistry

log = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

_DRIVER_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


def is_empty_search(search: Any) -> bool:
    """True for None, ``{}``, ``[]`` and lists holding only empty mappings."""
    if search is None:
        return True
    if isinstance(search, Mapping):
        return not search
    if isinstance(search, Sequence) and not isinstance(search, (str, bytes)):
        return all(isinstance(item, Mapping) and not item for item in search)
    return False


class Repository(Generic[ModelT]):
    """CRUD operations on one table of one connection.

    Rows are returned as dicts, or as ``model`` instances when a pydantic
    model is given.
    """

    def __init__(
        self,
        handle: DatabaseHandle,
        table_name: str,
        primary_key: PrimaryKey | Sequence[Any] | str | None = None,
        *,
        model: type[ModelT] | None = None,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self._handle = handle
        self._table_name = table_name
        self._primary_key = PrimaryKey.parse(primary_key) if primary_key is not None else None
        self._model = model
        self._default_limit = default_limit

    @classmethod
    def from_registry(
        cls,
        registry: ConnectionRegistry,
        connection_name: str,
        table_name: str,
        primary_key: PrimaryKey | Sequence[Any] | str | None = None,
        **kwargs: Any,
    ) -> Repository[Any]:
        """Bind to the handle registered as ``connection_name``."""
        return cls(registry.get(connection_name), table_name, primary_key, **kwargs)

    @property
    def handle(self) -> DatabaseHandle:
        return self._handle

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def database(self) -> str:
        return self._handle.name

    @property
    def events(self) -> EventChannel:
        """Table event channel shared by every repository on this table."""
        return self._handle.table_events(self._table_name)

    def on(self, kind: EventKind | str, handler: EventHandler) -> str:
        """Subscribe to this table's events; returns the unsubscribe token."""
        return self.events.subscribe(kind, handler)

    async def schema(self) -> TableSchema:
        return await self._handle.get_table(self._table_name, self._primary_key)

    async def compiler(self) -> FilterCompiler:
        return FilterCompiler(await self.schema(), default_limit=self._default_limit)

    # ── Create ───────────────────────────────────────────────────────────

    async def insert(
        self,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Insert one row or many and return the inserted rows.

        An empty batch issues no statement and returns ``[]``, or raises
        ModelNotCreated when ``throw_if_no_result`` is set.
        """
        opts = QueryOptions.coerce(options)
        rows = [data] if isinstance(data, Mapping) else list(data)
        if not rows:
            return self._check_result([], opts, ModelNotCreated, "No row was inserted")

        compiler = await self.compiler()
        for row in rows:
            if not isinstance(row, Mapping):
                raise ValidationError(f"Insert rows must be mappings, got {type(row).__name__}", field="data")
            for column in row:
                compiler.schema.column(column)
        returning = compiler.columns(opts.selected_fields)

        table = compiler.schema.table
        correlation_id = self._correlation_id(opts)
        batches = _batches(rows)
        if len(batches) > 1 and opts.transaction is None:
            # All batches commit or roll back together.
            try:
                async with self._handle.engine.begin() as conn:
                    shared = dataclasses.replace(opts, transaction=conn)
                    inserted = await self._insert_batches(table, batches, returning, shared, correlation_id)
            except _DRIVER_ERRORS as e:
                raise await self._query_error(e, "BEGIN", None, correlation_id) from e
        else:
            inserted = await self._insert_batches(table, batches, returning, opts, correlation_id)
        return self._check_result(inserted, opts, ModelNotCreated, "No row was inserted")

    async def _insert_batches(
        self,
        table: sa.Table,
        batches: list[list[Mapping[str, Any]]],
        returning: list[Any],
        opts: QueryOptions,
        correlation_id: str,
    ) -> list[dict[str, Any]]:
        inserted: list[dict[str, Any]] = []
        for batch in batches:
            stmt = sa.insert(table).returning(*returning, sort_by_parameter_order=True)
            inserted.extend(
                await self._run(
                    EventKind.INSERTED, stmt, opts, correlation_id, parameters=[dict(r) for r in batch]
                )
            )
        return inserted

    # ── Read ─────────────────────────────────────────────────────────────

    async def find(
        self,
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Return the rows matching ``search`` (or ``options.filters``)."""
        opts = QueryOptions.coerce(options)
        compiler = await self.compiler()
        compiled = compiler.compile(self._search(search, opts), opts)
        stmt = compiled.apply(sa.select(*compiled.columns).select_from(compiler.schema.table))
        rows = await self._run(EventKind.SELECTED, stmt, opts, self._correlation_id(opts))
        return self._check_result(rows, opts, ModelNotFound, "No row matched the search")

    async def find_one(
        self,
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> Any | None:
        """Return the first matching row, or None."""
        opts = dataclasses.replace(QueryOptions.coerce(options), limit=1)
        rows = await self.find(search, opts)
        return rows[0] if rows else None

    async def find_stream(
        self,
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> AsyncIterator[Any]:
        """Stream matching rows with a server-side cursor.

        ``limit`` applies only when given explicitly. The ``selected`` event
        fires once the stream is exhausted.
        """
        opts = QueryOptions.coerce(options)
        compiler = await self.compiler()
        compiled = compiler.compile(self._search(search, opts), opts, paginate=False)
        stmt = compiled.apply(sa.select(*compiled.columns).select_from(compiler.schema.table))
        correlation_id = self._correlation_id(opts)
        statement, parameters = self._render(stmt)
        await self._emit_query(EventKind.QUERY, statement, parameters, correlation_id)

        count = 0
        try:
            async with self._connection(opts, write=False) as conn:
                result = await conn.stream(stmt)
                async for row in result.mappings():
                    count += 1
                    yield self._to_model(dict(row))
        except _DRIVER_ERRORS as e:
            raise await self._query_error(e, statement, parameters, correlation_id) from e

        await self._emit_query(EventKind.QUERY_RESPONSE, statement, parameters, correlation_id, rows=count)
        await self._emit_success(EventKind.SELECTED, stmt, statement, parameters, correlation_id, rows=count)

    async def count(
        self,
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> int:
        """Count rows matching ``search``; every row when omitted."""
        opts = QueryOptions.coerce(options)
        compiler = await self.compiler()
        where = compiler.where(self._search(search, opts))
        stmt = sa.select(sa.func.count().label("count")).select_from(compiler.schema.table)
        if where is not None:
            stmt = stmt.where(where)
        rows = await self._run(EventKind.SELECTED, stmt, opts, self._correlation_id(opts))
        return int(rows[0]["count"]) if rows else 0

    # ── Update ───────────────────────────────────────────────────────────

    async def update(
        self,
        data: Mapping[str, Any],
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Apply ``data`` to the rows matching ``search`` and return them."""
        opts = QueryOptions.coerce(options)
        if not isinstance(data, Mapping) or not data:
            raise ValidationError("Update requires at least one column value", field="data", value=data)
        compiler = await self.compiler()
        for column in data:
            compiler.schema.column(column)
        where = compiler.where(self._search(search, opts))
        stmt = sa.update(compiler.schema.table).values(dict(data))
        if where is not None:
            stmt = stmt.where(where)
        stmt = stmt.returning(*compiler.columns(opts.selected_fields))
        rows = await self._run(EventKind.UPDATED, stmt, opts, self._correlation_id(opts))
        return self._check_result(rows, opts, ModelNotUpdated, "No row was updated")

    async def update_one(
        self,
        data: Mapping[str, Any],
        id: Any,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> Any | None:
        """Update the row whose primary key is ``id``."""
        pk = (await self.schema()).primary_key
        rows = await self.update(data, {pk.column: pk.coerce(id)}, options)
        return rows[0] if rows else None

    # ── Delete ───────────────────────────────────────────────────────────

    async def delete(
        self,
        search: Any = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Delete the rows matching ``search`` and return them.

        Raises:
            CrudDeleteNoSearch: the search is absent or empty; nothing is executed
        """
        opts = QueryOptions.coerce(options)
        search = self._search(search, opts)
        if is_empty_search(search):
            raise CrudDeleteNoSearch(
                "Refusing to delete without a search",
                context={"database": self.database, "table": self._table_name},
            )
        compiler = await self.compiler()
        where = compiler.where(search)
        if where is None:
            raise CrudDeleteNoSearch(
                "Refusing to delete: the search places no restriction",
                context={"database": self.database, "table": self._table_name},
            )
        stmt = (
            sa.delete(compiler.schema.table)
            .where(where)
            .returning(*compiler.columns(opts.selected_fields))
        )
        rows = await self._run(EventKind.DELETED, stmt, opts, self._correlation_id(opts))
        return self._check_result(rows, opts, ModelNotDeleted, "No row was deleted")

    async def delete_one(
        self,
        id: Any,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> Any | None:
        """Delete the row whose primary key is ``id``."""
        pk = (await self.schema()).primary_key
        rows = await self.delete({pk.column: pk.coerce(id)}, options)
        return rows[0] if rows else None

    # ── Execution ────────────────────────────────────────────────────────

    async def _run(
        self,
        kind: EventKind,
        stmt: sa.Executable,
        opts: QueryOptions,
        correlation_id: str,
        *,
        parameters: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        statement, rendered = self._render(stmt)
        bound = parameters if parameters is not None else rendered
        await self._emit_query(EventKind.QUERY, statement, bound, correlation_id)
        try:
            async with self._connection(opts, write=kind is not EventKind.SELECTED) as conn:
                if parameters is not None:
                    result = await conn.execute(stmt, parameters)
                else:
                    result = await conn.execute(stmt)
                rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
        except _DRIVER_ERRORS as e:
            raise await self._query_error(e, statement, bound, correlation_id) from e

        log.debug(
            "query_executed",
            database=self.database,
            table=self._table_name,
            operation=kind.value,
            rows=len(rows),
            parameters=bound,
            correlation_id=correlation_id,
        )
        await self._emit_query(EventKind.QUERY_RESPONSE, statement, bound, correlation_id, rows=len(rows))
        await self._emit_success(kind, stmt, statement, bound, correlation_id, rows=len(rows), result=rows)
        return rows

    @contextlib.asynccontextmanager
    async def _connection(self, opts: QueryOptions, *, write: bool) -> AsyncIterator[AsyncConnection]:
        if opts.transaction is not None:
            yield opts.transaction
            return
        engine = self._handle.engine
        if write:
            async with engine.begin() as conn:
                yield conn
        else:
            async with engine.connect() as conn:
                yield conn

    def _render(self, stmt: sa.Executable) -> tuple[str, dict[str, Any]]:
        compiled = stmt.compile(dialect=self._handle.engine.dialect)
        return str(compiled), dict(compiled.params)

    async def _query_error(
        self,
        error: BaseException,
        statement: str,
        parameters: Any,
        correlation_id: str,
    ) -> DatabaseQueryError:
        reason = self._handle.describe_error(error)
        log.error(
            "query_failed",
            database=self.database,
            table=self._table_name,
            reason=reason,
            error=str(error),
            correlation_id=correlation_id,
        )
        await self._handle.events.emit(
            TableEvent(
                kind=EventKind.QUERY_ERROR.value,
                database=self.database,
                table=self._table_name,
                statement=statement,
                parameters=parameters,
                error=str(error),
                correlation_id=correlation_id,
            )
        )
        return DatabaseQueryError(
            f"Query on {self.database}.{self._table_name} failed: {error}",
            detail={"reason": reason},
            context={"database": self.database, "table": self._table_name, "correlation_id": correlation_id},
            cause=error,
        )

    async def _emit_query(
        self,
        kind: EventKind,
        statement: str,
        parameters: Any,
        correlation_id: str,
        *,
        rows: int = 0,
    ) -> None:
        await self._handle.events.emit(
            TableEvent(
                kind=kind.value,
                database=self.database,
                table=self._table_name,
                statement=statement,
                parameters=parameters,
                rows=rows,
                correlation_id=correlation_id,
            )
        )

    async def _emit_success(
        self,
        kind: EventKind,
        stmt: sa.Executable,
        statement: str,
        parameters: Any,
        correlation_id: str,
        *,
        rows: int,
        result: Any = None,
    ) -> None:
        await self.events.emit(
            TableEvent(
                kind=kind.value,
                database=self.database,
                table=self._table_name,
                statement=statement,
                parameters=parameters,
                tables=statement_tables(stmt),
                rows=rows,
                result=result,
                correlation_id=correlation_id,
            )
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _search(search: Any, opts: QueryOptions) -> Any:
        return opts.filters if search is None else search

    @staticmethod
    def _correlation_id(opts: QueryOptions) -> str:
        return opts.correlation_id or str(uuid.uuid4())

    def _check_result(
        self,
        rows: list[dict[str, Any]],
        opts: QueryOptions,
        error: type[NoResultError],
        message: str,
    ) -> list[Any]:
        if not rows and opts.throw_if_no_result:
            raise error(message, context={"database": self.database, "table": self._table_name})
        return [self._to_model(row) for row in rows]

    def _to_model(self, row: dict[str, Any]) -> Any:
        if self._model is None:
            return row
        try:
            return self._model.model_validate(row)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Row does not match {self._model.__name__}: {e.error_count()} error(s)",
                detail=e.errors(include_url=False),
                cause=e,
            ) from e

    def __repr__(self) -> str:
        return f"Repository(database={self.database!r}, table={self._table_name!r})"


def statement_tables(stmt: sa.Executable) -> tuple[str, ...]:
    """Names of the tables a statement targets or reads from."""
    names: list[str] = []
    target = getattr(stmt, "table", None)
    if isinstance(target, sa.Table):
        names.append(target.name)
    get_froms = getattr(stmt, "get_final_froms", None)
    if get_froms is not None:
        for source in get_froms():
            name = getattr(source, "name", None)
            if isinstance(name, str) and name not in names:
                names.append(name)
    return tuple(names)


def _batches(rows: list[Mapping[str, Any]]) -> list[list[Mapping[str, Any]]]:
    """Group consecutive rows sharing the same column set."""
    batches: list[list[Mapping[str, Any]]] = []
    keys: frozenset[str] | None = None
    for row in rows:
        row_keys = frozenset(row)
        if batches and row_keys == keys:
            batches[-1].append(row)
        else:
            batches.append([row])
            keys = row_keys
    return batches


__all__ = [
    "Repository",
    "is_empty_search",
    "statement_tables",
]
