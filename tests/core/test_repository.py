"""Tests for andesite.core.repository: CRUD over a seeded SQLite database."""

from __future__ import annotations

import datetime as dt
import json

import pydantic
import pytest
import sqlalchemy as sa

from andesite.core.adapters.base import DUPLICATE_KEY, FOREIGN_KEY_VIOLATION
from andesite.core.errors import (
    CrudDeleteNoSearch,
    DatabaseNotConnected,
    DatabaseQueryError,
    ModelNotCreated,
    ModelNotDeleted,
    ModelNotFound,
    ModelNotUpdated,
    TableNotFound,
    ValidationError,
)
from andesite.core.events import TableEvent
from andesite.core.filters import QueryOptions
from andesite.core.logging import configure_logging
from andesite.core.repository import Repository, is_empty_search, statement_tables


class UserRow(pydantic.BaseModel):
    id: int
    name: str
    email: str | None = None
    age: int | None = None
    status: str
    active: bool
    score: float | None = None
    joined_on: dt.date | None = None


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class TestIsEmptySearch:
    @pytest.mark.parametrize("search", [None, {}, [], [{}], [{}, {}]])
    def test_empty(self, search):
        assert is_empty_search(search) is True

    @pytest.mark.parametrize("search", [{"id": 1}, [{}, {"id": 1}], [{"id": 1}]])
    def test_not_empty(self, search):
        assert is_empty_search(search) is False


class TestStatementTables:
    def test_select(self, users_schema):
        assert statement_tables(sa.select(users_schema.table)) == ("users",)

    def test_update(self, users_schema):
        assert statement_tables(sa.update(users_schema.table).values(name="x")) == ("users",)

    def test_delete(self, users_schema):
        assert statement_tables(sa.delete(users_schema.table).where(users_schema.table.c.id == 1)) == ("users",)


# ------------------------------------------------------------------ #
# Insert
# ------------------------------------------------------------------ #


class TestInsert:
    @pytest.mark.asyncio
    async def test_insert_one_returns_row_with_defaults(self, users_repo):
        rows = await users_repo.insert({"name": "ada", "age": 36})
        assert len(rows) == 1
        row = rows[0]
        assert row["id"] == 31
        assert row["name"] == "ada"
        assert row["status"] == "active"
        assert row["active"] is True

    @pytest.mark.asyncio
    async def test_insert_many_with_mixed_columns(self, users_repo):
        rows = await users_repo.insert([{"name": "a"}, {"name": "b"}, {"name": "c", "age": 3}])
        assert [r["name"] for r in rows] == ["a", "b", "c"]
        assert rows[2]["age"] == 3
        assert await users_repo.count() == 33

    @pytest.mark.asyncio
    async def test_insert_respects_selected_fields(self, users_repo):
        rows = await users_repo.insert({"name": "ada"}, {"selectedFields": ["id", "name"]})
        assert rows == [{"id": 31, "name": "ada"}]

    @pytest.mark.asyncio
    async def test_empty_batch_issues_nothing(self, users_repo, handle):
        seen: list[TableEvent] = []
        handle.events.on("*", seen.append)
        assert await users_repo.insert([]) == []
        assert seen == []

    @pytest.mark.asyncio
    async def test_empty_batch_with_throw(self, users_repo):
        with pytest.raises(ModelNotCreated) as exc_info:
            await users_repo.insert([], {"throwIfNoResult": True})
        assert exc_info.value.key == "error.infrastructure.database.model_not_created"

    @pytest.mark.asyncio
    async def test_unknown_column_rejected_before_execution(self, users_repo):
        with pytest.raises(ValidationError, match="Unknown column"):
            await users_repo.insert({"name": "ada", "password": "x"})
        assert await users_repo.count() == 30

    @pytest.mark.asyncio
    async def test_non_mapping_row_rejected(self, users_repo):
        with pytest.raises(ValidationError):
            await users_repo.insert([{"name": "a"}, "b"])

    @pytest.mark.asyncio
    async def test_duplicate_key_raises_query_error(self, users_repo, handle):
        errors: list[TableEvent] = []
        handle.events.on("query:error", errors.append)

        with pytest.raises(DatabaseQueryError) as exc_info:
            await users_repo.insert({"id": 1, "name": "dup"})

        error = exc_info.value
        assert error.key == "error.infrastructure.database.query_error"
        assert error.detail == {"reason": DUPLICATE_KEY}
        assert error.cause is not None
        assert error.context["table"] == "users"
        assert len(errors) == 1
        assert errors[0].error

    @pytest.mark.asyncio
    async def test_failed_batch_rolls_back_earlier_batches(self, users_repo):
        with pytest.raises(DatabaseQueryError) as exc_info:
            await users_repo.insert([{"name": "new_a"}, {"id": 1, "name": "dup"}])

        assert exc_info.value.detail == {"reason": DUPLICATE_KEY}
        assert await users_repo.count() == 30
        assert await users_repo.find({"name": "new_a"}) == []

    @pytest.mark.asyncio
    async def test_mixed_batches_commit_together(self, users_repo, handle):
        inserted: list[TableEvent] = []
        users_repo.on("inserted", inserted.append)

        rows = await users_repo.insert([{"name": "a"}, {"id": 40, "name": "b"}, {"name": "c"}])

        assert [r["name"] for r in rows] == ["a", "b", "c"]
        assert len(inserted) == 3
        assert len({e.correlation_id for e in inserted}) == 1
        assert await users_repo.count() == 33

    @pytest.mark.asyncio
    async def test_duplicate_key_with_info_logging(self, users_repo, capsys):
        configure_logging(level="INFO", json_format=True, service="andesite-tests")
        try:
            with pytest.raises(DatabaseQueryError) as exc_info:
                await users_repo.insert({"id": 1, "name": "dup"})
        finally:
            configure_logging(level="WARNING", json_format=False, service="andesite-tests")

        assert exc_info.value.detail == {"reason": DUPLICATE_KEY}
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        [line] = [entry for entry in lines if entry["event"] == "query_failed"]
        assert line["logger"] == "andesite.core.repository"
        assert line["level"] == "error"
        assert line["reason"] == DUPLICATE_KEY

    @pytest.mark.asyncio
    async def test_string_primary_key_table(self, orders_repo):
        rows = await orders_repo.insert({"reference": "A-1", "user_id": 1, "total": 9.5})
        assert rows == [{"reference": "A-1", "user_id": 1, "total": 9.5}]

    @pytest.mark.asyncio
    async def test_foreign_key_enforced(self, orders_repo):
        with pytest.raises(DatabaseQueryError) as exc_info:
            await orders_repo.insert({"reference": "A-2", "user_id": 999, "total": 1.0})
        assert exc_info.value.detail == {"reason": FOREIGN_KEY_VIOLATION}


# ------------------------------------------------------------------ #
# Find
# ------------------------------------------------------------------ #


class TestFind:
    @pytest.mark.asyncio
    async def test_find_all_uses_default_order(self, users_repo):
        rows = await users_repo.find()
        assert len(rows) == 30
        assert [r["id"] for r in rows] == list(range(1, 31))

    @pytest.mark.asyncio
    async def test_scalar_equality(self, users_repo):
        rows = await users_repo.find({"status": "active"})
        assert len(rows) == 10
        assert {r["status"] for r in rows} == {"active"}

    @pytest.mark.asyncio
    async def test_filters_option_used_without_search(self, users_repo):
        rows = await users_repo.find(options={"filters": {"status": "pending"}})
        assert len(rows) == 10

    @pytest.mark.asyncio
    async def test_range(self, users_repo):
        rows = await users_repo.find({"age": {"$gte": 18, "$lt": 20}})
        assert [r["age"] for r in rows] == [18, 19]

    @pytest.mark.asyncio
    async def test_between_and_nin(self, users_repo):
        assert len(await users_repo.find({"age": {"$between": [20, 24]}})) == 5
        assert len(await users_repo.find({"status": {"$nin": ["banned"]}})) == 20

    @pytest.mark.asyncio
    async def test_or_of_conjunctions(self, users_repo):
        rows = await users_repo.find([{"status": "banned"}, {"age": {"$gte": 40}}])
        assert len(rows) == 14

    @pytest.mark.asyncio
    async def test_null_handling(self, users_repo):
        assert len(await users_repo.find({"email": None})) == 6
        assert len(await users_repo.find({"email": {"$isNull": False}})) == 24

    @pytest.mark.asyncio
    async def test_boolean_from_string(self, users_repo):
        assert len(await users_repo.find({"active": "true"})) == 20

    @pytest.mark.asyncio
    async def test_date_comparison(self, users_repo):
        rows = await users_repo.find({"joined_on": {"$gte": "2024-01-25"}})
        assert len(rows) == 6
        assert all(r["joined_on"] >= dt.date(2024, 1, 25) for r in rows)

    @pytest.mark.asyncio
    async def test_like_on_date_column(self, users_repo):
        rows = await users_repo.find({"joined_on": {"$like": "2024-01-0"}})
        assert len(rows) == 9

    @pytest.mark.asyncio
    async def test_text_search(self, users_repo):
        rows = await users_repo.find({"$q": {"selectedFields": ["name"], "value": "user_1"}})
        assert [r["name"] for r in rows] == [f"user_1{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_pagination_and_order(self, users_repo):
        rows = await users_repo.find(None, {"limit": 5, "offset": 5})
        assert [r["id"] for r in rows] == [6, 7, 8, 9, 10]

        oldest = await users_repo.find(
            None, {"orderBy": {"selectedField": "age", "direction": "desc"}, "limit": 3}
        )
        assert [r["age"] for r in oldest] == [44, 43, 42]

    @pytest.mark.asyncio
    async def test_projection(self, users_repo):
        rows = await users_repo.find({"id": 1}, {"selectedFields": ["id", "name"]})
        assert rows == [{"id": 1, "name": "user_00"}]

    @pytest.mark.asyncio
    async def test_invalid_operator_never_reaches_database(self, users_repo, handle):
        seen: list[TableEvent] = []
        handle.events.on("*", seen.append)
        with pytest.raises(ValidationError):
            await users_repo.find({"active": {"$gt": True}})
        assert seen == []

    @pytest.mark.asyncio
    async def test_invalid_limit_rejected(self, users_repo):
        with pytest.raises(ValidationError):
            await users_repo.find(None, {"limit": 0})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["--5", "²", "ten", "", "1.5"])
    async def test_malformed_limit_string_rejected(self, users_repo, limit):
        with pytest.raises(ValidationError) as exc_info:
            await users_repo.find(None, {"limit": limit})
        assert exc_info.value.field == "limit"

    @pytest.mark.asyncio
    async def test_numeric_limit_string_accepted(self, users_repo):
        rows = await users_repo.find(None, {"limit": " 3 ", "offset": "1"})
        assert [r["id"] for r in rows] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_no_match_returns_empty(self, users_repo):
        assert await users_repo.find({"name": "nobody"}) == []

    @pytest.mark.asyncio
    async def test_no_match_with_throw(self, users_repo):
        with pytest.raises(ModelNotFound):
            await users_repo.find({"name": "nobody"}, QueryOptions(throw_if_no_result=True))

    @pytest.mark.asyncio
    async def test_find_one(self, users_repo):
        row = await users_repo.find_one({"status": "pending"})
        assert row["id"] == 3
        assert await users_repo.find_one({"name": "nobody"}) is None

    @pytest.mark.asyncio
    async def test_model_rows(self, handle):
        repo = handle.get_repository("users", model=UserRow)
        row = await repo.find_one({"id": 2})
        assert isinstance(row, UserRow)
        assert row.name == "user_01"
        assert row.joined_on == dt.date(2024, 1, 2)

    @pytest.mark.asyncio
    async def test_find_stream(self, users_repo):
        rows = [row async for row in users_repo.find_stream({"status": "active"})]
        assert len(rows) == 10

    @pytest.mark.asyncio
    async def test_find_stream_honours_explicit_limit(self, users_repo):
        rows = [row async for row in users_repo.find_stream(None, {"limit": 3})]
        assert [r["id"] for r in rows] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_find_stream_emits_selected_after_exhaustion(self, users_repo):
        seen: list[TableEvent] = []
        users_repo.on("selected", seen.append)
        async for _ in users_repo.find_stream({"status": "banned"}):
            assert seen == []
        assert len(seen) == 1
        assert seen[0].rows == 10

    @pytest.mark.asyncio
    async def test_find_stream_connection_events(self, users_repo, handle):
        seen: list[TableEvent] = []
        handle.events.on("query:*", seen.append)
        handle.events.on("query", seen.append)

        rows = [row async for row in users_repo.find_stream({"status": "active"})]

        assert [e.kind for e in seen] == ["query", "query:response"]
        assert seen[0].correlation_id == seen[1].correlation_id
        assert seen[1].rows == len(rows) == 10


# ------------------------------------------------------------------ #
# Count
# ------------------------------------------------------------------ #


class TestCount:
    @pytest.mark.asyncio
    async def test_count_all(self, users_repo):
        assert await users_repo.count() == 30

    @pytest.mark.asyncio
    async def test_count_matches_find(self, users_repo):
        search = [{"status": "banned"}, {"age": {"$gte": 40}}]
        assert await users_repo.count(search) == len(await users_repo.find(search))

    @pytest.mark.asyncio
    async def test_count_ignores_pagination(self, users_repo):
        assert await users_repo.count({"status": "active"}, {"limit": 1}) == 10


# ------------------------------------------------------------------ #
# Update
# ------------------------------------------------------------------ #


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_returns_updated_rows(self, users_repo):
        rows = await users_repo.update({"status": "archived"}, {"age": {"$lt": 18}})
        assert [r["id"] for r in rows] == [1, 2, 3]
        assert {r["status"] for r in rows} == {"archived"}
        assert await users_repo.count({"status": "archived"}) == 3

    @pytest.mark.asyncio
    async def test_update_requires_data(self, users_repo):
        with pytest.raises(ValidationError):
            await users_repo.update({}, {"id": 1})

    @pytest.mark.asyncio
    async def test_update_unknown_column(self, users_repo):
        with pytest.raises(ValidationError):
            await users_repo.update({"password": "x"}, {"id": 1})

    @pytest.mark.asyncio
    async def test_update_no_match_with_throw(self, users_repo):
        with pytest.raises(ModelNotUpdated):
            await users_repo.update({"name": "x"}, {"id": 999}, {"throwIfNoResult": True})

    @pytest.mark.asyncio
    async def test_update_one_coerces_primary_key(self, users_repo):
        row = await users_repo.update_one({"name": "renamed"}, "5")
        assert row["id"] == 5
        assert row["name"] == "renamed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["five", "--5", "²"])
    async def test_update_one_rejects_bad_primary_key(self, users_repo, key):
        with pytest.raises(ValidationError):
            await users_repo.update_one({"name": "x"}, key)

    @pytest.mark.asyncio
    async def test_update_one_missing(self, users_repo):
        assert await users_repo.update_one({"name": "x"}, 999) is None


# ------------------------------------------------------------------ #
# Delete
# ------------------------------------------------------------------ #


class TestDelete:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("search", [None, {}, [], [{}], {"age": {}}])
    async def test_empty_search_refused(self, users_repo, handle, search):
        seen: list[TableEvent] = []
        handle.events.on("*", seen.append)

        with pytest.raises(CrudDeleteNoSearch) as exc_info:
            await users_repo.delete(search)

        assert exc_info.value.key == "error.infrastructure.database.crud_delete_no_search"
        assert seen == []
        assert await users_repo.count() == 30

    @pytest.mark.asyncio
    async def test_delete_returns_deleted_rows(self, users_repo):
        rows = await users_repo.delete({"status": "banned"})
        assert len(rows) == 10
        assert await users_repo.count() == 20
        assert await users_repo.count({"status": "banned"}) == 0

    @pytest.mark.asyncio
    async def test_delete_one(self, users_repo):
        row = await users_repo.delete_one(30)
        assert row["name"] == "user_29"
        assert await users_repo.find_one({"id": 30}) is None

    @pytest.mark.asyncio
    async def test_delete_one_missing(self, users_repo):
        assert await users_repo.delete_one(999) is None
        with pytest.raises(ModelNotDeleted):
            await users_repo.delete_one(999, {"throwIfNoResult": True})

    @pytest.mark.asyncio
    async def test_delete_one_string_key(self, orders_repo):
        await orders_repo.insert({"reference": "A-1", "user_id": 1, "total": 2.0})
        row = await orders_repo.delete_one("A-1")
        assert row["reference"] == "A-1"

    @pytest.mark.asyncio
    async def test_delete_referenced_row_fails(self, users_repo, orders_repo):
        await orders_repo.insert({"reference": "A-1", "user_id": 2, "total": 2.0})
        with pytest.raises(DatabaseQueryError) as exc_info:
            await users_repo.delete_one(2)
        assert exc_info.value.detail == {"reason": FOREIGN_KEY_VIOLATION}
        assert await users_repo.count() == 30


# ------------------------------------------------------------------ #
# Transactions
# ------------------------------------------------------------------ #


class TestTransactions:
    @pytest.mark.asyncio
    async def test_committed_with_transaction(self, users_repo, handle):
        async with handle.transaction() as tx:
            await users_repo.insert({"name": "in-tx"}, QueryOptions(transaction=tx))
            await users_repo.update_one({"status": "pending"}, 1, QueryOptions(transaction=tx))
        assert await users_repo.count() == 31
        assert (await users_repo.find_one({"id": 1}))["status"] == "pending"

    @pytest.mark.asyncio
    async def test_rolled_back_on_error(self, users_repo, handle):
        with pytest.raises(RuntimeError):
            async with handle.transaction() as tx:
                opts = QueryOptions(transaction=tx)
                await users_repo.insert({"name": "in-tx"}, opts)
                await users_repo.delete({"status": "banned"}, opts)
                assert await users_repo.count(None, opts) == 21
                raise RuntimeError("abort")
        assert await users_repo.count() == 30
        assert await users_repo.find_one({"name": "in-tx"}) is None


# ------------------------------------------------------------------ #
# Events
# ------------------------------------------------------------------ #


class TestRepositoryEvents:
    @pytest.mark.asyncio
    async def test_inserted_event(self, users_repo):
        seen: list[TableEvent] = []
        users_repo.on("inserted", seen.append)

        await users_repo.insert({"name": "ada"}, {"correlationId": "corr-1"})

        assert len(seen) == 1
        event = seen[0]
        assert event.kind == "inserted"
        assert event.database == "primary"
        assert event.table == "users"
        assert event.tables == ("users",)
        assert event.rows == 1
        assert event.correlation_id == "corr-1"
        assert "INSERT INTO users" in event.statement

    @pytest.mark.asyncio
    async def test_async_handler(self, users_repo):
        seen: list[str] = []

        async def handler(event: TableEvent) -> None:
            seen.append(event.kind)

        users_repo.on("*", handler)
        await users_repo.find({"id": 1})
        await users_repo.update_one({"name": "x"}, 1)
        await users_repo.delete_one(1)
        assert seen == ["selected", "updated", "deleted"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_operation(self, users_repo):
        def boom(event: TableEvent) -> None:
            raise RuntimeError("handler failed")

        users_repo.on("inserted", boom)
        rows = await users_repo.insert({"name": "ada"})
        assert rows[0]["name"] == "ada"

    @pytest.mark.asyncio
    async def test_connection_query_events(self, users_repo, handle):
        seen: list[TableEvent] = []
        handle.events.on("query:*", seen.append)
        handle.events.on("query", seen.append)

        await users_repo.find({"id": 1})

        assert [e.kind for e in seen] == ["query", "query:response"]
        assert seen[0].correlation_id == seen[1].correlation_id
        assert seen[1].rows == 1

    @pytest.mark.asyncio
    async def test_repositories_share_table_channel(self, handle, users_repo):
        assert handle.get_repository("users").events is users_repo.events
        assert handle.get_repository("orders").events is not users_repo.events


# ------------------------------------------------------------------ #
# Schema / lifecycle
# ------------------------------------------------------------------ #


class TestRepositorySchema:
    @pytest.mark.asyncio
    async def test_unknown_table(self, handle):
        with pytest.raises(TableNotFound):
            await handle.get_repository("missing").find()

    @pytest.mark.asyncio
    async def test_table_created_after_connect(self, handle):
        async with handle.transaction() as conn:
            await conn.execute(sa.text("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)"))

        repo = handle.get_repository("notes")
        assert await repo.insert({"body": "hi"}) == [{"id": 1, "body": "hi"}]

    @pytest.mark.asyncio
    async def test_table_without_primary_key_reads_unordered(self, handle):
        async with handle.transaction() as conn:
            await conn.execute(sa.text("CREATE TABLE kv (k TEXT, v TEXT)"))
            await conn.execute(sa.text("INSERT INTO kv (k, v) VALUES ('a', '1'), ('b', '2')"))

        repo = handle.get_repository("kv")

        assert sorted(r["k"] for r in await repo.find()) == ["a", "b"]
        assert (await repo.find_one({"k": "b"}))["v"] == "2"
        assert len([row async for row in repo.find_stream()]) == 2
        ordered = await repo.find(None, {"orderBy": {"selectedField": "k", "direction": "desc"}})
        assert [r["k"] for r in ordered] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_table_without_primary_key_rejects_key_operations(self, handle):
        async with handle.transaction() as conn:
            await conn.execute(sa.text("CREATE TABLE kv (k TEXT, v TEXT)"))

        with pytest.raises(ValidationError, match="Unknown column 'id'"):
            await handle.get_repository("kv").update_one({"v": "x"}, 1)

    @pytest.mark.asyncio
    async def test_explicit_primary_key(self, handle):
        repo = handle.get_repository("users", ("name", "STRING"))
        row = await repo.delete_one("user_04")
        assert row["id"] == 5

    @pytest.mark.asyncio
    async def test_from_registry(self, registry, handle):
        repo = Repository.from_registry(registry, "primary", "users")
        assert repo.database == "primary"
        assert await repo.count() == 30

    @pytest.mark.asyncio
    async def test_disconnected_handle(self, registry, users_repo):
        await registry.disconnect("primary")
        with pytest.raises(DatabaseNotConnected):
            await users_repo.find()
