"""
Shared pytest fixtures for andesite tests.

This module provides:
- A test schema (users, orders) as SQLAlchemy metadata
- An isolated ConnectionRegistry per test
- A connected file-backed SQLite handle (aiosqlite) with seed rows
- Structlog configured once for readable failures

Usage:
    @pytest.mark.asyncio
    async def test_something(users_repo):
        rows = await users_repo.find({"status": "active"})
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from andesite.core.adapters.base import DatabaseHandle
from andesite.core.adapters.types import DatabaseConfig
from andesite.core.logging import configure_logging
from andesite.core.registry import ConnectionRegistry
from andesite.core.repository import Repository
from andesite.core.schema import TableSchema

# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    configure_logging(level="WARNING", json_format=False, service="andesite-tests")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests that take a database fixture as integration, the rest as unit."""
    for item in items:
        fixtures = set(getattr(item, "fixturenames", ()))
        if fixtures & {"handle", "users_repo", "orders_repo", "seeded_db_path"}:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Schema
# =============================================================================

metadata = sa.MetaData()

users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("name", sa.String(50), nullable=False),
    sa.Column("email", sa.String(120), nullable=True),
    sa.Column("age", sa.Integer, nullable=True),
    sa.Column("status", sa.String(20), nullable=False, server_default="active"),
    sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("score", sa.Float, nullable=True),
    sa.Column("joined_on", sa.Date, nullable=True),
)

orders = sa.Table(
    "orders",
    metadata,
    sa.Column("reference", sa.String(20), primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("total", sa.Float, nullable=False),
)

STATUSES = ("banned", "active", "pending")


def seed_users() -> list[dict[str, Any]]:
    """30 users: user_00..user_29, ages 15..44, status cycling banned/active/pending."""
    return [
        {
            "id": i + 1,
            "name": f"user_{i:02d}",
            "email": f"user{i}@example.com" if i % 5 else None,
            "age": 15 + i,
            "status": STATUSES[i % 3],
            "active": i % 3 != 0,
            "score": float(i) / 2,
            "joined_on": dt.date(2024, 1, 1) + dt.timedelta(days=i),
        }
        for i in range(30)
    ]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def users_schema() -> TableSchema:
    """Schema for the users table without touching a database."""
    return TableSchema.from_table(users, database="test")


@pytest.fixture
def orders_schema() -> TableSchema:
    return TableSchema.from_table(orders, database="test")


@pytest.fixture
def registry() -> ConnectionRegistry:
    """Fresh, isolated registry per test."""
    return ConnectionRegistry()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "primary.db"


async def create_schema(path: Path, rows: list[dict[str, Any]] | None = None) -> None:
    """Create the test tables in a SQLite file, optionally seeding users."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            if rows:
                await conn.execute(users.insert(), rows)
    finally:
        await engine.dispose()


@pytest.fixture
def seeded_db_path(db_path: Path) -> Path:
    """SQLite file with the test tables and seed rows, for sync callers."""
    asyncio.run(create_schema(db_path, seed_users()))
    return db_path


@pytest_asyncio.fixture
async def handle(registry: ConnectionRegistry, db_path: Path) -> AsyncGenerator[DatabaseHandle, None]:
    """Connected SQLite handle registered as ``primary`` with seeded users."""
    await create_schema(db_path, seed_users())
    registry.register("primary", "sqlite", DatabaseConfig(path=str(db_path)))
    connected = await registry.connect("primary")
    yield connected
    await registry.close()


@pytest_asyncio.fixture
async def users_repo(handle: DatabaseHandle) -> Repository[Any]:
    return handle.get_repository("users")


@pytest_asyncio.fixture
async def orders_repo(handle: DatabaseHandle) -> Repository[Any]:
    return handle.get_repository("orders")
