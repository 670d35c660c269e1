"""
andesite.core - relational data-access core.

Three pieces, leaves first:

- ``andesite.core.filters``: declarative filter language compiled to SQLAlchemy predicates
- ``andesite.core.registry``: named connection handles, static and per-request dynamic
- ``andesite.core.repository``: typed CRUD, pagination, ordering and transactions

Table and connection events live in ``andesite.core.events``; errors in
``andesite.core.errors``; structlog setup in ``andesite.core.logging``.
"""

from andesite.core.adapters import DatabaseConfig, DatabaseHandle, DialectKind, DialectRegistry
from andesite.core.errors import AndesiteError, ErrorCategory
from andesite.core.events import EventChannel, EventKind, TableEvent
from andesite.core.filters import FilterCompiler, OrderSpec, QueryOptions, SortDirection
from andesite.core.registry import ConnectionRegistry, bootstrap_registry
from andesite.core.repository import Repository
from andesite.core.schema import PrimaryKey, TableSchema

__all__ = [
    "AndesiteError",
    "ConnectionRegistry",
    "DatabaseConfig",
    "DatabaseHandle",
    "DialectKind",
    "DialectRegistry",
    "ErrorCategory",
    "EventChannel",
    "EventKind",
    "FilterCompiler",
    "OrderSpec",
    "PrimaryKey",
    "QueryOptions",
    "Repository",
    "SortDirection",
    "TableEvent",
    "TableSchema",
    "bootstrap_registry",
]
