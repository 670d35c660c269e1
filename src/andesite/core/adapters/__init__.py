"""Connection handles: one class per dialect behind a common base."""

from .base import DatabaseHandle
from .mssql import MSSQLHandle
from .postgresql import PostgreSQLHandle
from .registry import DialectRegistry
from .sqlite import SQLiteHandle
from .types import DatabaseConfig, DialectKind

__all__ = [
    "DatabaseConfig",
    "DatabaseHandle",
    "DialectKind",
    "DialectRegistry",
    "MSSQLHandle",
    "PostgreSQLHandle",
    "SQLiteHandle",
]
