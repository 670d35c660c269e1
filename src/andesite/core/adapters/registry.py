"""Dialect registry and handle factory.

Manifesto:
    Callers should never hard-code handle class names. The registry maps
    each ``DialectKind`` to a handle class; ``create()`` turns a name, a
    dialect kind and a config into an unconnected ``DatabaseHandle``.
    Adding a dialect means adding one enum variant and one entry here.

Features:
    - ``DialectRegistry`` with pre-registered defaults
    - ``register()`` to swap a handle class for a kind (tests, instrumentation)
    - ``create()`` raises DatabaseInvalidType for unknown kinds

Tags:
    andesite-core, database, registry, factory

Doc-Types:
    api-reference
"""

from __future__ import annotations

from andesite.core.errors import DatabaseInvalidType

from .base import DatabaseHandle
from .mssql import MSSQLHandle
from .postgresql import PostgreSQLHandle
from .sqlite import SQLiteHandle
from .types import DatabaseConfig, DialectKind


class DialectRegistry:
    """
    Registry for connection handle factories.

    Pre-registered handles:
    - ``sqlite``: :class:`SQLiteHandle`
    - ``postgres`` / ``postgresql``: :class:`PostgreSQLHandle`
    - ``mssql``: :class:`MSSQLHandle`
    """

    def __init__(self) -> None:
        self._factories: dict[DialectKind, type[DatabaseHandle]] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self._factories[DialectKind.SQLITE] = SQLiteHandle
        self._factories[DialectKind.POSTGRES] = PostgreSQLHandle
        self._factories[DialectKind.MSSQL] = MSSQLHandle

    def register(self, kind: DialectKind, handle_class: type[DatabaseHandle]) -> None:
        """Register the handle class for a dialect kind."""
        self._factories[kind] = handle_class

    def resolve(self, name: str, kind: DialectKind | str) -> DialectKind:
        """Validate ``kind``, raising DatabaseInvalidType when unknown."""
        resolved = DialectKind.parse(kind)
        if resolved is None or resolved not in self._factories:
            raise DatabaseInvalidType(name, kind)
        return resolved

    def create(self, name: str, kind: DialectKind | str, config: DatabaseConfig) -> DatabaseHandle:
        """Create an unconnected handle."""
        return self._factories[self.resolve(name, kind)](name, config)

    def list_dialects(self) -> list[str]:
        """List registered dialect names."""
        return sorted(kind.value for kind in self._factories)


__all__ = [
    "DialectRegistry",
]
