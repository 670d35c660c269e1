"""Dialect kinds and connection configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from sqlalchemy.engine import URL

from andesite.core.errors import ConfigError


class DialectKind(str, Enum):
    """Supported database dialects."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MSSQL = "mssql"

    @classmethod
    def parse(cls, value: DialectKind | str) -> DialectKind | None:
        """Resolve a dialect name or alias, ``None`` when unknown."""
        if isinstance(value, DialectKind):
            return value
        if not isinstance(value, str):
            return None
        return _ALIASES.get(value.strip().lower())


_ALIASES: dict[str, DialectKind] = {
    "sqlite": DialectKind.SQLITE,
    "sqlite3": DialectKind.SQLITE,
    "better-sqlite": DialectKind.SQLITE,
    "postgres": DialectKind.POSTGRES,
    "postgresql": DialectKind.POSTGRES,
    "pg": DialectKind.POSTGRES,
    "mssql": DialectKind.MSSQL,
    "sqlserver": DialectKind.MSSQL,
}


@dataclass
class DatabaseConfig:
    """
    Configuration for one database connection.

    ``url`` wins over the discrete fields when set. Different fields are
    used by different dialects.
    """

    # Common
    url: str | None = None

    # SQLite
    path: str | None = None

    # PostgreSQL / MSSQL
    host: str = "localhost"
    port: int | None = None
    database: str = ""
    username: str | None = None
    password: str | None = None

    # Connection pool
    pool_min: int = 2
    pool_max: int = 10
    pool_timeout: int = 30

    # Options
    echo: bool = False
    connect_args: dict[str, Any] = field(default_factory=dict)

    def with_database(self, database: str) -> DatabaseConfig:
        """Copy of this config targeting another database name.

        A SQLite ``path`` containing ``{database}`` is formatted with the name.
        """
        path = self.path.replace("{database}", database) if self.path else None
        return replace(self, database=database, path=path, url=None, connect_args=dict(self.connect_args))

    def to_url(self, kind: DialectKind) -> str:
        """Generate the SQLAlchemy async URL for ``kind``."""
        if self.url:
            return self.url
        match kind:
            case DialectKind.SQLITE:
                return f"sqlite+aiosqlite:///{self.path or self.database or ':memory:'}"
            case DialectKind.POSTGRES:
                return self._render("postgresql+asyncpg", 5432)
            case DialectKind.MSSQL:
                return self._render(
                    "mssql+aioodbc",
                    1433,
                    {"driver": "ODBC Driver 18 for SQL Server", "TrustServerCertificate": "yes"},
                )
            case _:
                raise ConfigError(f"Connection URL not supported for: {kind}")

    def _render(self, drivername: str, default_port: int, query: dict[str, str] | None = None) -> str:
        url = URL.create(
            drivername,
            username=self.username or None,
            password=self.password if self.username else None,
            host=self.host or None,
            port=self.port or default_port,
            database=self.database or None,
            query=query or {},
        )
        return url.render_as_string(hide_password=False)


__all__ = [
    "DialectKind",
    "DatabaseConfig",
]
