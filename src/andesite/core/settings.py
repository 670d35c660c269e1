"""Environment-driven settings for andesite services.

Manifesto:
    Configuration should be explicit, validated and environment-driven.
    ``AndesiteSettings`` declares logging, paging defaults, the request
    header used for database selection and every named database, so a
    service boots from env vars or a ``.env`` file without code changes.

Features:
    - **AndesiteSettings:** log level/format, default page size, resolution header
    - **DatabaseSettings:** one named database (dialect + connection fields)
    - **env_prefix ANDESITE_:** ``ANDESITE_DATABASES__PRIMARY__DIALECT=postgres``
    - **dynamic_base:** template config for per-request tenant databases

Examples:
    >>> import os
    >>> os.environ["ANDESITE_DATABASES__PRIMARY__DIALECT"] = "sqlite"
    >>> os.environ["ANDESITE_DATABASES__PRIMARY__PATH"] = "app.db"
    >>> settings = AndesiteSettings()
    >>> settings.databases["primary"].to_config().path
    'app.db'

Tags:
    settings, configuration, pydantic, environment, andesite-core

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from andesite.core.adapters.types import DatabaseConfig


class DatabaseSettings(BaseModel):
    """Settings for one named database.

    Fields
    ──────
    dialect      : sqlite | postgres | postgresql | mssql
    url          : Full SQLAlchemy URL; overrides the discrete fields
    path         : SQLite file path (``{database}`` is replaced for dynamic databases)
    host/port    : Server address
    database     : Database name
    pool_min/max : Pool bounds
    """

    dialect: str = "sqlite"
    url: str | None = None
    path: str | None = None
    host: str = "localhost"
    port: int | None = None
    database: str = ""
    username: str | None = None
    password: str | None = None
    pool_min: int = Field(default=2, ge=0)
    pool_max: int = Field(default=10, ge=1)
    pool_timeout: int = Field(default=30, ge=1)
    echo: bool = False
    connect_args: dict[str, Any] = Field(default_factory=dict)

    def to_config(self) -> DatabaseConfig:
        return DatabaseConfig(
            url=self.url,
            path=self.path,
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            pool_min=self.pool_min,
            pool_max=self.pool_max,
            pool_timeout=self.pool_timeout,
            echo=self.echo,
            connect_args=dict(self.connect_args),
        )


class AndesiteSettings(BaseSettings):
    """Settings shared by andesite services.

    Fields
    ──────
    service_name    : Service name stamped on every log line
    log_level       : Structlog log level
    log_json        : Force JSON (True) or console (False) logs; None = auto
    default_limit   : Page size when a read omits ``limit``
    database_header : Request header naming the target database
    databases       : Databases registered at startup
    dynamic_base    : Base config for per-request databases (None disables)
    """

    model_config = SettingsConfigDict(
        env_prefix="ANDESITE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────────
    service_name: str = "andesite"
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Data access ──────────────────────────────────────────────────
    default_limit: int = Field(default=100, ge=1)
    database_header: str = "database-using"
    databases: dict[str, DatabaseSettings] = Field(default_factory=dict)
    dynamic_base: DatabaseSettings | None = None


__all__ = [
    "DatabaseSettings",
    "AndesiteSettings",
]
