"""
FastAPI dependency injection - settings, registry and per-request database.

Usage in routers::

    from andesite.api import DatabaseResolver

    resolve_database = DatabaseResolver(mode="dynamic")

    @router.get("/users")
    async def list_users(handle: Annotated[DatabaseHandle, Depends(resolve_database)]):
        return await handle.get_repository("users").find()

Manifesto:
    Routers stay thin. The registry is built once in the lifespan and kept
    on ``app.state``; the resolver turns one request header into a live
    connection handle, provisioning tenant databases on first use.

Tags:
    andesite-core, api, dependency-injection, multi-tenant, FastAPI

Doc-Types:
    api-reference
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from enum import Enum
from functools import lru_cache

from fastapi import FastAPI, HTTPException, Request

from andesite.core.adapters.base import DatabaseHandle
from andesite.core.adapters.types import DatabaseConfig, DialectKind
from andesite.core.errors import ConfigError
from andesite.core.logging import configure_logging, get_logger
from andesite.core.registry import ConnectionRegistry, bootstrap_registry
from andesite.core.settings import AndesiteSettings

log = get_logger(__name__)

# ── Settings (singleton) ─────────────────────────────────────────────────


@lru_cache(maxsize=1)
def get_settings() -> AndesiteSettings:
    """Cached settings, loaded once per process."""
    return AndesiteSettings()


# ── Registry (app-scoped) ────────────────────────────────────────────────


def get_registry(request: Request) -> ConnectionRegistry:
    """The registry stored on ``app.state`` by ``registry_lifespan``."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise ConfigError("No connection registry on app.state; use registry_lifespan or set it explicitly")
    return registry


@asynccontextmanager
async def registry_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan that boots the registry from settings and closes it on shutdown."""
    settings: AndesiteSettings = getattr(app.state, "settings", None) or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json, service=settings.service_name)
    registry = getattr(app.state, "registry", None)
    if registry is None:
        registry = ConnectionRegistry()
    app.state.settings = settings
    app.state.registry = registry
    try:
        await bootstrap_registry(settings, registry)
        log.info("registry_started", databases=registry.names())
        yield
    finally:
        await registry.close()
        log.info("registry_stopped")


# ── Database resolution (per-request) ────────────────────────────────────


class ResolutionMode(str, Enum):
    """How the request header is turned into a handle."""

    STATIC = "static"
    DYNAMIC = "dynamic"


class DatabaseResolver:
    """Dependency resolving the request's target database.

    ``static`` looks the header value up in the registry as-is.
    ``dynamic`` provisions ``database:<value>`` from the base config on first
    use. A missing header is a 400.
    """

    def __init__(
        self,
        *,
        mode: ResolutionMode | str = ResolutionMode.STATIC,
        header: str | None = None,
        base_config: DatabaseConfig | None = None,
        dialect: DialectKind | str | None = None,
    ):
        self.mode = ResolutionMode(mode)
        self._header = header
        self._base_config = base_config
        self._dialect = dialect

    def header_name(self, settings: AndesiteSettings) -> str:
        return self._header or settings.database_header

    async def __call__(self, request: Request) -> DatabaseHandle:
        settings: AndesiteSettings = getattr(request.app.state, "settings", None) or get_settings()
        header = self.header_name(settings)
        key = request.headers.get(header)
        if not key:
            raise HTTPException(status_code=400, detail=f"Missing required header: {header}")

        registry = get_registry(request)
        if self.mode is ResolutionMode.STATIC:
            return registry.get(key)

        base_config, dialect = self._dynamic_base(settings)
        return await registry.resolve_dynamic(key, base_config, dialect)

    def _dynamic_base(self, settings: AndesiteSettings) -> tuple[DatabaseConfig, DialectKind | str]:
        if self._base_config is not None:
            return self._base_config, self._dialect or DialectKind.POSTGRES
        if settings.dynamic_base is None:
            raise ConfigError("Dynamic database resolution requires ANDESITE_DYNAMIC_BASE settings")
        return settings.dynamic_base.to_config(), self._dialect or settings.dynamic_base.dialect


__all__ = [
    "get_settings",
    "get_registry",
    "registry_lifespan",
    "ResolutionMode",
    "DatabaseResolver",
]
