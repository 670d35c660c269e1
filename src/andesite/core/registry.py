"""
Connection registry - named database handles and their lifecycle.

The registry is the single source of truth mapping a logical database name
to exactly one ``DatabaseHandle``. It supports ahead-of-time registration
(from settings at startup) and lazy per-request provisioning of tenant
databases through ``resolve_dynamic``.

Manifesto:
    Shared connection state must be explicit and injectable. There is no
    module-level registry: applications build one, hand it to their
    collaborators, and tests build a fresh one per test case.

    - **Fail loudly:** duplicate names and unknown names raise typed errors
    - **Single flight:** concurrent first access to a dynamic name provisions one pool
    - **No hidden connects:** ``register`` creates a handle, ``connect`` opens it

Architecture:
    ::

        Unregistered ──register()──► Registered ──connect()──► Connected
              ▲                           ▲                        │
              │                           └──────disconnect()──────┤
              └──────────────────────unregister()──────────────────┘

        resolve_dynamic("tenant_a")
            name = "database:tenant_a"
            fast path: already connected → handle
            slow path: per-name asyncio.Lock
                       re-check → register(base.with_database(key)) → connect()
                       on failure the entry is removed again

    Map mutations take a ``threading.RLock`` held only for dict updates;
    connect/disconnect work is serialised per name with ``asyncio.Lock``
    so different names never wait on each other.

Examples:
    >>> registry = ConnectionRegistry()
    >>> registry.register("primary", "sqlite", DatabaseConfig(path="app.db"))
    >>> await registry.connect("primary")
    >>> repo = registry.get("primary").get_repository("users")

Tags:
    andesite-core, registry, connection-lifecycle, multi-tenant, single-flight

Doc-Types:
    - API Reference
    - Connection Management Guide
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from andesite.core.adapters.base import DatabaseHandle
from andesite.core.adapters.registry import DialectRegistry
from andesite.core.adapters.types import DatabaseConfig, DialectKind
from andesite.core.errors import (
    DatabaseAlreadyRegistered,
    DatabaseNotConnected,
    DatabaseNotRegistered,
    ValidationError,
)
from andesite.core.logging import get_logger

if TYPE_CHECKING:
    from andesite.core.settings import AndesiteSettings

log = get_logger(__name__)

DYNAMIC_PREFIX = "database:"
_DYNAMIC_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,62}$")


def dynamic_name(key: str) -> str:
    """Registry name for a dynamically resolved database key."""
    return f"{DYNAMIC_PREFIX}{key}"


@dataclass
class RegistryEntry:
    """One registered database."""

    name: str
    kind: DialectKind
    config: DatabaseConfig
    handle: DatabaseHandle

    @property
    def connected(self) -> bool:
        return self.handle.is_connected


class ConnectionRegistry:
    """Named database handles with explicit lifecycle."""

    def __init__(self, dialects: DialectRegistry | None = None) -> None:
        self._dialects = dialects or DialectRegistry()
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = threading.RLock()
        self._name_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    # ── Lookup ───────────────────────────────────────────────────────────

    def get(self, name: str) -> DatabaseHandle:
        """Return the handle for ``name`` or raise DatabaseNotRegistered."""
        return self.entry(name).handle

    def entry(self, name: str) -> RegistryEntry:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise DatabaseNotRegistered(name)
        return entry

    def names(self) -> list[str]:
        """Registered names, sorted."""
        with self._lock:
            return sorted(self._entries)

    def is_connected(self, name: str) -> bool:
        return self.entry(name).connected

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def register(
        self,
        name: str,
        kind: DialectKind | str,
        config: DatabaseConfig | None = None,
    ) -> DatabaseHandle:
        """Create the handle for ``name`` without connecting it.

        Raises:
            DatabaseAlreadyRegistered: ``name`` is taken; unregister it first
            DatabaseInvalidType: ``kind`` is not a known dialect
        """
        resolved = self._dialects.resolve(name, kind)
        config = config or DatabaseConfig()
        with self._lock:
            if name in self._entries:
                raise DatabaseAlreadyRegistered(name)
            handle = self._dialects.create(name, resolved, config)
            self._entries[name] = RegistryEntry(name=name, kind=resolved, config=config, handle=handle)
        log.info("database_registered", database=name, dialect=resolved.value)
        return handle

    async def connect(self, name: str) -> DatabaseHandle:
        """Connect the handle registered as ``name``; no-op if already live."""
        handle = self.get(name)
        async with self._name_lock(name):
            await handle.connect()
        return handle

    async def disconnect(self, name: str) -> None:
        """Disconnect ``name``. Raises DatabaseNotConnected if it is not live."""
        handle = self.get(name)
        async with self._name_lock(name):
            await handle.disconnect()

    async def unregister(self, name: str) -> None:
        """Remove ``name``, disconnecting it first when live."""
        async with self._name_lock(name):
            entry = self.entry(name)
            if entry.handle.is_connected:
                await entry.handle.disconnect()
            with self._lock:
                if self._entries.get(name) is entry:
                    del self._entries[name]
        log.info("database_unregistered", database=name)

    async def register_and_connect(
        self,
        name: str,
        kind: DialectKind | str,
        config: DatabaseConfig | None = None,
    ) -> DatabaseHandle:
        """Register then connect; the entry is removed again if connecting fails."""
        handle = self.register(name, kind, config)
        async with self._name_lock(name):
            await self._connect_or_discard(name, handle)
        return handle

    async def resolve_dynamic(
        self,
        key: str,
        base_config: DatabaseConfig,
        kind: DialectKind | str,
    ) -> DatabaseHandle:
        """Resolve a request-carried key to a connected handle.

        The key becomes ``database:<key>``. A missing entry is registered with
        ``base_config`` retargeted at ``key`` and connected. Concurrent calls
        for the same key share one provisioning attempt.
        """
        if not isinstance(key, str) or not _DYNAMIC_KEY.match(key):
            raise ValidationError(f"Invalid database key: {key!r}", field="database", value=key)
        name = dynamic_name(key)

        with self._lock:
            existing = self._entries.get(name)
        if existing is not None and existing.connected:
            return existing.handle

        async with self._name_lock(name):
            with self._lock:
                existing = self._entries.get(name)
            if existing is not None:
                if not existing.connected:
                    await existing.handle.connect()
                return existing.handle

            handle = self.register(name, kind, base_config.with_database(key))
            await self._connect_or_discard(name, handle)
            log.info("dynamic_database_provisioned", database=name, dialect=handle.kind.value)
            return handle

    async def close(self) -> None:
        """Disconnect every live handle. Entries stay registered."""
        for name in self.names():
            try:
                entry = self.entry(name)
            except DatabaseNotRegistered:
                continue
            if entry.connected:
                try:
                    await self.disconnect(name)
                except DatabaseNotConnected:
                    continue

    async def __aenter__(self) -> ConnectionRegistry:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Internals ────────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        """Serialise work on ``name``; the lock is dropped once the name is gone and idle."""
        with self._lock:
            lock, users = self._name_locks.get(name, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            self._name_locks[name] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            with self._lock:
                lock, users = self._name_locks[name]
                if users == 1 and name not in self._entries:
                    del self._name_locks[name]
                else:
                    self._name_locks[name] = (lock, users - 1)

    async def _connect_or_discard(self, name: str, handle: DatabaseHandle) -> None:
        try:
            await handle.connect()
        except BaseException:
            with self._lock:
                entry = self._entries.get(name)
                if entry is not None and entry.handle is handle:
                    del self._entries[name]
            raise


async def bootstrap_registry(
    settings: AndesiteSettings,
    registry: ConnectionRegistry | None = None,
    *,
    connect: bool = True,
) -> ConnectionRegistry:
    """Register (and by default connect) every database declared in settings."""
    if registry is None:
        registry = ConnectionRegistry()
    for name, database in settings.databases.items():
        config = database.to_config()
        if connect:
            await registry.register_and_connect(name, database.dialect, config)
        else:
            registry.register(name, database.dialect, config)
    return registry


__all__ = [
    "DYNAMIC_PREFIX",
    "dynamic_name",
    "RegistryEntry",
    "ConnectionRegistry",
    "bootstrap_registry",
]
