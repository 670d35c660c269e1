"""
Table and connection event channels.

Manifesto:
    Observability collaborators (logging, metrics, cache invalidation) need
    to see every statement the repository runs without being able to break
    it. Each (connection, table) pair owns an ``EventChannel``; each
    connection owns one more for statement-level ``query`` events.

Features:
    - ``TableEvent`` dataclass: kind, statement, parameters, affected tables
    - ``EventChannel.subscribe()`` / ``on()`` return an unsubscribe token
    - Sync and async handlers, ``*`` and ``prefix:*`` patterns
    - Handler failures are logged as ``event_handler_error`` and never propagate

Architecture:
    ::

        Repository.find()
            │
            ├─► handle.events      "query"          (before execution)
            ├─► handle.events      "query:response" (after execution)
            │   handle.events      "query:error"    (on driver failure)
            └─► table channel      "selected"       (after success)

Examples:
    >>> channel = EventChannel(source="primary.users")
    >>> token = channel.on("inserted", lambda event: print(event.rows))
    >>> channel.unsubscribe(token)
    True

Tags:
    andesite-core, events, pubsub, observability

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from andesite.core.logging import get_logger

log = get_logger(__name__)


class EventKind(str, Enum):
    """Event kinds emitted by repositories and connection handles."""

    # Table events
    SELECTED = "selected"
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"

    # Connection events
    QUERY = "query"
    QUERY_ERROR = "query:error"
    QUERY_RESPONSE = "query:response"


@dataclass(frozen=True)
class TableEvent:
    """Notification about one executed statement.

    Attributes:
        kind: Event kind value (``selected``, ``inserted``, ``query``, ...)
        database: Registry name of the connection
        table: Table the repository is bound to
        statement: Compiled SQL text
        parameters: Bound parameter values (a list for executemany)
        tables: Tables referenced by the statement
        rows: Number of rows returned or affected
        result: Returned rows, when the statement returns any
        error: Driver error message for ``query:error``
        correlation_id: Identifier shared by all events of one operation
    """

    kind: str
    database: str
    table: str | None = None
    statement: str = ""
    parameters: Any = None
    tables: tuple[str, ...] = ()
    rows: int = 0
    result: Any = None
    error: str | None = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if the event kind matches a pattern (``*``, ``query:*`` or exact)."""
        if pattern == "*":
            return True
        if pattern.endswith(":*"):
            return self.kind.startswith(pattern[:-1])
        return self.kind == pattern


EventHandler = Callable[[TableEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class EventChannel:
    """Process-local publish/subscribe channel.

    Handlers run concurrently on ``emit``. A handler that raises is logged
    and skipped; the emitting operation always continues.
    """

    def __init__(self, source: str = "") -> None:
        self.source = source
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, kind: EventKind | str, handler: EventHandler) -> str:
        """Subscribe ``handler`` to ``kind`` and return the unsubscribe token."""
        pattern = kind.value if isinstance(kind, EventKind) else str(kind)
        token = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[token] = Subscription(id=token, pattern=pattern, handler=handler)
        return token

    on = subscribe

    def unsubscribe(self, token: str) -> bool:
        """Remove a subscription. Returns False when the token is unknown."""
        return self._subscriptions.pop(token, None) is not None

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def emit(self, event: TableEvent) -> None:
        """Deliver ``event`` to every matching subscriber."""
        handlers = [sub for sub in list(self._subscriptions.values()) if event.matches(sub.pattern)]
        if not handlers:
            return

        async def safe_call(sub: Subscription) -> None:
            try:
                outcome = sub.handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                log.warning(
                    "event_handler_error",
                    source=self.source,
                    subscription_id=sub.id,
                    event_kind=event.kind,
                    error=str(e),
                )

        await asyncio.gather(*[safe_call(sub) for sub in handlers], return_exceptions=True)


__all__ = [
    "EventKind",
    "TableEvent",
    "EventHandler",
    "EventChannel",
]
