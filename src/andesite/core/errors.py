"""
Structured error types for the andesite data-access core.

Every failure the core can produce is a typed ``AndesiteError`` carrying a
machine-readable key, a human message, an optional detail payload and the
chained driver exception. HTTP and CLI collaborators translate these into
status codes and exit codes; the core never does that translation itself.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure kind, never a bare Exception
    - **Machine-readable keys:** ``error.infrastructure.database.*`` for i18n and clients
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Error Chaining:** Driver exceptions preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        AndesiteError                             │
        │       (key, category, retryable, detail, context, cause)         │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError   ConfigError       DatabaseConnectionError    │
        │  (VALIDATION)      (CONFIG)          (CONNECTION, retryable)    │
        │                                                                  │
        │  DatabaseError                        RegistryError             │
        │  (DATABASE)                           (REGISTRY)                │
        │     │                                    │                       │
        │  DatabaseQueryError                   DatabaseNotConnected      │
        │  CrudDeleteNoSearch                   DatabaseAlreadyRegistered │
        │  TableNotFound                        DatabaseNotRegistered     │
        │  NoResultError                        DatabaseInvalidType       │
        │     ├─ ModelNotCreated                                           │
        │     ├─ ModelNotFound                                             │
        │     ├─ ModelNotUpdated                                           │
        │     └─ ModelNotDeleted                                           │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = ModelNotFound("No row matched", detail={"table": "users"})
    >>> error.key
    'error.infrastructure.database.model_not_found'
    >>> error.category
    <ErrorCategory.NOT_FOUND: 'NOT_FOUND'>

    Chaining a driver error:

    >>> try:
    ...     raise RuntimeError("socket closed")
    ... except RuntimeError as e:
    ...     err = DatabaseQueryError("Query failed", cause=e)
    >>> err.cause
    RuntimeError('socket closed')

Guardrails:
    ❌ DON'T: Raise plain Exception from repository or registry code
    ✅ DO: Raise the matching AndesiteError subclass

    ❌ DON'T: Swallow the driver exception
    ✅ DO: Pass it as cause= so the traceback keeps it

Tags:
    error-handling, exception-hierarchy, error-keys, andesite-core

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Error categories used by collaborators for routing.

    The HTTP layer maps categories to status codes, the CLI maps any
    category to a non-zero exit code.

    Attributes:
        VALIDATION: Malformed filter, operator, pagination or payload
        NOT_FOUND: Zero rows matched and a result was required
        CONFLICT: Name-lifecycle misuse in the connection registry
        CONFIG: Unknown dialect kind, bad settings
        DATABASE: Statement execution failed
        CONNECTION: Database unreachable or not connected
        INTERNAL: Bugs, unexpected state
    """

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    CONFIG = "CONFIG"
    DATABASE = "DATABASE"
    CONNECTION = "CONNECTION"
    INTERNAL = "INTERNAL"


class AndesiteError(Exception):
    """
    Base exception for all andesite errors.

    Carries:
    - **key:** dotted machine-readable key, stable across releases
    - **category:** ErrorCategory for routing
    - **retryable:** whether the caller may try again unchanged
    - **detail:** free-form payload safe to return to clients
    - **context:** structured metadata for logs (database, table, ...)
    - **cause:** underlying exception, also set as ``__cause__``
    - **error_id / occurred_at:** unique id and UTC timestamp for correlation

    Subclasses set ``default_key``, ``default_category`` and
    ``default_retryable``.
    """

    default_key: str = "error.internal"
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        detail: Any = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.key = key or self.default_key
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.detail = detail
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        self.error_id = str(uuid.uuid4())
        self.occurred_at = datetime.now(UTC)

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AndesiteError:
        """
        Add context to this error (fluent API).

        Usage:
            raise DatabaseQueryError("Failed").with_context(
                database="primary",
                table="users",
            )
        """
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "error_id": self.error_id,
            "key": self.key,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "occurred_at": self.occurred_at.isoformat(),
        }
        if self.detail is not None:
            result["detail"] = self.detail
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, key={self.key!r})"


# =============================================================================
# VALIDATION / CONFIGURATION
# =============================================================================


class ValidationError(AndesiteError):
    """
    Malformed filter, operator, pagination or payload input.

    Never retryable - the input must be fixed.
    """

    default_key = "error.infrastructure.database.invalid_query"
    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ConfigError(AndesiteError):
    """Invalid or missing configuration."""

    default_key = "error.infrastructure.config.invalid"
    default_category = ErrorCategory.CONFIG


# =============================================================================
# DATABASE ERRORS (Repository)
# =============================================================================


class DatabaseError(AndesiteError):
    """Database statement or schema error."""

    default_key = "error.infrastructure.database.error"
    default_category = ErrorCategory.DATABASE


class DatabaseQueryError(DatabaseError):
    """Underlying statement execution failed (driver, constraint, timeout)."""

    default_key = "error.infrastructure.database.query_error"


class CrudDeleteNoSearch(DatabaseError):
    """Delete invoked without a search; refused before any statement runs."""

    default_key = "error.infrastructure.database.crud_delete_no_search"
    default_category = ErrorCategory.VALIDATION


class TableNotFound(DatabaseError):
    """Table is not present in the reflected schema."""

    default_key = "error.infrastructure.database.table_not_found"
    default_category = ErrorCategory.NOT_FOUND


class NoResultError(DatabaseError):
    """``throw_if_no_result`` was requested and zero rows matched."""

    default_category = ErrorCategory.NOT_FOUND


class ModelNotCreated(NoResultError):
    default_key = "error.infrastructure.database.model_not_created"


class ModelNotFound(NoResultError):
    default_key = "error.infrastructure.database.model_not_found"


class ModelNotUpdated(NoResultError):
    default_key = "error.infrastructure.database.model_not_updated"


class ModelNotDeleted(NoResultError):
    default_key = "error.infrastructure.database.model_not_deleted"


# =============================================================================
# REGISTRY ERRORS
# =============================================================================


class RegistryError(AndesiteError):
    """Name-lifecycle misuse in the connection registry."""

    default_category = ErrorCategory.CONFLICT

    def __init__(self, name: str, message: str | None = None, **kwargs: Any):
        self.name = name
        super().__init__(message or self._message(name), **kwargs)
        self.context.setdefault("database", name)

    def _message(self, name: str) -> str:
        return f"Database registry error: {name}"


class DatabaseNotConnected(RegistryError):
    default_key = "error.infrastructure.database.database_not_connected"
    default_category = ErrorCategory.CONNECTION

    def _message(self, name: str) -> str:
        return f"Database not connected: {name}"


class DatabaseAlreadyRegistered(RegistryError):
    default_key = "error.infrastructure.database.database_already_registered"

    def _message(self, name: str) -> str:
        return f"Database already registered: {name}"


class DatabaseNotRegistered(RegistryError):
    default_key = "error.infrastructure.database.database_not_registered"
    default_category = ErrorCategory.NOT_FOUND

    def _message(self, name: str) -> str:
        return f"Database not registered: {name}"


class DatabaseInvalidType(RegistryError):
    default_key = "error.infrastructure.database.database_invalid_type"
    default_category = ErrorCategory.CONFIG

    def __init__(self, name: str, kind: Any, **kwargs: Any):
        self.kind = kind
        super().__init__(name, f"Unknown database dialect for {name}: {kind!r}", **kwargs)


# =============================================================================
# CONNECTION ERRORS (Retryable)
# =============================================================================


class DatabaseConnectionError(AndesiteError):
    """Database unreachable while connecting. Retryable by the caller."""

    default_key = "error.infrastructure.database.connection_failed"
    default_category = ErrorCategory.CONNECTION
    default_retryable = True


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, AndesiteError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, AndesiteError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.CONNECTION
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "AndesiteError",
    # Validation / config
    "ValidationError",
    "ConfigError",
    # Database
    "DatabaseError",
    "DatabaseQueryError",
    "CrudDeleteNoSearch",
    "TableNotFound",
    "NoResultError",
    "ModelNotCreated",
    "ModelNotFound",
    "ModelNotUpdated",
    "ModelNotDeleted",
    # Registry
    "RegistryError",
    "DatabaseNotConnected",
    "DatabaseAlreadyRegistered",
    "DatabaseNotRegistered",
    "DatabaseInvalidType",
    # Connection
    "DatabaseConnectionError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
