"""
Filter expression types.

A search arrives as plain JSON-like data (``{"age": {"$gte": 18}}``) and is
parsed into the frozen node types below before compilation. Parsing is where
operator gating happens, so a compiled tree is always legal for its table.

Node shapes::

    Condition(column, operator, operand)    single column predicate
    AllOf(items)                            AND of child nodes
    AnyOf(items)                            OR of child nodes
    TextSearch(columns, value)              ``$q`` free-text clause

Tags:
    andesite-core, filters, search, query-options

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from andesite.core.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection


class ColumnKind(str, Enum):
    """Declared type of a column, as far as filtering is concerned."""

    BOOLEAN = "BOOLEAN"
    STRING = "STRING"
    NUMBER = "NUMBER"
    DATE = "DATE"
    OTHER = "OTHER"


class Operator(str, Enum):
    """Filter operators accepted in an operator set."""

    EQ = "$eq"
    NEQ = "$neq"
    IS_NULL = "$isNull"
    IN = "$in"
    NIN = "$nin"
    LIKE = "$like"
    NLIKE = "$nlike"
    LT = "$lt"
    LTE = "$lte"
    GT = "$gt"
    GTE = "$gte"
    BETWEEN = "$between"
    NBETWEEN = "$nbetween"


TEXT_SEARCH_KEY = "$q"

_BASE = frozenset({Operator.EQ, Operator.NEQ, Operator.IS_NULL})
_MEMBERSHIP = frozenset({Operator.IN, Operator.NIN})
_PATTERN = frozenset({Operator.LIKE, Operator.NLIKE})
_RANGE = frozenset(
    {Operator.LT, Operator.LTE, Operator.GT, Operator.GTE, Operator.BETWEEN, Operator.NBETWEEN}
)

ALLOWED_OPERATORS: dict[ColumnKind, frozenset[Operator]] = {
    ColumnKind.BOOLEAN: _BASE,
    ColumnKind.STRING: _BASE | _MEMBERSHIP | _PATTERN,
    ColumnKind.NUMBER: _BASE | _MEMBERSHIP | _PATTERN | _RANGE,
    ColumnKind.DATE: _BASE | _MEMBERSHIP | _PATTERN | _RANGE,
    ColumnKind.OTHER: _BASE | _MEMBERSHIP,
}


def is_operator_allowed(kind: ColumnKind, operator: Operator) -> bool:
    """Whether ``operator`` may be applied to a column of ``kind``."""
    return operator in ALLOWED_OPERATORS[kind]


# ── Filter nodes ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Condition:
    """A single operator applied to one column."""

    column: str
    operator: Operator
    operand: Any = None


@dataclass(frozen=True)
class AllOf:
    """Conjunction of child nodes."""

    items: tuple[FilterNode, ...] = ()


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of child nodes."""

    items: tuple[FilterNode, ...] = ()


@dataclass(frozen=True)
class TextSearch:
    """Free-text match of ``value`` against ``columns`` (OR across columns)."""

    columns: tuple[str, ...]
    value: Any


FilterNode = Union[Condition, AllOf, AnyOf, TextSearch]

# Raw input accepted by the repository
SearchQuery = Mapping[str, Any]
Search = Union[SearchQuery, Sequence[SearchQuery]]


# ── Ordering ─────────────────────────────────────────────────────────────


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class OrderSpec:
    """Sort by ``selected_field`` in ``direction``."""

    selected_field: str
    direction: SortDirection = SortDirection.ASC

    @classmethod
    def parse(cls, value: Any) -> OrderSpec:
        """Build from an OrderSpec, a mapping, a ``(field, direction)`` pair or a column name."""
        if isinstance(value, OrderSpec):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, Mapping):
            column = value.get("selectedField", value.get("selected_field"))
            direction = value.get("direction", SortDirection.ASC)
        elif isinstance(value, Sequence) and len(value) == 2:
            column, direction = value
        else:
            raise ValidationError(f"Invalid order specification: {value!r}", field="order_by", value=value)
        if not isinstance(column, str) or not column:
            raise ValidationError("Order specification requires a column name", field="order_by", value=value)
        try:
            direction = SortDirection(str(getattr(direction, "value", direction)).lower())
        except ValueError as e:
            raise ValidationError(
                f"Invalid sort direction: {direction!r}", field="order_by", value=value, cause=e
            ) from e
        return cls(column, direction)


# ── Query options ────────────────────────────────────────────────────────


@dataclass
class QueryOptions:
    """
    Per-call options for repository operations.

    Attributes:
        selected_fields: ``"*"``, a column name, or a list of column names
        filters: search used when the operation's ``search`` argument is omitted
        order_by: one OrderSpec-like value or a list of them, primary first
        limit: page size, defaults to the repository default (100)
        offset: rows to skip, defaults to 0
        transaction: AsyncConnection with an open transaction; when set every
            statement runs on it and nothing is committed implicitly
        throw_if_no_result: raise the operation's NoResultError on zero rows
        correlation_id: carried into table events; generated when absent
    """

    selected_fields: str | Sequence[str] = "*"
    filters: Search | None = None
    order_by: Any = None
    limit: int | None = None
    offset: int | None = None
    transaction: AsyncConnection | None = None
    throw_if_no_result: bool = False
    correlation_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: QueryOptions | Mapping[str, Any] | None) -> QueryOptions:
        """Accept QueryOptions, a mapping with snake or camel case keys, or None."""
        if value is None:
            return cls()
        if isinstance(value, QueryOptions):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError(f"Invalid query options: {value!r}", field="options", value=value)
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, item in value.items():
            name = _CAMEL_TO_SNAKE.get(key, key)
            if name in _OPTION_FIELDS:
                known[name] = item
            else:
                extra[key] = item
        return cls(**known, extra=extra)


_CAMEL_TO_SNAKE = {
    "selectedFields": "selected_fields",
    "orderBy": "order_by",
    "throwIfNoResult": "throw_if_no_result",
    "correlationId": "correlation_id",
}

_OPTION_FIELDS = frozenset(
    {
        "selected_fields",
        "filters",
        "order_by",
        "limit",
        "offset",
        "transaction",
        "throw_if_no_result",
        "correlation_id",
    }
)


__all__ = [
    "ColumnKind",
    "Operator",
    "TEXT_SEARCH_KEY",
    "ALLOWED_OPERATORS",
    "is_operator_allowed",
    "Condition",
    "AllOf",
    "AnyOf",
    "TextSearch",
    "FilterNode",
    "SearchQuery",
    "Search",
    "SortDirection",
    "OrderSpec",
    "QueryOptions",
]
