"""Declarative filter language and its SQLAlchemy compiler."""

from .compiler import DEFAULT_LIMIT, DEFAULT_OFFSET, CompiledQuery, FilterCompiler
from .types import (
    ALLOWED_OPERATORS,
    TEXT_SEARCH_KEY,
    AllOf,
    AnyOf,
    ColumnKind,
    Condition,
    FilterNode,
    Operator,
    OrderSpec,
    QueryOptions,
    Search,
    SearchQuery,
    SortDirection,
    TextSearch,
    is_operator_allowed,
)

__all__ = [
    "DEFAULT_LIMIT",
    "DEFAULT_OFFSET",
    "CompiledQuery",
    "FilterCompiler",
    "ALLOWED_OPERATORS",
    "TEXT_SEARCH_KEY",
    "AllOf",
    "AnyOf",
    "ColumnKind",
    "Condition",
    "FilterNode",
    "Operator",
    "OrderSpec",
    "QueryOptions",
    "Search",
    "SearchQuery",
    "SortDirection",
    "TextSearch",
    "is_operator_allowed",
]
