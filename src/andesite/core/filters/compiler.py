"""
Filter compiler: declarative search → SQLAlchemy predicates.

Manifesto:
    Callers describe *what* rows they want with plain data; the compiler
    turns that into bound-parameter SQLAlchemy expressions. Values are never
    interpolated into SQL text, and operators are checked against the
    column's declared kind before anything reaches the database.

Architecture:
    ::

        search (dict | list[dict])
            │  parse()            validation, operator gating, value coercion
            ▼
        FilterNode tree           Condition / AllOf / AnyOf / TextSearch
            │  to_predicate()
            ▼
        ColumnElement[bool]       and_ / or_ / in_ / like / between / IS NULL

    Combination rules:

    - top-level list        → OR of the listed conjunctions
    - mapping               → AND of its field entries
    - field holding a list  → nested OR of the per-element predicates
    - scalar                → ``$eq``;  ``None`` → IS NULL
    - operator set          → AND of one predicate per operator
    - ``$q``                → OR of ``like``/``=`` across the selected columns

Examples:
    >>> compiler = FilterCompiler(schema)
    >>> compiler.where({"age": {"$gte": 18, "$lt": 65}})
    <... age >= :age_1 AND age < :age_2>
    >>> compiler.where([{"status": "active"}, {"status": "pending"}])
    <... status = :status_1 OR status = :status_2>

Guardrails:
    ❌ DON'T: Build WHERE clauses with string formatting
    ✅ DO: Go through FilterCompiler so every value is a bind parameter

Tags:
    andesite-core, filters, compiler, sqlalchemy, predicates

Doc-Types:
    - API Reference
    - Query Language Guide
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement

from andesite.core.errors import ValidationError

from .types import (
    TEXT_SEARCH_KEY,
    AllOf,
    AnyOf,
    ColumnKind,
    Condition,
    FilterNode,
    Operator,
    OrderSpec,
    QueryOptions,
    SortDirection,
    TextSearch,
    is_operator_allowed,
)

if TYPE_CHECKING:
    from andesite.core.schema import TableSchema

DEFAULT_LIMIT = 100
DEFAULT_OFFSET = 0

_SCALARS = (str, int, float, bool, dt.date, dt.datetime, dt.time)
_MULTI = frozenset({Operator.IN, Operator.NIN})
_PAIR = frozenset({Operator.BETWEEN, Operator.NBETWEEN})
_TRUE = frozenset({"true", "1", "yes"})
_FALSE = frozenset({"false", "0", "no"})


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


@dataclass
class CompiledQuery:
    """Everything a SELECT needs, produced by ``FilterCompiler.compile``."""

    columns: list[sa.Column[Any]]
    where: ColumnElement[bool] | None = None
    order_by: list[ColumnElement[Any]] = field(default_factory=list)
    limit: int | None = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET

    def apply(self, stmt: sa.Select[Any]) -> sa.Select[Any]:
        if self.where is not None:
            stmt = stmt.where(self.where)
        if self.order_by:
            stmt = stmt.order_by(*self.order_by)
        if self.limit is not None:
            stmt = stmt.limit(self.limit)
        if self.offset:
            stmt = stmt.offset(self.offset)
        return stmt


class FilterCompiler:
    """Compile searches against one table.

    Stateless apart from its schema binding, so instances can be shared
    between concurrent callers.
    """

    def __init__(
        self,
        schema: TableSchema,
        *,
        default_limit: int = DEFAULT_LIMIT,
        default_offset: int = DEFAULT_OFFSET,
    ):
        self.schema = schema
        self.default_limit = default_limit
        self.default_offset = default_offset

    # ── Parsing ──────────────────────────────────────────────────────────

    def parse(self, search: Any) -> FilterNode | None:
        """Parse a search into a node tree. ``None`` means "no restriction"."""
        if search is None:
            return None
        if isinstance(search, Mapping):
            return self._parse_conjunction(search)
        if _is_sequence(search):
            branches = []
            for item in search:
                if not isinstance(item, Mapping):
                    raise ValidationError(
                        f"Filter list entries must be mappings, got {type(item).__name__}",
                        field="filters",
                        value=item,
                    )
                node = self._parse_conjunction(item)
                if node is None:
                    # an empty conjunction matches every row, so the whole OR does
                    return None
                branches.append(node)
            if not branches:
                return None
            return branches[0] if len(branches) == 1 else AnyOf(tuple(branches))
        raise ValidationError(
            f"Search must be a mapping or a list of mappings, got {type(search).__name__}",
            field="filters",
            value=search,
        )

    def _parse_conjunction(self, search: Mapping[str, Any]) -> FilterNode | None:
        nodes: list[FilterNode] = []
        for key, value in search.items():
            if key == TEXT_SEARCH_KEY:
                nodes.append(self._parse_text_search(value))
                continue
            if not isinstance(key, str) or key.startswith("$"):
                raise ValidationError(f"Unknown filter key: {key!r}", field=str(key))
            self.schema.kind_of(key)
            node = self._parse_field(key, value)
            if node is not None:
                nodes.append(node)
        if not nodes:
            return None
        return nodes[0] if len(nodes) == 1 else AllOf(tuple(nodes))

    def _parse_field(self, column: str, value: Any) -> FilterNode | None:
        if _is_sequence(value):
            if not value:
                raise ValidationError(f"Empty alternatives for column {column!r}", field=column, value=value)
            alternatives = []
            for item in value:
                if _is_sequence(item):
                    raise ValidationError(
                        f"Nested lists are not allowed for column {column!r}", field=column, value=value
                    )
                node = self._parse_field(column, item)
                if node is None:
                    return None
                alternatives.append(node)
            return alternatives[0] if len(alternatives) == 1 else AnyOf(tuple(alternatives))
        if isinstance(value, Mapping):
            return self._parse_operator_set(column, value)
        if value is None:
            return Condition(column, Operator.IS_NULL, True)
        return Condition(column, Operator.EQ, self._coerce(column, value))

    def _parse_operator_set(self, column: str, operators: Mapping[str, Any]) -> FilterNode | None:
        kind = self.schema.kind_of(column)
        conditions: list[FilterNode] = []
        for raw, operand in operators.items():
            try:
                operator = Operator(raw)
            except ValueError as e:
                raise ValidationError(
                    f"Unknown operator {raw!r} for column {column!r}", field=column, value=raw, cause=e
                ) from e
            if not is_operator_allowed(kind, operator):
                raise ValidationError(
                    f"Operator {operator.value} is not allowed on {kind.value} column {column!r}",
                    field=column,
                    value=operator.value,
                )
            conditions.append(Condition(column, operator, self._operand(column, operator, operand)))
        if not conditions:
            return None
        return conditions[0] if len(conditions) == 1 else AllOf(tuple(conditions))

    def _operand(self, column: str, operator: Operator, operand: Any) -> Any:
        if operator is Operator.IS_NULL:
            if not isinstance(operand, bool):
                raise ValidationError(f"$isNull expects a boolean for {column!r}", field=column, value=operand)
            return operand
        if operator in _MULTI:
            if not _is_sequence(operand) and not isinstance(operand, (set, frozenset)):
                raise ValidationError(
                    f"{operator.value} expects a list for {column!r}", field=column, value=operand
                )
            return tuple(self._coerce(column, item) for item in operand)
        if operator in _PAIR:
            if not _is_sequence(operand) or len(operand) != 2:
                raise ValidationError(
                    f"{operator.value} expects exactly two values for {column!r}", field=column, value=operand
                )
            low, high = operand
            return (self._coerce(column, low), self._coerce(column, high))
        if operator in (Operator.LIKE, Operator.NLIKE):
            if operand is None or not isinstance(operand, _SCALARS):
                raise ValidationError(
                    f"{operator.value} expects a scalar for {column!r}", field=column, value=operand
                )
            return str(operand)
        if operand is not None and not isinstance(operand, _SCALARS):
            raise ValidationError(f"{operator.value} expects a scalar for {column!r}", field=column, value=operand)
        if operand is None:
            if operator in (Operator.EQ, Operator.NEQ):
                return None
            raise ValidationError(f"{operator.value} does not accept null for {column!r}", field=column)
        return self._coerce(column, operand)

    def _parse_text_search(self, value: Any) -> TextSearch:
        columns: Sequence[str] | str | None = None
        if isinstance(value, Mapping):
            columns = value.get("selectedFields", value.get("selected_fields"))
            value = value.get("value")
        if value is None or not isinstance(value, _SCALARS):
            raise ValidationError("$q expects a scalar value", field=TEXT_SEARCH_KEY, value=value)
        if columns is None or columns == "*":
            names = tuple(self.schema.column_names)
        else:
            names = (columns,) if isinstance(columns, str) else tuple(columns)
            if not names:
                raise ValidationError("$q selectedFields cannot be empty", field=TEXT_SEARCH_KEY)
            for name in names:
                self.schema.kind_of(name)
        return TextSearch(names, value)

    # ── Value coercion ───────────────────────────────────────────────────

    def _coerce(self, column: str, value: Any) -> Any:
        """Convert wire values (mostly strings) to the column's Python type."""
        if value is None:
            return None
        if not isinstance(value, _SCALARS):
            raise ValidationError(
                f"Unsupported value for column {column!r}: {type(value).__name__}", field=column, value=value
            )
        kind = self.schema.kind_of(column)
        if kind is ColumnKind.BOOLEAN:
            coerced = _as_bool(value)
            if coerced is None:
                raise ValidationError(f"Column {column!r} expects a boolean", field=column, value=value)
            return coerced
        if kind is ColumnKind.NUMBER:
            if isinstance(value, bool):
                raise ValidationError(f"Column {column!r} expects a number", field=column, value=value)
            if isinstance(value, (int, float)):
                return value
            coerced = _as_number(value)
            if coerced is None:
                raise ValidationError(f"Column {column!r} expects a number", field=column, value=value)
            return coerced
        if kind is ColumnKind.DATE and isinstance(value, str):
            return self._as_temporal(column, value)
        return value

    def _as_temporal(self, column: str, value: str) -> Any:
        try:
            python_type = self.schema.table.c[column].type.python_type
        except NotImplementedError:
            return value
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            if python_type is dt.datetime:
                return dt.datetime.fromisoformat(text)
            if python_type is dt.date:
                return dt.date.fromisoformat(text[:10]) if "T" in text else dt.date.fromisoformat(text)
            if python_type is dt.time:
                return dt.time.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(
                f"Column {column!r} expects an ISO date, got {value!r}", field=column, value=value, cause=e
            ) from e
        return value

    # ── Compilation ──────────────────────────────────────────────────────

    def to_predicate(self, node: FilterNode) -> ColumnElement[bool]:
        """Compile a node tree into a SQLAlchemy boolean expression."""
        if isinstance(node, Condition):
            return self._condition(node)
        if isinstance(node, AllOf):
            return sa.and_(*[self.to_predicate(item) for item in node.items])
        if isinstance(node, AnyOf):
            return sa.or_(*[self.to_predicate(item) for item in node.items])
        if isinstance(node, TextSearch):
            return self._text_search(node)
        raise ValidationError(f"Unsupported filter node: {node!r}")

    def where(self, search: Any) -> ColumnElement[bool] | None:
        """Parse and compile; ``None`` when the search places no restriction."""
        node = self.parse(search)
        return None if node is None else self.to_predicate(node)

    def _condition(self, node: Condition) -> ColumnElement[bool]:
        column = self.schema.column(node.column)
        operand = node.operand
        match node.operator:
            case Operator.EQ:
                return column.is_(None) if operand is None else column == operand
            case Operator.NEQ:
                return column.is_not(None) if operand is None else column != operand
            case Operator.IS_NULL:
                return column.is_(None) if operand else column.is_not(None)
            case Operator.IN:
                return column.in_(operand)
            case Operator.NIN:
                return column.not_in(operand)
            case Operator.LIKE:
                return self._like_target(node.column).like(f"%{operand}%")
            case Operator.NLIKE:
                return self._like_target(node.column).not_like(f"%{operand}%")
            case Operator.LT:
                return column < operand
            case Operator.LTE:
                return column <= operand
            case Operator.GT:
                return column > operand
            case Operator.GTE:
                return column >= operand
            case Operator.BETWEEN:
                return column.between(*operand)
            case Operator.NBETWEEN:
                return sa.not_(column.between(*operand))
        raise ValidationError(f"Unsupported operator: {node.operator!r}")

    def _like_target(self, name: str) -> ColumnElement[Any]:
        column = self.schema.column(name)
        if self.schema.kind_of(name) is ColumnKind.STRING:
            return column
        return sa.cast(column, sa.String)

    def _text_search(self, node: TextSearch) -> ColumnElement[bool]:
        clauses: list[ColumnElement[bool]] = []
        for name in node.columns:
            kind = self.schema.kind_of(name)
            column = self.schema.column(name)
            if kind in (ColumnKind.STRING, ColumnKind.DATE):
                clauses.append(self._like_target(name).like(f"%{node.value}%"))
            elif kind is ColumnKind.NUMBER and not isinstance(node.value, bool):
                number = node.value if isinstance(node.value, (int, float)) else _as_number(str(node.value))
                if number is not None:
                    clauses.append(column == number)
            elif kind is ColumnKind.BOOLEAN:
                flag = _as_bool(node.value)
                if flag is not None:
                    clauses.append(column == flag)
        if not clauses:
            return sa.false()
        return sa.or_(*clauses)

    # ── Projection / ordering / pagination ───────────────────────────────

    def columns(self, selected_fields: str | Sequence[str] | None = "*") -> list[sa.Column[Any]]:
        """Resolve a projection. ``"*"`` (or None) selects every column."""
        if selected_fields is None or selected_fields == "*":
            return list(self.schema.table.columns)
        if isinstance(selected_fields, str):
            return [self.schema.column(selected_fields)]
        if not _is_sequence(selected_fields) or not selected_fields:
            raise ValidationError(
                "selected_fields must be '*', a column name or a non-empty list",
                field="selected_fields",
                value=selected_fields,
            )
        return [self.schema.column(name) for name in selected_fields]

    def order_by(self, order_by: Any, *, default_to_primary_key: bool = True) -> list[ColumnElement[Any]]:
        """Resolve ordering; the first spec has primary precedence."""
        if order_by is None:
            if not default_to_primary_key:
                return []
            pk_column = self.schema.primary_key.column
            if not self.schema.has_column(pk_column):
                return []
            specs = [OrderSpec(pk_column)]
        elif isinstance(order_by, (OrderSpec, Mapping, str)) or _is_pair(order_by):
            specs = [OrderSpec.parse(order_by)]
        elif _is_sequence(order_by):
            specs = [OrderSpec.parse(item) for item in order_by]
        else:
            raise ValidationError(f"Invalid order specification: {order_by!r}", field="order_by", value=order_by)

        clauses: list[ColumnElement[Any]] = []
        for spec in specs:
            column = self.schema.column(spec.selected_field)
            clauses.append(column.desc() if spec.direction is SortDirection.DESC else column.asc())
        return clauses

    def pagination(self, limit: Any = None, offset: Any = None) -> tuple[int, int]:
        """Validate ``limit`` (≥ 1) and ``offset`` (≥ 0), applying defaults."""
        resolved_limit = self.default_limit if limit is None else _as_int("limit", limit)
        resolved_offset = self.default_offset if offset is None else _as_int("offset", offset)
        if resolved_limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", value=limit)
        if resolved_offset < 0:
            raise ValidationError("offset must be non-negative", field="offset", value=offset)
        return resolved_limit, resolved_offset

    def compile(
        self,
        search: Any,
        options: QueryOptions,
        *,
        paginate: bool = True,
    ) -> CompiledQuery:
        """Compile search and read options into a ``CompiledQuery``."""
        columns = self.columns(options.selected_fields)
        where = self.where(search)
        order_by = self.order_by(options.order_by)
        if paginate:
            limit, offset = self.pagination(options.limit, options.offset)
        else:
            limit = None if options.limit is None else self.pagination(options.limit, 0)[0]
            offset = self.pagination(None, options.offset)[1]
        return CompiledQuery(columns=columns, where=where, order_by=order_by, limit=limit, offset=offset)


def _is_pair(value: Any) -> bool:
    return (
        isinstance(value, tuple)
        and len(value) == 2
        and isinstance(value[0], str)
        and str(getattr(value[1], "value", value[1])).lower() in ("asc", "desc")
    )


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", field=name, value=value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as e:
            raise ValidationError(f"{name} must be an integer", field=name, value=value, cause=e) from e
    raise ValidationError(f"{name} must be an integer", field=name, value=value)


def _as_number(value: str) -> int | float | None:
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


__all__ = [
    "DEFAULT_LIMIT",
    "DEFAULT_OFFSET",
    "CompiledQuery",
    "FilterCompiler",
]
