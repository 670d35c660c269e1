"""
Reflected table descriptions.

A ``TableSchema`` is what the filter compiler and the repository know about a
table: the SQLAlchemy ``Table``, its primary key and the filtering kind of
every column. Schemas come from database reflection (see
``DatabaseHandle.get_table``) or can be built by hand from a ``Table``.

Tags:
    andesite-core, schema, reflection, sqlalchemy

Doc-Types:
    api-reference
"""

from __future__ import annotations

import datetime as dt
import decimal
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import sqlalchemy as sa

from andesite.core.errors import ConfigError, ValidationError
from andesite.core.filters.types import ColumnKind

_PK_KINDS = (ColumnKind.NUMBER, ColumnKind.STRING)


def column_kind_for(type_: sa.types.TypeEngine[Any]) -> ColumnKind:
    """Map a SQLAlchemy column type to its filtering kind."""
    if isinstance(type_, sa.Boolean):
        return ColumnKind.BOOLEAN
    try:
        python_type = type_.python_type
    except NotImplementedError:
        return ColumnKind.OTHER
    if python_type is bool:
        return ColumnKind.BOOLEAN
    if issubclass(python_type, str):
        return ColumnKind.STRING
    if issubclass(python_type, (int, float, decimal.Decimal)):
        return ColumnKind.NUMBER
    if issubclass(python_type, (dt.date, dt.datetime, dt.time)):
        return ColumnKind.DATE
    return ColumnKind.OTHER


@dataclass(frozen=True)
class PrimaryKey:
    """Primary key column and its kind (NUMBER or STRING)."""

    column: str = "id"
    kind: ColumnKind = ColumnKind.NUMBER

    @classmethod
    def parse(cls, value: PrimaryKey | Sequence[Any] | str) -> PrimaryKey:
        """Accept a PrimaryKey, a column name or a ``(column, kind)`` pair."""
        if isinstance(value, PrimaryKey):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, Sequence) and len(value) == 2:
            column, kind = value
            try:
                kind = ColumnKind(str(getattr(kind, "value", kind)).upper())
            except ValueError as e:
                raise ConfigError(f"Invalid primary key kind: {kind!r}", cause=e) from e
            if kind not in _PK_KINDS:
                raise ConfigError(f"Primary key kind must be NUMBER or STRING, got {kind.value}")
            return cls(str(column), kind)
        raise ConfigError(f"Invalid primary key: {value!r}")

    def coerce(self, value: Any) -> Any:
        """Normalise a primary key value to the declared kind."""
        if value is None or isinstance(value, bool):
            raise ValidationError("Primary key value is required", field=self.column, value=value)
        if self.kind is ColumnKind.NUMBER:
            if isinstance(value, int):
                return value
            message = f"Primary key {self.column} expects a number, got {value!r}"
            if not isinstance(value, str):
                raise ValidationError(message, field=self.column, value=value)
            try:
                return int(value)
            except ValueError as e:
                raise ValidationError(message, field=self.column, value=value, cause=e) from e
        return str(value)


@dataclass(frozen=True)
class TableSchema:
    """Filtering-relevant description of one table."""

    name: str
    table: sa.Table
    primary_key: PrimaryKey
    column_kinds: dict[str, ColumnKind] = field(default_factory=dict)
    database: str = ""

    @classmethod
    def from_table(
        cls,
        table: sa.Table,
        *,
        database: str = "",
        primary_key: PrimaryKey | Sequence[Any] | str | None = None,
    ) -> TableSchema:
        kinds = {column.name: column_kind_for(column.type) for column in table.columns}
        if primary_key is None:
            pk = cls._reflected_primary_key(table, kinds)
        else:
            pk = PrimaryKey.parse(primary_key)
            if pk.column not in kinds:
                raise ConfigError(f"Primary key column {pk.column!r} not found in table {table.name!r}")
        return cls(name=table.name, table=table, primary_key=pk, column_kinds=kinds, database=database)

    @staticmethod
    def _reflected_primary_key(table: sa.Table, kinds: dict[str, ColumnKind]) -> PrimaryKey:
        columns = list(table.primary_key.columns)
        if len(columns) == 1:
            kind = kinds[columns[0].name]
            return PrimaryKey(columns[0].name, kind if kind in _PK_KINDS else ColumnKind.STRING)
        return PrimaryKey()

    def with_primary_key(self, primary_key: PrimaryKey | Sequence[Any] | str) -> TableSchema:
        pk = PrimaryKey.parse(primary_key)
        if pk.column not in self.column_kinds:
            raise ConfigError(f"Primary key column {pk.column!r} not found in table {self.name!r}")
        return replace(self, primary_key=pk)

    @property
    def column_names(self) -> list[str]:
        return list(self.column_kinds)

    def has_column(self, name: str) -> bool:
        return name in self.column_kinds

    def column(self, name: str) -> sa.Column[Any]:
        """Return the column, raising ValidationError for unknown names."""
        if name not in self.column_kinds:
            raise ValidationError(f"Unknown column {name!r} for table {self.name!r}", field=name)
        return self.table.c[name]

    def kind_of(self, name: str) -> ColumnKind:
        if name not in self.column_kinds:
            raise ValidationError(f"Unknown column {name!r} for table {self.name!r}", field=name)
        return self.column_kinds[name]


__all__ = [
    "column_kind_for",
    "PrimaryKey",
    "TableSchema",
]
