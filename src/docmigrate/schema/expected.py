"""
Expected target table shapes, derived from the record models.

Each record field maps to a column with a TypeFamily and a nullability.
Catalog types reported by the database are mapped to the same families so
that validation compares families, not exact type names.
"""

from __future__ import annotations

import types
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Union, get_args, get_origin
from uuid import UUID

from docmigrate.transformers.records import JsonColumn, TargetRecord


class TypeFamily(Enum):
    """Broad column type families used for compatibility checks."""

    IDENTIFIER = "identifier"
    """UUID primary and foreign keys."""

    TEXT = "text"
    """Character data of any length."""

    INTEGER = "integer"
    """Whole numbers."""

    NUMERIC = "numeric"
    """Floating point and arbitrary precision numbers."""

    BOOLEAN = "boolean"
    """True or false."""

    TIMESTAMP = "timestamp"
    """Dates, times and timestamps."""

    JSON = "json"
    """json and jsonb."""


@dataclass(frozen=True)
class ColumnShape:
    """Expected column: name, type family and whether null is allowed."""

    name: str
    family: TypeFamily
    nullable: bool


@dataclass(frozen=True)
class TableShape:
    """Expected columns of one target table, in model field order."""

    table_name: str
    columns: tuple[ColumnShape, ...]

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def column(self, name: str) -> ColumnShape | None:
        return next((c for c in self.columns if c.name == name), None)


_SCALAR_FAMILIES: tuple[tuple[type, TypeFamily], ...] = (
    (UUID, TypeFamily.IDENTIFIER),
    # bool before int: bool is an int subclass
    (bool, TypeFamily.BOOLEAN),
    (int, TypeFamily.INTEGER),
    (float, TypeFamily.NUMERIC),
    (str, TypeFamily.TEXT),
    (datetime, TypeFamily.TIMESTAMP),
    (date, TypeFamily.TIMESTAMP),
)


def _split_optional(annotation: Any) -> tuple[Any, bool]:
    if get_origin(annotation) in (Union, types.UnionType):
        args = get_args(annotation)
        non_none = [arg for arg in args if arg is not type(None)]
        allows_none = len(non_none) < len(args)
        return (non_none[0] if len(non_none) == 1 else Any), allows_none
    return annotation, False


def family_for_annotation(annotation: Any, metadata: Iterable[Any] = ()) -> TypeFamily:
    """Map a record field annotation to a TypeFamily."""
    if any(isinstance(meta, JsonColumn) for meta in metadata):
        return TypeFamily.JSON
    base, _ = _split_optional(annotation)
    if isinstance(base, type):
        for python_type, family in _SCALAR_FAMILIES:
            if issubclass(base, python_type):
                return family
    # dict, list and Any are stored as JSON
    return TypeFamily.JSON


def expected_table_shape(record_type: type[TargetRecord]) -> TableShape:
    """
    Derive the expected table shape from a record model.

    Example:
        >>> shape = expected_table_shape(EntryRecord)
        >>> shape.column("sgv")
        ColumnShape(name='sgv', family=<TypeFamily.NUMERIC: 'numeric'>, nullable=True)
    """
    columns = []
    for name, info in record_type.model_fields.items():
        _, allows_none = _split_optional(info.annotation)
        defaults_to_none = not info.is_required() and info.default is None and info.default_factory is None
        nullable = allows_none or defaults_to_none
        columns.append(ColumnShape(name, family_for_annotation(info.annotation, info.metadata), nullable))
    return TableShape(record_type.table_name, tuple(columns))


_DB_TYPE_FAMILIES: tuple[tuple[tuple[str, ...], TypeFamily], ...] = (
    (("uuid",), TypeFamily.IDENTIFIER),
    (("jsonb", "json"), TypeFamily.JSON),
    (("bool",), TypeFamily.BOOLEAN),
    (("timestamp", "date", "time", "interval"), TypeFamily.TIMESTAMP),
    (("smallint", "integer", "bigint", "int", "serial"), TypeFamily.INTEGER),
    (("numeric", "decimal", "real", "double", "float", "money"), TypeFamily.NUMERIC),
    (("char", "text", "clob", "citext", "string"), TypeFamily.TEXT),
)


def family_for_db_type(type_name: str) -> TypeFamily | None:
    """
    Map a catalog type name (``information_schema`` or SQLite affinity) to a family.

    Returns None for types outside every family (arrays, bytea, geometric).
    """
    name = type_name.lower().split("(", 1)[0].strip()
    if name.endswith("[]") or name == "array":
        return None
    for prefixes, family in _DB_TYPE_FAMILIES:
        if any(name.startswith(prefix) for prefix in prefixes):
            return family
    return None


_COMPATIBLE: dict[TypeFamily, frozenset[TypeFamily]] = {
    TypeFamily.IDENTIFIER: frozenset({TypeFamily.IDENTIFIER, TypeFamily.TEXT}),
    TypeFamily.TEXT: frozenset({TypeFamily.TEXT}),
    TypeFamily.INTEGER: frozenset({TypeFamily.INTEGER, TypeFamily.NUMERIC}),
    TypeFamily.NUMERIC: frozenset({TypeFamily.NUMERIC}),
    TypeFamily.BOOLEAN: frozenset({TypeFamily.BOOLEAN}),
    TypeFamily.TIMESTAMP: frozenset({TypeFamily.TIMESTAMP}),
    TypeFamily.JSON: frozenset({TypeFamily.JSON}),
}


def is_compatible(expected: TypeFamily, db_type: str) -> bool:
    """True when a column of catalog type ``db_type`` can hold values of ``expected``."""
    actual = family_for_db_type(db_type)
    return actual is not None and actual in _COMPATIBLE[expected]


__all__ = [
    "ColumnShape",
    "TableShape",
    "TypeFamily",
    "expected_table_shape",
    "family_for_annotation",
    "family_for_db_type",
    "is_compatible",
]
