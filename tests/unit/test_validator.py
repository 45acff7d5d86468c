"""
Unit tests for SchemaValidator.

Tests cover:
- Table, column, type, nullability and index checks
- Per-document validation against a discovered table
- Sampled data compatibility validation
- Duplicate id and inconsistent field type detection
- Referential integrity between profiles and treatments

The introspector is a MagicMock serving TableSchema values built from the
record models, so no database is involved.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from bson import ObjectId

from docmigrate.introspection import ColumnSchema, IndexSchema, SchemaIntrospector, TableSchema
from docmigrate.models import ValidationOptions
from docmigrate.schema.expected import TypeFamily, expected_table_shape
from docmigrate.stores import InMemorySourceStore
from docmigrate.transformers import RECORD_TYPES, EntryRecord, TargetRecord
from docmigrate.validator import SchemaValidator, is_reserved_keyword

EntryFactory = Callable[..., dict[str, Any]]

CATALOG_TYPES = {
    TypeFamily.IDENTIFIER: "uuid",
    TypeFamily.TEXT: "text",
    TypeFamily.INTEGER: "bigint",
    TypeFamily.NUMERIC: "double precision",
    TypeFamily.BOOLEAN: "boolean",
    TypeFamily.TIMESTAMP: "timestamp with time zone",
    TypeFamily.JSON: "jsonb",
}


def matching_table(
    record_type: type[TargetRecord],
    *,
    indexes: tuple[IndexSchema, ...] = (),
    **overrides: ColumnSchema | None,
) -> TableSchema:
    """A TableSchema matching the record model; overrides replace or remove columns."""
    shape = expected_table_shape(record_type)
    columns = {
        column.name: ColumnSchema(
            column.name, CATALOG_TYPES[column.family], column.nullable, column.name == "id"
        )
        for column in shape.columns
    }
    for name, column in overrides.items():
        if column is None:
            columns.pop(name, None)
        else:
            columns[name] = column
    return TableSchema(shape.table_name, columns, indexes)


def make_introspector(*tables: TableSchema) -> MagicMock:
    by_name = {table.name: table for table in tables}
    introspector = MagicMock(spec=SchemaIntrospector)
    introspector.discover_all_tables.return_value = by_name
    introspector.discover_table.side_effect = lambda name: by_name.get(name)
    return introspector


def make_validator(
    source: InMemorySourceStore,
    *tables: TableSchema,
    options: ValidationOptions | None = None,
) -> SchemaValidator:
    return SchemaValidator(source, make_introspector(*tables), options=options, enable_tracing=False)


class TestValidateSchema:
    """Tests for validate_schema."""

    @pytest.mark.asyncio
    async def test_matching_schema_is_valid(self, source_store: InMemorySourceStore) -> None:
        validator = make_validator(source_store, *(matching_table(t) for t in RECORD_TYPES))

        result = await validator.validate_schema()

        assert result.is_valid
        assert result.missing_tables == []
        assert set(result.tables) == {t.table_name for t in RECORD_TYPES}

    @pytest.mark.asyncio
    async def test_missing_table(self, source_store: InMemorySourceStore) -> None:
        validator = make_validator(source_store)

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert result.missing_tables == ["entries"]
        assert [str(e) for e in result.errors] == ["entries: Table 'entries' does not exist"]
        assert not result.to_validation_result().is_valid

    @pytest.mark.asyncio
    async def test_missing_column(self, source_store: InMemorySourceStore) -> None:
        validator = make_validator(source_store, matching_table(EntryRecord, sgv=None))

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert [str(e) for e in result.errors] == ["entries.sgv: Column 'sgv' does not exist"]

    @pytest.mark.asyncio
    async def test_incompatible_column_type(self, source_store: InMemorySourceStore) -> None:
        table = matching_table(EntryRecord, sgv=ColumnSchema("sgv", "text", True))
        validator = make_validator(source_store, table)

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert len(result.errors) == 1
        assert result.errors[0].field == "entries.sgv"
        assert result.errors[0].value == "text"

    @pytest.mark.asyncio
    async def test_integer_column_accepts_numeric_type(self, source_store: InMemorySourceStore) -> None:
        """Test that compatibility compares type families, not exact names."""
        table = matching_table(EntryRecord, mills=ColumnSchema("mills", "numeric(20,0)", False))
        validator = make_validator(source_store, table)

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert result.is_valid

    @pytest.mark.asyncio
    async def test_not_null_column_for_nullable_field(self, source_store: InMemorySourceStore) -> None:
        table = matching_table(EntryRecord, device=ColumnSchema("device", "character varying", False))
        validator = make_validator(source_store, table)

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert [e.field for e in result.errors] == ["entries.device"]

    @pytest.mark.asyncio
    async def test_expected_indexes(self, source_store: InMemorySourceStore) -> None:
        table = matching_table(
            EntryRecord, indexes=(IndexSchema("entries_pkey", ("id",), unique=True, is_primary=True),)
        )
        options = ValidationOptions(expected_indexes={"entries": ("entries_pkey", "ix_entries_mills")})
        validator = make_validator(source_store, table, options=options)

        result = await validator.validate_schema(validator.expected_shapes(["entries"]))

        assert [str(e) for e in result.errors] == [
            "entries.ix_entries_mills: Index 'ix_entries_mills' does not exist"
        ]


class TestValidateDocument:
    """Tests for validate_document and validate_data_compatibility."""

    @pytest.mark.asyncio
    async def test_compatible_document(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_document(make_entry(0), "entries")

        assert result.is_valid
        assert not result.has_conflicts

    @pytest.mark.asyncio
    async def test_missing_table(self, source_store: InMemorySourceStore, make_entry: EntryFactory) -> None:
        validator = make_validator(source_store)

        result = await validator.validate_document(make_entry(0), "entries")

        assert [e.field for e in result.errors] == ["collection"]

    @pytest.mark.asyncio
    async def test_required_column_without_value(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        table = matching_table(EntryRecord, device=ColumnSchema("device", "text", False))
        validator = make_validator(source_store, table)
        document = make_entry(0)
        del document["device"]

        result = await validator.validate_document(document, "entries")

        assert [str(e) for e in result.errors] == ["device: Required field 'device' is missing or null"]

    @pytest.mark.asyncio
    async def test_type_mismatch_is_a_conflict(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_document(make_entry(0, sgv="high"), "entries")

        assert result.is_valid
        assert [c.conflict_type for c in result.conflicts] == ["TypeMismatch"]
        assert result.conflicts[0].option_names == ["convert", "skip", "use_default"]

    @pytest.mark.asyncio
    async def test_reserved_keyword_is_a_conflict(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_document(make_entry(0, user="uploader"), "entries")

        conflict = result.conflicts[0]
        assert conflict.conflict_type == "ReservedKeyword"
        assert conflict.resolution_options[0].value == "user_field"

    @pytest.mark.asyncio
    async def test_invalid_document_reports_transformer_errors(
        self, source_store: InMemorySourceStore
    ) -> None:
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_document({"_id": ObjectId(), "sgv": 100}, "entries")

        assert [e.message for e in result.errors] == [
            "No valid timestamp found (date, mills, or dateString)"
        ]

    @pytest.mark.asyncio
    async def test_data_compatibility_samples_supported_collections(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        source_store.add_documents("entries", [make_entry(i) for i in range(5)])
        source_store.add_documents("entries", [{"_id": ObjectId(), "sgv": 100}])
        source_store.add_documents("widgets", [{"_id": ObjectId()}])
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_data_compatibility(["entries", "widgets"])

        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_data_compatibility_respects_sample_size(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        source_store.add_documents("entries", [make_entry(i) for i in range(5)])
        source_store.add_documents("entries", [{"_id": ObjectId(), "sgv": 100}])
        validator = make_validator(source_store, matching_table(EntryRecord))

        result = await validator.validate_data_compatibility(["entries"], sample_size=5)

        assert result.is_valid


class TestDetectConflicts:
    """Tests for detect_conflicts."""

    @pytest.mark.asyncio
    async def test_duplicate_ids(self, source_store: InMemorySourceStore, make_entry: EntryFactory) -> None:
        source_store.add_documents("entries", [make_entry(0), make_entry(1), make_entry(0)])
        validator = make_validator(source_store)

        result = await validator.detect_conflicts(["entries"])

        assert result.is_valid
        assert [c.conflict_type for c in result.conflicts] == ["DuplicateId"]
        assert result.conflicts[0].value == make_entry(0)["_id"]
        assert result.conflicts[0].option_names == ["skip", "generate_new_id"]
        assert result.conflicts[0].collection == "entries"

    @pytest.mark.asyncio
    async def test_inconsistent_field_types(
        self, source_store: InMemorySourceStore, make_entry: EntryFactory
    ) -> None:
        source_store.add_documents(
            "entries", [make_entry(0), make_entry(1, sgv="high"), make_entry(2, sgv=None)]
        )
        validator = make_validator(source_store)

        result = await validator.detect_conflicts(["entries"])

        assert [c.conflict_type for c in result.conflicts] == ["InconsistentFieldType"]
        assert result.conflicts[0].value == ("number", "string")
        assert result.conflicts[0].resolution_options[1].value == "number"

    @pytest.mark.asyncio
    async def test_clean_collection(self, source_store: InMemorySourceStore, make_entry: EntryFactory) -> None:
        source_store.add_documents("entries", [make_entry(i) for i in range(10)])
        validator = make_validator(source_store)

        result = await validator.detect_conflicts(["entries"])

        assert not result.has_conflicts


class TestReferentialIntegrity:
    """Tests for validate_referential_integrity."""

    @pytest.mark.asyncio
    async def test_default_profile_must_be_in_store(self, source_store: InMemorySourceStore) -> None:
        source_store.add_documents(
            "profiles", [{"_id": ObjectId(), "defaultProfile": "Night", "store": {"Day": {}}}]
        )
        validator = make_validator(source_store)

        result = await validator.validate_referential_integrity(["profiles"])

        assert [c.conflict_type for c in result.conflicts] == ["DanglingReference"]
        assert result.conflicts[0].value == "Night"
        assert result.conflicts[0].resolution_options[0].value == "Day"

    @pytest.mark.asyncio
    async def test_treatment_profile_references(
        self, source_store: InMemorySourceStore, make_treatment: Callable[..., dict[str, Any]]
    ) -> None:
        source_store.add_documents(
            "profiles", [{"_id": ObjectId(), "defaultProfile": "Day", "store": {"Day": {}}}]
        )
        source_store.add_documents(
            "treatments",
            [
                make_treatment(0, profile="Day"),
                make_treatment(1, profile="Exercise"),
                make_treatment(2, profile=""),
                make_treatment(3),
            ],
        )
        validator = make_validator(source_store)

        result = await validator.validate_referential_integrity(["treatments"])

        assert [c.value for c in result.conflicts] == ["Exercise"]
        assert result.conflicts[0].collection == "treatments"
        assert result.conflicts[0].option_names == ["clear_reference", "ignore"]


@pytest.mark.parametrize(("name", "reserved"), [("user", True), ("Order", True), ("sgv", False)])
def test_is_reserved_keyword(name: str, reserved: bool) -> None:
    assert is_reserved_keyword(name) is reserved
