"""
Pre-migration schema and data validation.

SchemaValidator answers one question before any row is written: can the
target receive the source documents? It reports two kinds of findings:

- ValidationError: blocking. A missing table or column, an incompatible
  column type, a missing required value.
- ValidationConflict: non-blocking. Duplicate ids, inconsistent field types,
  reserved keywords, dangling references. Each conflict lists resolution
  options; the engine blocks on conflicts only when asked to.

Connectivity failures are not findings. They propagate as ConnectivityError.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from docmigrate.exceptions import TransformationError
from docmigrate.introspection import SchemaIntrospector, TableSchema
from docmigrate.models import (
    ConflictResolutionOption,
    ValidationConflict,
    ValidationError,
    ValidationOptions,
    ValidationResult,
)
from docmigrate.observability import ATTR_COLLECTION, ATTR_DOCUMENT_COUNT, Tracer, create_tracer
from docmigrate.schema.expected import (
    TableShape,
    TypeFamily,
    expected_table_shape,
    family_for_db_type,
    is_compatible,
)
from docmigrate.stores.source import SourceStore
from docmigrate.transformers import TransformationService, ValueKind, value_kind

logger = logging.getLogger(__name__)

GENERATED_COLUMNS = frozenset(
    {"id", "created_at", "updated_at", "sys_created_at", "sys_updated_at", "date"}
)
"""Columns filled during transformation, exempt from the required-value check."""

TYPE_SAMPLE_SIZE = 100
MAX_ERRORS_PER_COLLECTION = 100
MAX_DANGLING_REFERENCES = 100

POSTGRES_RESERVED_KEYWORDS = frozenset(
    {
        "all", "alter", "and", "as", "begin", "between", "case", "check", "column",
        "commit", "constraint", "create", "default", "delete", "distinct", "drop",
        "else", "end", "exists", "foreign", "from", "full", "grant", "group",
        "having", "in", "index", "inner", "insert", "join", "key", "left", "like",
        "not", "null", "on", "or", "order", "outer", "primary", "references",
        "revoke", "right", "role", "rollback", "select", "table", "then",
        "transaction", "union", "unique", "update", "user", "when", "where",
    }
)
"""Common PostgreSQL keywords that clash with unquoted column names."""

_ACCEPTED_KINDS: dict[TypeFamily, frozenset[ValueKind]] = {
    TypeFamily.IDENTIFIER: frozenset({ValueKind.STRING, ValueKind.OBJECT_ID, ValueKind.BINARY}),
    TypeFamily.TEXT: frozenset({ValueKind.STRING, ValueKind.OBJECT_ID}),
    TypeFamily.INTEGER: frozenset({ValueKind.NUMBER}),
    TypeFamily.NUMERIC: frozenset({ValueKind.NUMBER}),
    TypeFamily.BOOLEAN: frozenset({ValueKind.BOOLEAN}),
    TypeFamily.TIMESTAMP: frozenset({ValueKind.DATE, ValueKind.NUMBER, ValueKind.STRING}),
    TypeFamily.JSON: frozenset(ValueKind),
}


def _type_mismatch(field_name: str, value: Any, db_type: str, collection: str) -> ValidationConflict:
    return ValidationConflict(
        conflict_type="TypeMismatch",
        description=(
            f"Type mismatch for field '{field_name}': "
            f"{value_kind(value).value} cannot be converted to {db_type}"
        ),
        value=value,
        resolution_options=(
            ConflictResolutionOption("convert", f"Attempt automatic conversion to {db_type}", "convert"),
            ConflictResolutionOption("skip", "Skip this field during migration", "skip"),
            ConflictResolutionOption("use_default", f"Use the default value for {db_type}", "default"),
        ),
        collection=collection,
    )


def _reserved_keyword(field_name: str, collection: str) -> ValidationConflict:
    return ValidationConflict(
        conflict_type="ReservedKeyword",
        description=f"Field name '{field_name}' conflicts with a PostgreSQL reserved keyword",
        value=field_name,
        resolution_options=(
            ConflictResolutionOption("rename", f"Rename to '{field_name}_field'", f"{field_name}_field"),
        ),
        collection=collection,
    )


def _dangling(
    description: str,
    value: Any,
    collection: str,
    *options: ConflictResolutionOption,
) -> ValidationConflict:
    return ValidationConflict(
        conflict_type="DanglingReference",
        description=description,
        value=value,
        resolution_options=options,
        collection=collection,
    )


def is_reserved_keyword(identifier: str) -> bool:
    return identifier.lower() in POSTGRES_RESERVED_KEYWORDS


# =============================================================================
# Schema validation results
# =============================================================================


@dataclass(frozen=True)
class TableValidationResult:
    """
    Schema validation outcome for one table.

    Attributes:
        table_name: Target table.
        exists: Whether the table was found.
        errors: Blocking findings for this table, in column order.
    """

    table_name: str
    exists: bool
    errors: tuple[ValidationError, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.exists and not self.errors


@dataclass(frozen=True)
class SchemaValidationResult:
    """Schema validation outcome for every checked table."""

    tables: Mapping[str, TableValidationResult] = field(default_factory=dict)

    @property
    def errors(self) -> tuple[ValidationError, ...]:
        return tuple(error for table in self.tables.values() for error in table.errors)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def missing_tables(self) -> list[str]:
        return [name for name, table in self.tables.items() if not table.exists]

    def to_validation_result(self) -> ValidationResult:
        return ValidationResult.from_findings(self.errors)


# =============================================================================
# Validator
# =============================================================================


class SchemaValidator:
    """
    Validates the target schema and samples of source data.

    Example:
        >>> validator = SchemaValidator(source, introspector)
        >>> schema = await validator.validate_schema()
        >>> schema.missing_tables
        []
        >>> conflicts = await validator.detect_conflicts(["entries"])
        >>> [c.conflict_type for c in conflicts.conflicts]
        ['DuplicateId']
    """

    def __init__(
        self,
        source: SourceStore,
        introspector: SchemaIntrospector,
        transformation_service: TransformationService | None = None,
        options: ValidationOptions | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._introspector = introspector
        self._transformations = transformation_service or TransformationService()
        self.options = options or ValidationOptions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def expected_shapes(self, collections: Iterable[str] | None = None) -> list[TableShape]:
        """Expected table shapes for collections, or for every supported collection."""
        names = self._transformations.supported_collections() if collections is None else collections
        return [
            expected_table_shape(self._transformations.record_type_for(name))
            for name in names
            if self._transformations.supports(name)
        ]

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    async def validate_schema(self, expected: Sequence[TableShape] | None = None) -> SchemaValidationResult:
        """
        Compare target tables against the expected shapes.

        Args:
            expected: Shapes to check. Defaults to every supported collection.

        Raises:
            ConnectivityError: If the target catalog cannot be read.
        """
        shapes = list(expected) if expected is not None else self.expected_shapes()
        with self._tracer.span("docmigrate.validator.validate_schema"):
            discovered = await self._introspector.discover_all_tables()
            results = {
                shape.table_name: self._validate_table(shape, discovered.get(shape.table_name))
                for shape in shapes
            }
        result = SchemaValidationResult(results)
        logger.info("Schema validation completed. %d errors found", len(result.errors))
        return result

    def _validate_table(self, shape: TableShape, table: TableSchema | None) -> TableValidationResult:
        name = shape.table_name
        if table is None:
            return TableValidationResult(
                name,
                exists=False,
                errors=(ValidationError(name, f"Table '{name}' does not exist", name),),
            )

        errors: list[ValidationError] = []
        for column in shape.columns:
            actual = table.columns.get(column.name)
            qualified = f"{name}.{column.name}"
            if actual is None:
                errors.append(ValidationError(qualified, f"Column '{column.name}' does not exist"))
                continue
            if not is_compatible(column.family, actual.data_type):
                errors.append(
                    ValidationError(
                        qualified,
                        f"Column type '{actual.data_type}' is not compatible with {column.family.value}",
                        actual.data_type,
                    )
                )
            if column.nullable and not actual.nullable and not actual.is_primary_key:
                errors.append(
                    ValidationError(qualified, "Column is NOT NULL but migrated values may be null")
                )

        for index_name in self.options.expected_indexes.get(name, ()):
            if index_name not in table.index_names:
                errors.append(
                    ValidationError(f"{name}.{index_name}", f"Index '{index_name}' does not exist")
                )
        return TableValidationResult(name, exists=True, errors=tuple(errors))

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def validate_document(self, document: Mapping[str, Any], collection: str) -> ValidationResult:
        """
        Validate one source document against its transformer and target table.

        Raises:
            UnsupportedCollectionError: If no transformer handles the collection.
        """
        table_name = self._transformations.table_for(collection)
        table = await self._introspector.discover_table(table_name)
        if table is None:
            return ValidationResult.failure(
                ValidationError("collection", f"Table '{table_name}' does not exist in database", table_name)
            )
        return self._validate_against(document, collection, table)

    def _validate_against(
        self,
        document: Mapping[str, Any],
        collection: str,
        table: TableSchema,
    ) -> ValidationResult:
        errors: list[ValidationError] = []
        conflicts: list[ValidationConflict] = []
        document_id = str(document.get("_id"))

        check = self._transformations.validate_document(document, collection)
        errors.extend(ValidationError("document", message, document_id) for message in check.errors)

        if check.is_valid:
            try:
                row = self._transformations.transform(document, collection).to_row()
            except TransformationError as e:
                errors.append(ValidationError("document", e.message, document_id))
            else:
                for column in table.not_null_columns:
                    if column not in GENERATED_COLUMNS and row.get(column) is None:
                        errors.append(
                            ValidationError(column, f"Required field '{column}' is missing or null", document_id)
                        )

        for field_name, value in document.items():
            column = table.columns.get(field_name)
            if column is not None and value is not None and field_name != "_id":
                family = family_for_db_type(column.data_type)
                if family is not None and value_kind(value) not in _ACCEPTED_KINDS[family]:
                    conflicts.append(_type_mismatch(field_name, value, column.data_type, collection))
            if is_reserved_keyword(field_name):
                conflicts.append(_reserved_keyword(field_name, collection))

        return ValidationResult.from_findings(errors, conflicts)

    async def validate_data_compatibility(
        self,
        collections: Sequence[str],
        sample_size: int | None = None,
    ) -> ValidationResult:
        """
        Validate a sample of documents from each supported collection.

        Collection results are merged. A collection stops contributing
        errors after MAX_ERRORS_PER_COLLECTION.
        """
        size = sample_size or self.options.sample_size
        results: list[ValidationResult] = []
        for collection in collections:
            if not self._transformations.supports(collection):
                continue
            with self._tracer.span(
                "docmigrate.validator.validate_data_compatibility",
                {ATTR_COLLECTION: collection},
            ) as span:
                table_name = self._transformations.table_for(collection)
                table = await self._introspector.discover_table(table_name)
                if table is None:
                    results.append(
                        ValidationResult.failure(
                            ValidationError("collection", f"Table '{table_name}' does not exist in database", table_name)
                        )
                    )
                    continue
                documents = await self._source.sample(collection, size)
                if span:
                    span.set_attribute(ATTR_DOCUMENT_COUNT, len(documents))
                error_count = 0
                for document in documents:
                    result = self._validate_against(document, collection, table)
                    results.append(result)
                    error_count += len(result.errors)
                    if error_count >= MAX_ERRORS_PER_COLLECTION:
                        logger.warning(
                            "Maximum errors per collection reached (%d), stopping validation for %s",
                            MAX_ERRORS_PER_COLLECTION,
                            collection,
                        )
                        break

        merged = ValidationResult.success().merge(*results)
        logger.info(
            "Data compatibility validation completed. %d errors, %d conflicts found",
            len(merged.errors),
            len(merged.conflicts),
        )
        return merged

    # -------------------------------------------------------------------------
    # Conflicts
    # -------------------------------------------------------------------------

    async def detect_conflicts(self, collections: Sequence[str]) -> ValidationResult:
        """
        Find duplicate ids and fields with inconsistent types.

        The returned result holds conflicts only.
        """
        conflicts: list[ValidationConflict] = []
        for collection in collections:
            with self._tracer.span("docmigrate.validator.detect_conflicts", {ATTR_COLLECTION: collection}):
                for duplicate_id in await self._source.find_duplicate_ids(collection):
                    conflicts.append(
                        ValidationConflict(
                            conflict_type="DuplicateId",
                            description=f"Duplicate ID found in collection '{collection}': {duplicate_id}",
                            value=duplicate_id,
                            resolution_options=(
                                ConflictResolutionOption("skip", "Skip duplicate documents", "skip"),
                                ConflictResolutionOption(
                                    "generate_new_id", "Generate a new UUID for duplicates", "generate_uuid"
                                ),
                            ),
                            collection=collection,
                        )
                    )
                conflicts.extend(await self._type_conflicts(collection))

        logger.info("Conflict detection completed. %d conflicts found", len(conflicts))
        return ValidationResult.from_findings(conflicts=conflicts)

    async def _type_conflicts(self, collection: str) -> list[ValidationConflict]:
        kinds: dict[str, list[ValueKind]] = defaultdict(list)
        seen = 0
        async for document in self._source.find(collection, batch_size=TYPE_SAMPLE_SIZE):
            for field_name, value in document.items():
                kind = value_kind(value)
                # null is absence of a value, not a competing type
                if kind is not ValueKind.NULL and kind not in kinds[field_name]:
                    kinds[field_name].append(kind)
            seen += 1
            if seen >= TYPE_SAMPLE_SIZE:
                break

        conflicts = []
        for field_name, observed in kinds.items():
            if len(observed) < 2:
                continue
            names = ", ".join(kind.value for kind in observed)
            conflicts.append(
                ValidationConflict(
                    conflict_type="InconsistentFieldType",
                    description=f"Field '{field_name}' has inconsistent types across documents: {names}",
                    value=tuple(kind.value for kind in observed),
                    resolution_options=(
                        ConflictResolutionOption("convert_to_string", "Convert all values to string", "string"),
                        ConflictResolutionOption(
                            "use_first_type", "Use the first encountered type", observed[0].value
                        ),
                        ConflictResolutionOption("skip", "Skip documents with conflicting types", "skip"),
                    ),
                    collection=collection,
                )
            )
        return conflicts

    # -------------------------------------------------------------------------
    # Referential integrity
    # -------------------------------------------------------------------------

    async def validate_referential_integrity(self, collections: Sequence[str]) -> ValidationResult:
        """
        Check references between documents.

        - A profile's ``defaultProfile`` must name an entry of its ``store``.
        - A treatment's ``profile`` must name a profile stored by some
          profiles document.

        Findings are DanglingReference conflicts.
        """
        names = {c.lower() for c in collections}
        conflicts: list[ValidationConflict] = []
        with self._tracer.span("docmigrate.validator.validate_referential_integrity"):
            known_profiles: set[str] = set()
            if "profiles" in names or "treatments" in names:
                async for profile in self._source.find("profiles"):
                    store = profile.get("store")
                    if not isinstance(store, Mapping):
                        continue
                    known_profiles.update(str(key) for key in store)
                    default = profile.get("defaultProfile")
                    if "profiles" in names and default and default not in store:
                        conflicts.append(
                            _dangling(
                                f"Profile {profile.get('_id')} defaultProfile '{default}' is not in its store",
                                default,
                                "profiles",
                                ConflictResolutionOption(
                                    "use_first_store_entry",
                                    "Use the first profile of the store as default",
                                    next(iter(store), None),
                                ),
                                ConflictResolutionOption("ignore", "Migrate the reference unchanged"),
                            )
                        )

            if "treatments" in names:
                dangling = 0
                async for treatment in self._source.find("treatments", {"profile": {"$nin": [None, ""]}}):
                    reference = treatment.get("profile")
                    if not isinstance(reference, str) or not reference or reference in known_profiles:
                        continue
                    conflicts.append(
                        _dangling(
                            f"Treatment {treatment.get('_id')} references unknown profile '{reference}'",
                            reference,
                            "treatments",
                            ConflictResolutionOption("clear_reference", "Migrate the treatment without a profile"),
                            ConflictResolutionOption("ignore", "Migrate the reference unchanged"),
                        )
                    )
                    dangling += 1
                    if dangling >= MAX_DANGLING_REFERENCES:
                        break

        logger.info("Referential integrity validation completed. %d conflicts found", len(conflicts))
        return ValidationResult.from_findings(conflicts=conflicts)


__all__ = [
    "GENERATED_COLUMNS",
    "POSTGRES_RESERVED_KEYWORDS",
    "SchemaValidationResult",
    "SchemaValidator",
    "TableValidationResult",
    "is_reserved_keyword",
]
