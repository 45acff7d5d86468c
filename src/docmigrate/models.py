"""
Data models for the docmigrate migration engine.

Every model here is an immutable snapshot. Status and statistics are never
mutated in place: a new value is produced with ``dataclasses.replace`` and
swapped into the StatusRegistry under its key.

Models in this module:

Enums:
    - MigrationState: Lifecycle of one migration run

Configuration:
    - DateRange: Optional inclusive date filter
    - ValidationOptions: Pre-migration validation toggles
    - TransformationOptions: Document transformation toggles
    - MigrationConfiguration: Everything needed to drive one run

Validation:
    - ValidationError: Blocking finding
    - ConflictResolutionOption: Machine-readable resolution choice
    - ValidationConflict: Non-blocking finding with resolution options
    - ValidationResult: Ordered errors and conflicts

Progress:
    - CollectionStatistics: Per-collection counters
    - MigrationStatistics: Per-run aggregate
    - MigrationStatus: Queryable status snapshot
    - MigrationCheckpoint: Durable progress marker
    - MigrationResult: Final outcome of a run
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pymongo import uri_parser
from pymongo.errors import PyMongoError
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_MEMORY_MB = 512
DEFAULT_CHECKPOINT_INTERVAL = 100
DEFAULT_MAX_BATCH_PAYLOAD_BYTES = 16 * 1024 * 1024
DEFAULT_MAX_IN_FLIGHT_BATCHES = 2
DEFAULT_SAMPLE_SIZE = 1000


class MigrationState(Enum):
    """
    Lifecycle of a migration run.

    Transitions:
        INITIALIZING -> RUNNING -> COMPLETED
        Any state --> FAILED (taxonomy error or unhandled exception)
        Any state --> CANCELLED (cooperative cancellation)
    """

    INITIALIZING = "initializing"
    """Validating configuration and preparing the target."""

    RUNNING = "running"
    """Migrating collections."""

    COMPLETED = "completed"
    """Every collection finished."""

    FAILED = "failed"
    """The run stopped because of an error."""

    CANCELLED = "cancelled"
    """The run observed a cancellation request."""

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED, FAILED and CANCELLED."""
        return self in (MigrationState.COMPLETED, MigrationState.FAILED, MigrationState.CANCELLED)


# =============================================================================
# Validation results
# =============================================================================


@dataclass(frozen=True)
class ValidationError:
    """
    A blocking validation finding.

    Attributes:
        field: Name of the configuration field, column, or document field.
        message: Human-readable description.
        value: The offending value, if any.
    """

    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class ConflictResolutionOption:
    """
    One way an operator or policy may resolve a conflict.

    Attributes:
        name: Machine-readable option name (e.g. ``"convert"``).
        description: Human-readable explanation.
        value: Parameter for the option, e.g. the new field name for a rename.
    """

    name: str
    description: str
    value: Any = None


@dataclass(frozen=True)
class ValidationConflict:
    """
    A non-blocking validation finding.

    Attributes:
        conflict_type: Kind of conflict (e.g. ``"TypeMismatch"``, ``"DuplicateId"``).
        description: Human-readable description.
        value: The offending value, if any.
        resolution_options: Ordered resolution choices.
        collection: Source collection the conflict was found in.
    """

    conflict_type: str
    description: str
    value: Any = None
    resolution_options: tuple[ConflictResolutionOption, ...] = ()
    collection: str | None = None

    @property
    def option_names(self) -> list[str]:
        """Names of the available resolution options."""
        return [option.name for option in self.resolution_options]


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of a validation step.

    Errors make the result invalid. Conflicts never do.

    Example:
        >>> result = ValidationResult.success().merge(
        ...     ValidationResult.failure(ValidationError("batch_size", "must be > 0", 0))
        ... )
        >>> result.is_valid
        False
    """

    errors: tuple[ValidationError, ...] = ()
    conflicts: tuple[ValidationConflict, ...] = ()

    @property
    def is_valid(self) -> bool:
        """True when there are no errors."""
        return not self.errors

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @classmethod
    def success(cls) -> ValidationResult:
        return cls()

    @classmethod
    def failure(cls, *errors: ValidationError) -> ValidationResult:
        return cls(errors=tuple(errors))

    @classmethod
    def from_findings(
        cls,
        errors: Iterable[ValidationError] = (),
        conflicts: Iterable[ValidationConflict] = (),
    ) -> ValidationResult:
        return cls(errors=tuple(errors), conflicts=tuple(conflicts))

    def merge(self, *others: ValidationResult) -> ValidationResult:
        """Combine results, keeping errors and conflicts in order."""
        errors = list(self.errors)
        conflicts = list(self.conflicts)
        for other in others:
            errors.extend(other.errors)
            conflicts.extend(other.conflicts)
        return ValidationResult(errors=tuple(errors), conflicts=tuple(conflicts))

    def error_summary(self) -> str:
        """Render the errors as a single ``field: message; ...`` line."""
        return "; ".join(str(error) for error in self.errors)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive date filter applied to source documents.

    Either bound may be omitted. A document matches a bound when any of its
    known date fields (``date``, ``mills``, ``created_at``) satisfies it.
    """

    start: datetime | None = None
    end: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class ValidationOptions:
    """
    Pre-migration validation toggles.

    Attributes:
        validate_schema: Compare target tables against the record models.
        validate_data: Sample source documents and check compatibility.
        detect_conflicts: Scan for duplicate ids and inconsistent field types.
        validate_referential_integrity: Check references between documents.
        dry_run: Validate only; never write.
        fail_on_conflicts: Escalate conflicts to blocking errors.
        sample_size: Documents sampled per collection for data validation.
        expected_indexes: Index names that must exist, keyed by table.
    """

    validate_schema: bool = True
    validate_data: bool = True
    detect_conflicts: bool = True
    validate_referential_integrity: bool = True
    dry_run: bool = False
    fail_on_conflicts: bool = False
    sample_size: int = DEFAULT_SAMPLE_SIZE
    expected_indexes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class TransformationOptions:
    """
    Document transformation toggles.

    Attributes:
        preserve_original_ids: Derive target ids deterministically from ObjectIds.
            Reruns then produce the same primary keys, which makes duplicate
            detection work.
        preserve_null_properties: Keep null values in JSON property bags.
        max_nesting_depth: Depth at which nested values are cut off in JSON columns.
    """

    preserve_original_ids: bool = True
    preserve_null_properties: bool = False
    max_nesting_depth: int = 10


@dataclass(frozen=True)
class MigrationConfiguration:
    """
    Configuration for one migration run.

    The configuration is frozen and is never modified during a run. Structural
    problems are reported by :meth:`validate` rather than raised from the
    constructor, so a bad configuration produces a failed MigrationResult.

    Example:
        >>> config = MigrationConfiguration(
        ...     source_uri="mongodb://localhost:27017",
        ...     source_database="nightscout",
        ...     target_url="postgresql://postgres@localhost/nocturne",
        ...     collections=("entries", "treatments"),
        ...     batch_size=500,
        ... )
        >>> config.validate().is_valid
        True
    """

    source_uri: str
    source_database: str
    target_url: str
    collections: tuple[str, ...] = ()
    batch_size: int = DEFAULT_BATCH_SIZE
    max_degree_of_parallelism: int = field(default_factory=lambda: os.cpu_count() or 1)
    max_batch_payload_bytes: int = DEFAULT_MAX_BATCH_PAYLOAD_BYTES
    max_in_flight_batches: int = DEFAULT_MAX_IN_FLIGHT_BATCHES
    max_memory_usage_mb: int = DEFAULT_MAX_MEMORY_MB
    enable_checkpointing: bool = True
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    date_range: DateRange | None = None
    drop_existing_tables: bool = False
    skip_index_creation: bool = False
    skip_duplicates: bool = True
    skip_document_ids: frozenset[str] = frozenset()
    create_pre_migration_backup: bool = False
    backup_directory: str = "backups"
    validation: ValidationOptions = field(default_factory=ValidationOptions)
    transformation: TransformationOptions = field(default_factory=TransformationOptions)

    def validate(self) -> ValidationResult:
        """
        Check the configuration without opening any connection.

        Returns:
            ValidationResult whose errors name the offending field.
        """
        errors: list[ValidationError] = []

        if not self.source_uri:
            errors.append(ValidationError("source_uri", "Source connection string is required"))
        else:
            problem = _check_mongo_uri(self.source_uri)
            if problem:
                errors.append(ValidationError("source_uri", problem))
        if not self.source_database:
            errors.append(ValidationError("source_database", "Source database name is required"))
        if not self.target_url:
            errors.append(ValidationError("target_url", "Target connection string is required"))
        else:
            problem = _check_postgres_url(self.target_url)
            if problem:
                errors.append(ValidationError("target_url", problem))

        if self.batch_size <= 0:
            errors.append(
                ValidationError("batch_size", "Batch size must be greater than 0", self.batch_size)
            )
        if self.max_memory_usage_mb <= 0:
            errors.append(
                ValidationError(
                    "max_memory_usage_mb",
                    "Memory ceiling must be greater than 0",
                    self.max_memory_usage_mb,
                )
            )
        if self.max_degree_of_parallelism < 1:
            errors.append(
                ValidationError(
                    "max_degree_of_parallelism",
                    "Parallelism must be at least 1",
                    self.max_degree_of_parallelism,
                )
            )
        if self.checkpoint_interval < 1:
            errors.append(
                ValidationError(
                    "checkpoint_interval",
                    "Checkpoint interval must be at least 1",
                    self.checkpoint_interval,
                )
            )
        if self.max_batch_payload_bytes <= 0:
            errors.append(
                ValidationError(
                    "max_batch_payload_bytes",
                    "Batch payload budget must be greater than 0",
                    self.max_batch_payload_bytes,
                )
            )
        if self.max_in_flight_batches < 1:
            errors.append(
                ValidationError(
                    "max_in_flight_batches",
                    "At least one batch must be allowed in flight",
                    self.max_in_flight_batches,
                )
            )
        if self.validation.sample_size < 1:
            errors.append(
                ValidationError(
                    "validation.sample_size",
                    "Sample size must be at least 1",
                    self.validation.sample_size,
                )
            )
        date_range = self.date_range
        if date_range and date_range.start and date_range.end and date_range.start >= date_range.end:
            errors.append(
                ValidationError(
                    "date_range",
                    "Start date must be before end date",
                    (date_range.start, date_range.end),
                )
            )

        return ValidationResult.failure(*errors) if errors else ValidationResult.success()

    @property
    def async_target_url(self) -> URL:
        """The target URL with the asyncpg driver selected."""
        url = make_url(self.target_url)
        if url.drivername in ("postgresql", "postgres"):
            url = url.set(drivername="postgresql+asyncpg")
        return url

    def with_changes(self, **changes: Any) -> MigrationConfiguration:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        date_range = self.date_range
        return {
            "source_uri": self.source_uri,
            "source_database": self.source_database,
            "target_url": self.target_url,
            "collections": list(self.collections),
            "batch_size": self.batch_size,
            "max_degree_of_parallelism": self.max_degree_of_parallelism,
            "max_batch_payload_bytes": self.max_batch_payload_bytes,
            "max_in_flight_batches": self.max_in_flight_batches,
            "max_memory_usage_mb": self.max_memory_usage_mb,
            "enable_checkpointing": self.enable_checkpointing,
            "checkpoint_interval": self.checkpoint_interval,
            "date_range": (
                {
                    "start": date_range.start.isoformat() if date_range.start else None,
                    "end": date_range.end.isoformat() if date_range.end else None,
                }
                if date_range
                else None
            ),
            "drop_existing_tables": self.drop_existing_tables,
            "skip_index_creation": self.skip_index_creation,
            "skip_duplicates": self.skip_duplicates,
            "skip_document_ids": sorted(self.skip_document_ids),
            "create_pre_migration_backup": self.create_pre_migration_backup,
            "backup_directory": self.backup_directory,
            "validation": {
                "validate_schema": self.validation.validate_schema,
                "validate_data": self.validation.validate_data,
                "detect_conflicts": self.validation.detect_conflicts,
                "validate_referential_integrity": self.validation.validate_referential_integrity,
                "dry_run": self.validation.dry_run,
                "fail_on_conflicts": self.validation.fail_on_conflicts,
                "sample_size": self.validation.sample_size,
                "expected_indexes": {k: list(v) for k, v in self.validation.expected_indexes.items()},
            },
            "transformation": {
                "preserve_original_ids": self.transformation.preserve_original_ids,
                "preserve_null_properties": self.transformation.preserve_null_properties,
                "max_nesting_depth": self.transformation.max_nesting_depth,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationConfiguration:
        """Create a configuration from :meth:`to_dict` output."""
        date_range = None
        if data.get("date_range"):
            raw = data["date_range"]
            date_range = DateRange(
                start=datetime.fromisoformat(raw["start"]) if raw.get("start") else None,
                end=datetime.fromisoformat(raw["end"]) if raw.get("end") else None,
            )
        validation_data = data.get("validation") or {}
        transformation_data = data.get("transformation") or {}
        defaults = cls(source_uri="", source_database="", target_url="")
        return cls(
            source_uri=data["source_uri"],
            source_database=data["source_database"],
            target_url=data["target_url"],
            collections=tuple(data.get("collections", ())),
            batch_size=data.get("batch_size", DEFAULT_BATCH_SIZE),
            max_degree_of_parallelism=data.get(
                "max_degree_of_parallelism", defaults.max_degree_of_parallelism
            ),
            max_batch_payload_bytes=data.get("max_batch_payload_bytes", DEFAULT_MAX_BATCH_PAYLOAD_BYTES),
            max_in_flight_batches=data.get("max_in_flight_batches", DEFAULT_MAX_IN_FLIGHT_BATCHES),
            max_memory_usage_mb=data.get("max_memory_usage_mb", DEFAULT_MAX_MEMORY_MB),
            enable_checkpointing=data.get("enable_checkpointing", True),
            checkpoint_interval=data.get("checkpoint_interval", DEFAULT_CHECKPOINT_INTERVAL),
            date_range=date_range,
            drop_existing_tables=data.get("drop_existing_tables", False),
            skip_index_creation=data.get("skip_index_creation", False),
            skip_duplicates=data.get("skip_duplicates", True),
            skip_document_ids=frozenset(data.get("skip_document_ids", ())),
            create_pre_migration_backup=data.get("create_pre_migration_backup", False),
            backup_directory=data.get("backup_directory", "backups"),
            validation=ValidationOptions(
                validate_schema=validation_data.get("validate_schema", True),
                validate_data=validation_data.get("validate_data", True),
                detect_conflicts=validation_data.get("detect_conflicts", True),
                validate_referential_integrity=validation_data.get(
                    "validate_referential_integrity", True
                ),
                dry_run=validation_data.get("dry_run", False),
                fail_on_conflicts=validation_data.get("fail_on_conflicts", False),
                sample_size=validation_data.get("sample_size", DEFAULT_SAMPLE_SIZE),
                expected_indexes={
                    k: tuple(v) for k, v in (validation_data.get("expected_indexes") or {}).items()
                },
            ),
            transformation=TransformationOptions(
                preserve_original_ids=transformation_data.get("preserve_original_ids", True),
                preserve_null_properties=transformation_data.get("preserve_null_properties", False),
                max_nesting_depth=transformation_data.get("max_nesting_depth", 10),
            ),
        )


def _check_mongo_uri(uri: str) -> str | None:
    """Return a problem description for an unusable MongoDB URI, else None."""
    if uri.startswith("mongodb+srv://"):
        # SRV URIs are resolved through DNS when parsed; only check the shape.
        if not uri[len("mongodb+srv://") :].split("/", 1)[0]:
            return "MongoDB SRV connection string has no host"
        return None
    if not uri.startswith("mongodb://"):
        return "Connection string must start with mongodb:// or mongodb+srv://"
    try:
        uri_parser.parse_uri(uri)
    except (PyMongoError, ValueError) as e:
        return f"Invalid MongoDB connection string: {e}"
    return None


def _check_postgres_url(url: str) -> str | None:
    """Return a problem description for an unusable PostgreSQL URL, else None."""
    try:
        parsed = make_url(url)
    except ArgumentError as e:
        return f"Invalid PostgreSQL connection string: {e}"
    if not parsed.drivername.startswith(("postgresql", "postgres")):
        return f"Unsupported target database '{parsed.drivername}'"
    if not parsed.database:
        return "PostgreSQL connection string has no database name"
    return None


# =============================================================================
# Progress and results
# =============================================================================


@dataclass(frozen=True)
class CollectionStatistics:
    """
    Counters for one migrated collection.

    ``documents_skipped`` counts duplicates that were already present in the
    target. They are included in ``documents_migrated`` because the row exists,
    so ``documents_migrated + documents_failed == total_documents`` holds for
    every finished collection.
    """

    collection_name: str
    total_documents: int = 0
    documents_migrated: int = 0
    documents_failed: int = 0
    documents_skipped: int = 0
    duration_seconds: float = 0.0

    @property
    def documents_inserted(self) -> int:
        """Rows newly written by this run."""
        return self.documents_migrated - self.documents_skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_name": self.collection_name,
            "total_documents": self.total_documents,
            "documents_migrated": self.documents_migrated,
            "documents_failed": self.documents_failed,
            "documents_skipped": self.documents_skipped,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class MigrationStatistics:
    """
    Aggregate statistics for a run.

    Statistics are append-only: :meth:`with_collection` returns a new snapshot.
    """

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    collection_stats: Mapping[str, CollectionStatistics] = field(default_factory=dict)
    peak_memory_mb: float = 0.0

    @property
    def total_documents(self) -> int:
        return sum(s.total_documents for s in self.collection_stats.values())

    @property
    def total_documents_migrated(self) -> int:
        return sum(s.documents_migrated for s in self.collection_stats.values())

    @property
    def total_documents_failed(self) -> int:
        return sum(s.documents_failed for s in self.collection_stats.values())

    @property
    def total_documents_skipped(self) -> int:
        return sum(s.documents_skipped for s in self.collection_stats.values())

    @property
    def duration(self) -> timedelta:
        end = self.end_time or datetime.now(UTC)
        return end - self.start_time

    def with_collection(self, stats: CollectionStatistics) -> MigrationStatistics:
        """Return a snapshot that includes ``stats``."""
        merged = dict(self.collection_stats)
        merged[stats.collection_name] = stats
        return replace(self, collection_stats=merged)

    def finished(self, peak_memory_mb: float | None = None) -> MigrationStatistics:
        """Return a snapshot with the end time set."""
        return replace(
            self,
            end_time=datetime.now(UTC),
            peak_memory_mb=self.peak_memory_mb if peak_memory_mb is None else peak_memory_mb,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "total_documents": self.total_documents,
            "total_documents_migrated": self.total_documents_migrated,
            "total_documents_failed": self.total_documents_failed,
            "total_documents_skipped": self.total_documents_skipped,
            "peak_memory_mb": self.peak_memory_mb,
            "collections": {k: v.to_dict() for k, v in self.collection_stats.items()},
        }


@dataclass(frozen=True)
class MigrationStatus:
    """
    Queryable status of a migration run.

    Attributes:
        migration_id: Migration identifier.
        state: Current lifecycle state.
        progress_percentage: Progress from 0 to 100.
        current_operation: Label of the running phase.
        statistics: Statistics snapshot.
        updated_at: When this snapshot was produced.
        error_message: Set when the run failed.
    """

    migration_id: UUID
    state: MigrationState
    progress_percentage: float = 0.0
    current_operation: str | None = None
    statistics: MigrationStatistics = field(default_factory=MigrationStatistics)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error_message: str | None = None

    @property
    def estimated_time_remaining(self) -> timedelta | None:
        """Linear estimate from elapsed time and progress."""
        if self.state.is_terminal or not 0 < self.progress_percentage < 100:
            return None
        elapsed = self.updated_at - self.statistics.start_time
        return elapsed * ((100 - self.progress_percentage) / self.progress_percentage)

    def advance(
        self,
        *,
        state: MigrationState | None = None,
        progress_percentage: float | None = None,
        current_operation: str | None = None,
        statistics: MigrationStatistics | None = None,
        error_message: str | None = None,
    ) -> MigrationStatus:
        """Produce the next snapshot."""
        return replace(
            self,
            state=state or self.state,
            progress_percentage=(
                self.progress_percentage
                if progress_percentage is None
                else min(100.0, progress_percentage)
            ),
            current_operation=current_operation or self.current_operation,
            statistics=statistics or self.statistics,
            updated_at=datetime.now(UTC),
            error_message=error_message or self.error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": str(self.migration_id),
            "state": self.state.value,
            "progress_percentage": self.progress_percentage,
            "current_operation": self.current_operation,
            "statistics": self.statistics.to_dict(),
            "updated_at": self.updated_at.isoformat(),
            "error_message": self.error_message,
        }


CHECKPOINT_IN_PROGRESS = "InProgress"
CHECKPOINT_ROLLBACK_POINT = "RollbackPoint"


@dataclass(frozen=True)
class MigrationCheckpoint:
    """
    Durable progress marker for one collection of one migration.

    A checkpoint is written only after the batch it describes has committed,
    so it never claims progress that was not durably written.

    Attributes:
        migration_id: Owning migration.
        collection_name: Source collection.
        last_processed_id: Source ``_id`` of the last document of the batch.
        documents_processed: Documents migrated so far (running count).
        documents_read: Documents consumed from the source so far, including
            failed ones. Resume skips this many documents of the sorted cursor.
        total_documents: Collection size at the start of the run.
        status: ``"InProgress"`` or ``"RollbackPoint"``.
        metadata: Free-form data (rollback point descriptions, etc).
        id: Fresh identifier for every write.
        created_at: When the checkpoint was recorded.
    """

    migration_id: UUID
    collection_name: str
    last_processed_id: str | None = None
    documents_processed: int = 0
    documents_read: int = 0
    total_documents: int = 0
    status: str = CHECKPOINT_IN_PROGRESS
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def documents_failed(self) -> int:
        return max(0, self.documents_read - self.documents_processed)


@dataclass(frozen=True)
class MigrationResult:
    """
    Final outcome of a migration run.

    A result is returned for every handled outcome, including failures and
    cancellation, so partial progress is always visible in ``statistics``.
    """

    migration_id: UUID
    success: bool
    state: MigrationState
    statistics: MigrationStatistics
    error_message: str | None = None
    validation: ValidationResult | None = None
    checkpoint_id: UUID | None = None
    transformation_statistics: Mapping[str, Any] = field(default_factory=dict)
    backup_path: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.state == MigrationState.CANCELLED


__all__ = [
    "CHECKPOINT_IN_PROGRESS",
    "CHECKPOINT_ROLLBACK_POINT",
    "CollectionStatistics",
    "ConflictResolutionOption",
    "DateRange",
    "MigrationCheckpoint",
    "MigrationConfiguration",
    "MigrationResult",
    "MigrationState",
    "MigrationStatistics",
    "MigrationStatus",
    "TransformationOptions",
    "ValidationConflict",
    "ValidationError",
    "ValidationOptions",
    "ValidationResult",
]
