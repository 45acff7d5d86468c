"""
Rollback of migrated data.

RollbackService undoes all or part of a migration on the target:

- FULL: drop the migrated tables, optionally restoring the source from a
  mongodump archive
- SCHEMA_ONLY: drop secondary indexes, then the tables
- PARTIAL: delete migrated rows by collection, creation time and source id
- POINT_IN_TIME: delete rows written after a rollback point

Rollback points are read from the checkpoint table. Explicit points are
stored there too, under a reserved collection name and the
``RollbackPoint`` status.

Every rollback goes through validation, an optional confirmation gate,
backup verification, the type-specific action and a connectivity check.
Table drops are best-effort: a failed drop is recorded as a failed
operation and the remaining drops continue.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from docmigrate.backup import BackupType, detect_backup_type
from docmigrate.context import MigrationContext
from docmigrate.exceptions import (
    ConnectivityError,
    MigrationError,
    RollbackError,
    RollbackNotFoundError,
)
from docmigrate.models import (
    CHECKPOINT_ROLLBACK_POINT,
    MigrationCheckpoint,
    ValidationError,
    ValidationResult,
)
from docmigrate.observability import (
    ATTR_MIGRATION_ID,
    ATTR_ROLLBACK_ID,
    ATTR_ROLLBACK_TYPE,
    Tracer,
    create_tracer,
)
from docmigrate.repositories import (
    LogLevel,
    MigrationLogEntry,
    checkpoint_metadata,
    is_progress_checkpoint,
)
from docmigrate.status import StatusRegistry
from docmigrate.transformers.base import format_iso_ms

logger = logging.getLogger(__name__)

ROLLBACK_POINT_COLLECTION = "__rollback_point__"
DEFAULT_ROLLBACK_TIMEOUT_SECONDS = 3600.0


class RollbackType(Enum):
    """What a rollback undoes."""

    FULL = "full"
    """Drop the migrated tables; optionally restore the source."""

    SCHEMA_ONLY = "schema_only"
    """Drop secondary indexes and tables; never touch the source."""

    PARTIAL = "partial"
    """Delete selected migrated rows."""

    POINT_IN_TIME = "point_in_time"
    """Delete rows written after a rollback point."""


class RollbackState(Enum):
    """Lifecycle of a rollback."""

    INITIALIZING = "initializing"
    VALIDATING = "validating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RollbackState.COMPLETED, RollbackState.FAILED, RollbackState.CANCELLED)


class RollbackPointState(Enum):
    """Migration phase a rollback point was taken in."""

    PRE_MIGRATION = "pre_migration"
    SCHEMA_CREATED = "schema_created"
    DATA_MIGRATION = "data_migration"
    INDEX_CREATION = "index_creation"
    POST_MIGRATION = "post_migration"


class RollbackOperationType(Enum):
    """Kind of step recorded in a RollbackResult."""

    VALIDATION = "validation"
    CONFIRMATION = "confirmation"
    BACKUP_VERIFICATION = "backup_verification"
    DROP_TABLE = "drop_table"
    DROP_INDEX = "drop_index"
    DELETE_ROWS = "delete_rows"
    RESTORE_DATA = "restore_data"
    INTEGRITY_CHECK = "integrity_check"


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class RollbackConfiguration:
    """
    What to roll back.

    Attributes:
        migration_id: Migration to roll back.
        rollback_type: Kind of rollback.
        backup_file_path: Archive to verify, and to restore from.
        rollback_point_id: Required for POINT_IN_TIME.
        drop_tables: FULL only; drop the migrated tables.
        restore_source_data: FULL only; run ``mongorestore --drop`` from the backup.
        source_uri: MongoDB URI for restoration.
        source_database: MongoDB database for restoration.
        require_confirmation: Pass through the confirmation gate.
        dry_run: Validate only.
        timeout_seconds: Limit for the restore process.
        collections: PARTIAL only; collections whose tables are affected.
            Empty means every migrated table.
        start_date: PARTIAL only; inclusive lower bound on ``created_at``.
        end_date: PARTIAL only; inclusive upper bound on ``created_at``.
        document_ids: PARTIAL only; source ids to delete.
    """

    migration_id: UUID
    rollback_type: RollbackType = RollbackType.FULL
    backup_file_path: str | None = None
    rollback_point_id: UUID | None = None
    drop_tables: bool = True
    restore_source_data: bool = False
    source_uri: str | None = None
    source_database: str | None = None
    require_confirmation: bool = True
    dry_run: bool = False
    timeout_seconds: float = DEFAULT_ROLLBACK_TIMEOUT_SECONDS
    collections: tuple[str, ...] = ()
    start_date: datetime | None = None
    end_date: datetime | None = None
    document_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class RollbackOperation:
    """One step performed during a rollback."""

    operation_type: RollbackOperationType
    description: str
    success: bool
    error_message: str | None = None
    duration_seconds: float = 0.0
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class RollbackStatistics:
    """
    Counters of a rollback.

    Attributes:
        rows_deleted: Rows deleted per table by partial and point-in-time rollbacks.
    """

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    tables_dropped: int = 0
    indexes_dropped: int = 0
    documents_restored: int = 0
    data_size_restored: int = 0
    rows_deleted: Mapping[str, int] = field(default_factory=dict)

    @property
    def total_rows_deleted(self) -> int:
        return sum(self.rows_deleted.values())

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now(UTC)
        return (end - self.start_time).total_seconds()


@dataclass(frozen=True)
class RollbackStatus:
    """Queryable status of a rollback."""

    rollback_id: UUID
    state: RollbackState
    progress_percentage: float = 0.0
    current_operation: str | None = None
    statistics: RollbackStatistics = field(default_factory=RollbackStatistics)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error_message: str | None = None

    def advance(
        self,
        state: RollbackState,
        progress_percentage: float | None,
        current_operation: str,
        *,
        statistics: RollbackStatistics | None = None,
        error_message: str | None = None,
    ) -> RollbackStatus:
        return replace(
            self,
            state=state,
            progress_percentage=(
                self.progress_percentage if progress_percentage is None else progress_percentage
            ),
            current_operation=current_operation,
            statistics=statistics or self.statistics,
            updated_at=datetime.now(UTC),
            error_message=error_message or self.error_message,
        )


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of a rollback."""

    rollback_id: UUID
    success: bool
    state: RollbackState
    statistics: RollbackStatistics = field(default_factory=RollbackStatistics)
    operations: tuple[RollbackOperation, ...] = ()
    error_message: str | None = None
    integrity_verified: bool = False
    integrity_details: str | None = None

    @property
    def failed_operations(self) -> list[RollbackOperation]:
        return [op for op in self.operations if not op.success]


@dataclass(frozen=True)
class RollbackPoint:
    """
    A state of a migration that can be rolled back to.

    Attributes:
        id: Id of the underlying checkpoint.
        migration_id: Owning migration.
        created_at: When the point was recorded.
        description: Human-readable description.
        state: Migration phase at that point.
        migrated_collections: Collections with progress as of this point.
        statistics: Progress counters of the checkpoint.
        metadata: Free-form data given when the point was created.
    """

    id: UUID
    migration_id: UUID
    created_at: datetime
    description: str
    state: RollbackPointState
    migrated_collections: tuple[str, ...] = ()
    statistics: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)


ConfirmCallback = Callable[[RollbackConfiguration], Awaitable[bool]]


class _RollbackRun:
    """Operations and counters of one rollback call."""

    def __init__(self, rollback_id: UUID) -> None:
        self.rollback_id = rollback_id
        self.operations: list[RollbackOperation] = []
        self.statistics = RollbackStatistics()
        self.started = time.perf_counter()

    def add(
        self,
        operation_type: RollbackOperationType,
        description: str,
        success: bool = True,
        error_message: str | None = None,
        **details: Any,
    ) -> RollbackOperation:
        operation = RollbackOperation(
            operation_type,
            description,
            success,
            error_message,
            time.perf_counter() - self.started,
            details,
        )
        self.operations.append(operation)
        return operation

    def count(self, **changes: Any) -> None:
        self.statistics = replace(self.statistics, **changes)


class RollbackService:
    """
    Rolls migrations back on the target bound to a MigrationContext.

    Example:
        >>> async with open_context(config) as context:
        ...     service = RollbackService(context)
        ...     result = await service.rollback(
        ...         RollbackConfiguration(migration_id, RollbackType.FULL, require_confirmation=False)
        ...     )
        >>> result.statistics.tables_dropped
        7

    Attributes:
        confirm: Async callback deciding the confirmation gate. Without one,
            rollbacks requiring confirmation are approved with a warning.
    """

    def __init__(
        self,
        context: MigrationContext,
        *,
        confirm: ConfirmCallback | None = None,
        status_registry: StatusRegistry[UUID, RollbackStatus] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._context = context
        self.confirm = confirm
        self._statuses: StatusRegistry[UUID, RollbackStatus] = status_registry or StatusRegistry()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def rollback(self, config: RollbackConfiguration) -> RollbackResult:
        """
        Roll back a migration.

        PARTIAL configurations are handed to :meth:`partial_rollback`.

        Returns:
            RollbackResult; handled failures never raise.
        """
        if config.rollback_type == RollbackType.PARTIAL:
            return await self.partial_rollback(config)
        actions = {
            RollbackType.FULL: self._full,
            RollbackType.SCHEMA_ONLY: self._schema_only,
            RollbackType.POINT_IN_TIME: self._point_in_time,
        }
        return await self._execute(config, actions[config.rollback_type])

    async def partial_rollback(self, config: RollbackConfiguration) -> RollbackResult:
        """
        Delete migrated rows selected by collection, creation time and source id.

        Filters combine with AND; rows without ``original_id`` are never touched.
        """
        if config.rollback_type != RollbackType.PARTIAL:
            config = replace(config, rollback_type=RollbackType.PARTIAL)
        return await self._execute(config, self._partial)

    async def validate_rollback(self, config: RollbackConfiguration) -> ValidationResult:
        """
        Check a rollback configuration without changing anything.

        Pings the target, checks the backup file and the rollback point.
        """
        errors: list[ValidationError] = []
        try:
            await self._context.target.ping()
        except ConnectivityError as e:
            errors.append(ValidationError("target", f"Cannot connect to PostgreSQL: {e.message}"))

        if config.backup_file_path:
            path = Path(config.backup_file_path)
            if not path.is_file():
                errors.append(ValidationError("backup_file_path", "Backup file does not exist", str(path)))
            elif path.stat().st_size == 0:
                errors.append(ValidationError("backup_file_path", "Backup file is empty", str(path)))

        if config.rollback_type == RollbackType.POINT_IN_TIME and config.rollback_point_id is None:
            errors.append(
                ValidationError("rollback_point_id", "A rollback point is required for point-in-time rollback")
            )
        if config.rollback_point_id is not None:
            points = await self.list_rollback_points(config.migration_id)
            if not any(point.id == config.rollback_point_id for point in points):
                errors.append(
                    ValidationError(
                        "rollback_point_id",
                        "Specified rollback point does not exist",
                        str(config.rollback_point_id),
                    )
                )

        if config.restore_source_data:
            if not config.source_uri:
                errors.append(
                    ValidationError("source_uri", "MongoDB connection string is required for data restoration")
                )
            if not config.source_database:
                errors.append(
                    ValidationError("source_database", "MongoDB database name is required for data restoration")
                )
            if not config.backup_file_path:
                errors.append(
                    ValidationError("backup_file_path", "A backup file is required for data restoration")
                )

        if config.start_date and config.end_date and config.start_date > config.end_date:
            errors.append(
                ValidationError(
                    "start_date",
                    "Start date must not be after end date",
                    (config.start_date, config.end_date),
                )
            )
        return ValidationResult.failure(*errors) if errors else ValidationResult.success()

    async def get_rollback_status(self, rollback_id: UUID) -> RollbackStatus:
        """
        Raises:
            RollbackNotFoundError: If no rollback with this id ran in this service.
        """
        status = self._statuses.get(rollback_id)
        if status is None:
            raise RollbackNotFoundError(rollback_id)
        return status

    async def list_rollback_points(self, migration_id: UUID) -> list[RollbackPoint]:
        """
        Every checkpoint and explicit rollback point of a migration, oldest first.

        The migrated collections of a point are cumulative over the
        checkpoints before it.
        """
        points: list[RollbackPoint] = []
        migrated: list[str] = []
        for checkpoint in await self._context.checkpoints.list_for_migration(migration_id):
            if is_progress_checkpoint(checkpoint):
                if checkpoint.collection_name not in migrated:
                    migrated.append(checkpoint.collection_name)
                points.append(
                    RollbackPoint(
                        id=checkpoint.id,
                        migration_id=migration_id,
                        created_at=checkpoint.created_at,
                        description=(
                            f"Checkpoint after processing {checkpoint.documents_processed} "
                            f"documents in {checkpoint.collection_name}"
                        ),
                        state=(
                            RollbackPointState.PRE_MIGRATION
                            if checkpoint.documents_processed == 0
                            else RollbackPointState.DATA_MIGRATION
                        ),
                        migrated_collections=tuple(migrated),
                        statistics=checkpoint_metadata(checkpoint),
                    )
                )
                continue

            metadata = dict(checkpoint.metadata)
            description = str(metadata.pop("description", "Rollback point"))
            state = RollbackPointState(metadata.pop("state", RollbackPointState.DATA_MIGRATION.value))
            points.append(
                RollbackPoint(
                    id=checkpoint.id,
                    migration_id=migration_id,
                    created_at=checkpoint.created_at,
                    description=description,
                    state=state,
                    migrated_collections=tuple(migrated),
                    metadata=metadata,
                )
            )
        return points

    async def create_rollback_point(
        self,
        migration_id: UUID,
        description: str,
        state: RollbackPointState = RollbackPointState.DATA_MIGRATION,
        metadata: Mapping[str, Any] | None = None,
    ) -> RollbackPoint:
        """Persist an explicit rollback point in the checkpoint table."""
        checkpoint = MigrationCheckpoint(
            migration_id=migration_id,
            collection_name=ROLLBACK_POINT_COLLECTION,
            status=CHECKPOINT_ROLLBACK_POINT,
            metadata={**dict(metadata or {}), "description": description, "state": state.value},
        )
        await self._context.checkpoints.save(checkpoint)
        logger.info("Created rollback point %s for migration %s", checkpoint.id, migration_id)
        return RollbackPoint(
            id=checkpoint.id,
            migration_id=migration_id,
            created_at=checkpoint.created_at,
            description=description,
            state=state,
            metadata=dict(metadata or {}),
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _update(
        self,
        run: _RollbackRun,
        state: RollbackState,
        progress: float | None,
        operation: str,
        error_message: str | None = None,
    ) -> None:
        self._statuses.update(
            run.rollback_id,
            lambda s: s.advance(
                state,
                progress,
                operation,
                statistics=run.statistics,
                error_message=error_message,
            ),
        )

    def _failed(self, run: _RollbackRun, message: str, state: RollbackState = RollbackState.FAILED) -> RollbackResult:
        run.count(end_time=datetime.now(UTC))
        self._update(run, state, None, f"Failed: {message}", error_message=message)
        return RollbackResult(
            rollback_id=run.rollback_id,
            success=False,
            state=state,
            statistics=run.statistics,
            operations=tuple(run.operations),
            error_message=message,
        )

    async def _record(self, config: RollbackConfiguration, level: LogLevel, message: str) -> None:
        try:
            await self._context.logs.append(MigrationLogEntry(config.migration_id, level, message))
        except (MigrationError, SQLAlchemyError) as e:
            logger.warning("Could not write rollback log entry: %s", e)

    async def _execute(
        self,
        config: RollbackConfiguration,
        action: Callable[[RollbackConfiguration, _RollbackRun], Awaitable[None]],
    ) -> RollbackResult:
        run = _RollbackRun(uuid4())
        self._statuses.put(
            run.rollback_id,
            RollbackStatus(run.rollback_id, RollbackState.INITIALIZING, current_operation="Initializing rollback"),
        )
        logger.info(
            "Starting %s rollback %s for migration %s",
            config.rollback_type.value,
            run.rollback_id,
            config.migration_id,
        )

        with self._tracer.span(
            "docmigrate.rollback.rollback",
            {
                ATTR_ROLLBACK_ID: str(run.rollback_id),
                ATTR_ROLLBACK_TYPE: config.rollback_type.value,
                ATTR_MIGRATION_ID: str(config.migration_id),
            },
        ):
            try:
                result = await self._run(config, run, action)
            except MigrationError as e:
                logger.error("Rollback %s failed: %s", run.rollback_id, e)
                await self._record(config, LogLevel.WARNING, f"Rollback failed: {e.message}")
                return self._failed(run, e.message)
            except Exception as e:
                logger.exception("Rollback %s failed unexpectedly", run.rollback_id)
                self._failed(run, str(e))
                raise
        if result.success and not config.dry_run:
            await self._record(config, LogLevel.INFO, f"Rollback {config.rollback_type.value} completed")
        return result

    async def _run(
        self,
        config: RollbackConfiguration,
        run: _RollbackRun,
        action: Callable[[RollbackConfiguration, _RollbackRun], Awaitable[None]],
    ) -> RollbackResult:
        self._update(run, RollbackState.VALIDATING, 10, "Validating configuration")
        validation = await self.validate_rollback(config)
        if not validation.is_valid:
            summary = validation.error_summary()
            run.add(RollbackOperationType.VALIDATION, "Configuration validation", False, summary)
            return self._failed(run, f"Validation failed: {summary}")
        run.add(RollbackOperationType.VALIDATION, "Configuration validation")

        if config.require_confirmation and not config.dry_run:
            self._update(run, RollbackState.AWAITING_CONFIRMATION, 20, "Awaiting confirmation")
            if self.confirm is None:
                logger.warning("Rollback requires confirmation; approving automatically")
                run.add(RollbackOperationType.CONFIRMATION, "Confirmation (auto-approved)")
            elif await self.confirm(config):
                run.add(RollbackOperationType.CONFIRMATION, "Confirmation granted")
            else:
                run.add(RollbackOperationType.CONFIRMATION, "Confirmation refused", False)
                return self._failed(run, "Rollback was not confirmed", RollbackState.CANCELLED)

        if config.dry_run:
            logger.info("Dry run: rollback %s validated", run.rollback_id)
            run.count(end_time=datetime.now(UTC))
            self._update(run, RollbackState.COMPLETED, 100, "Dry run completed")
            return RollbackResult(
                rollback_id=run.rollback_id,
                success=True,
                state=RollbackState.COMPLETED,
                statistics=run.statistics,
                operations=tuple(run.operations),
                integrity_verified=True,
                integrity_details="Dry-run validation completed successfully",
            )

        if config.backup_file_path:
            self._update(run, RollbackState.RUNNING, 30, "Verifying backup file")
            path = config.backup_file_path
            backup_type = detect_backup_type(Path(path).name) or (
                BackupType.MONGODB if "mongo" in path.lower() else BackupType.POSTGRESQL
            )
            verification = await self._context.backup.verify_backup(path, backup_type)
            if not verification.is_valid:
                summary = verification.error_summary()
                run.add(RollbackOperationType.BACKUP_VERIFICATION, "Backup file verification", False, summary)
                return self._failed(run, f"Backup verification failed: {summary}")
            run.add(RollbackOperationType.BACKUP_VERIFICATION, "Backup file verification")

        self._update(run, RollbackState.RUNNING, 40, "Performing rollback operations")
        await action(config, run)
        self._update(run, RollbackState.RUNNING, 80, "Rollback operations completed")

        self._update(run, RollbackState.VERIFYING, 90, "Verifying connectivity")
        problems = await self._verify(config)
        run.add(
            RollbackOperationType.INTEGRITY_CHECK,
            "Post-rollback integrity verification",
            not problems,
            "; ".join(problems) or None,
        )

        restore_failed = [
            op for op in run.operations if op.operation_type == RollbackOperationType.RESTORE_DATA and not op.success
        ]
        if restore_failed:
            return self._failed(run, f"Restoring source data failed: {restore_failed[0].error_message}")

        run.count(end_time=datetime.now(UTC))
        self._update(run, RollbackState.COMPLETED, 100, "Rollback completed")
        logger.info(
            "Rollback %s completed in %.1fs",
            run.rollback_id,
            run.statistics.duration_seconds,
        )
        return RollbackResult(
            rollback_id=run.rollback_id,
            success=True,
            state=RollbackState.COMPLETED,
            statistics=run.statistics,
            operations=tuple(run.operations),
            integrity_verified=not problems,
            integrity_details="All integrity checks passed" if not problems else "; ".join(problems),
        )

    async def _verify(self, config: RollbackConfiguration) -> list[str]:
        problems: list[str] = []
        stores: list[tuple[str, Any]] = [("PostgreSQL", self._context.target)]
        if config.restore_source_data:
            stores.append(("MongoDB", self._context.source))
        for name, store in stores:
            try:
                await store.ping()
            except ConnectivityError as e:
                problems.append(f"{name} is not reachable: {e.message}")
        return problems

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _migrated_tables(self, collections: Sequence[str] = ()) -> list[str]:
        transformations = self._context.transformations
        if not collections:
            return transformations.tables()
        return sorted({transformations.table_for(name) for name in collections})

    async def _drop_tables(self, run: _RollbackRun) -> None:
        for table in self._migrated_tables():
            outcome = await self._context.target.drop_table(table)
            if outcome.committed:
                run.count(tables_dropped=run.statistics.tables_dropped + 1)
                run.add(RollbackOperationType.DROP_TABLE, f"Dropped table: {table}", table=table)
                logger.info("Dropped table %s", table)
            else:
                run.add(
                    RollbackOperationType.DROP_TABLE,
                    f"Failed to drop table: {table}",
                    False,
                    outcome.error,
                    table=table,
                )
                logger.warning("Failed to drop table %s: %s", table, outcome.error)

    async def _full(self, config: RollbackConfiguration, run: _RollbackRun) -> None:
        if config.drop_tables:
            await self._drop_tables(run)
        if config.restore_source_data and config.backup_file_path:
            await self._restore_source(config, run)

    async def _schema_only(self, config: RollbackConfiguration, run: _RollbackRun) -> None:
        existing = set(await self._context.target.list_tables())
        for table in self._migrated_tables():
            if table not in existing:
                continue
            dropped = await self._context.index_optimizer.drop_indexes(table)
            run.count(indexes_dropped=run.statistics.indexes_dropped + len(dropped.dropped))
            for name in dropped.dropped:
                run.add(RollbackOperationType.DROP_INDEX, f"Dropped index: {name}", table=table)
            for name, error in dropped.failed.items():
                run.add(RollbackOperationType.DROP_INDEX, f"Failed to drop index: {name}", False, error)
        await self._drop_tables(run)

    async def _restore_source(self, config: RollbackConfiguration, run: _RollbackRun) -> None:
        path = config.backup_file_path
        if not path or not config.source_uri:
            raise RollbackError("A backup file and a MongoDB connection string are required for restoration")
        result = await self._context.backup.restore_mongo_backup(
            path,
            config.source_uri,
            config.source_database,
            timeout=config.timeout_seconds,
        )
        if result.success:
            size = Path(path).stat().st_size
            run.count(data_size_restored=size)
            run.add(RollbackOperationType.RESTORE_DATA, "Restored MongoDB data from backup", size_bytes=size)
        else:
            run.add(
                RollbackOperationType.RESTORE_DATA,
                "Failed to restore MongoDB data from backup",
                False,
                result.stderr.strip() or f"mongorestore exited with {result.exit_code}",
            )

    async def _delete(self, run: _RollbackRun, tables: Sequence[str], **filters: Any) -> None:
        existing = set(await self._context.target.list_tables())
        deleted = dict(run.statistics.rows_deleted)
        for table in tables:
            if table not in existing:
                logger.debug("Skipping missing table %s", table)
                continue
            count = await self._context.target.delete_rows(table, **filters)
            deleted[table] = deleted.get(table, 0) + count
            run.add(RollbackOperationType.DELETE_ROWS, f"Deleted {count} rows from {table}", table=table, rows=count)
            logger.info("Deleted %d rows from %s", count, table)
        run.count(rows_deleted=deleted)

    async def _partial(self, config: RollbackConfiguration, run: _RollbackRun) -> None:
        await self._delete(
            run,
            self._migrated_tables(config.collections),
            created_from=format_iso_ms(config.start_date) if config.start_date else None,
            created_to=format_iso_ms(config.end_date) if config.end_date else None,
            original_ids=list(config.document_ids) or None,
        )

    async def _point_in_time(self, config: RollbackConfiguration, run: _RollbackRun) -> None:
        points = await self.list_rollback_points(config.migration_id)
        point = next((p for p in points if p.id == config.rollback_point_id), None)
        if point is None:
            raise RollbackError(f"Rollback point {config.rollback_point_id} not found")
        logger.info("Rolling back to point %s (%s)", point.id, point.created_at.isoformat())
        await self._delete(run, self._migrated_tables(), written_after=point.created_at)


__all__ = [
    "DEFAULT_ROLLBACK_TIMEOUT_SECONDS",
    "ROLLBACK_POINT_COLLECTION",
    "ConfirmCallback",
    "RollbackConfiguration",
    "RollbackOperation",
    "RollbackOperationType",
    "RollbackPoint",
    "RollbackPointState",
    "RollbackResult",
    "RollbackService",
    "RollbackState",
    "RollbackStatistics",
    "RollbackStatus",
    "RollbackType",
]
