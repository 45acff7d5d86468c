"""
MigrationEngine - moves Nightscout collections from MongoDB to PostgreSQL.

A run goes through these phases:

1. Pre-migration validation (schema, data samples, conflicts, references)
2. Target preparation (required tables, tracking tables, optional backup)
3. Secondary index creation
4. Worklist resolution, largest collection first
5. Parallel collection migration with checkpoints
6. Aggregation into a MigrationResult

Collections run concurrently, bounded by ``max_degree_of_parallelism``.
Within a collection a producer task reads fixed-size batches into a bounded
``asyncio.Queue`` and the consumer commits them strictly in source order, so
every checkpoint describes a committed prefix of the sorted cursor. A resumed
collection seeks past the sort key stored with its latest checkpoint.

Usage:
    >>> engine = MigrationEngine()
    >>> result = await engine.migrate(config)
    >>> result.statistics.total_documents_migrated
    10050
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from docmigrate.analysis import CollectionAnalysis
from docmigrate.backup import BackupConfiguration
from docmigrate.batching import BatchProcessor, BatchResult
from docmigrate.cancellation import CancellationToken
from docmigrate.context import ContextFactory, MigrationContext, open_context
from docmigrate.exceptions import (
    BackupError,
    ConnectivityError,
    MigrationCancelledError,
    MigrationError,
    MigrationNotFoundError,
    SchemaError,
)
from docmigrate.models import (
    CollectionStatistics,
    MigrationCheckpoint,
    MigrationConfiguration,
    MigrationResult,
    MigrationState,
    MigrationStatistics,
    MigrationStatus,
    ValidationError,
    ValidationResult,
)
from docmigrate.observability import (
    ATTR_COLLECTION,
    ATTR_DOCUMENT_COUNT,
    ATTR_ERROR_TYPE,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)
from docmigrate.repositories import LogLevel, MigrationLogEntry, latest_per_collection
from docmigrate.status import StatusRegistry
from docmigrate.stores import (
    DEFAULT_SORT,
    Document,
    and_filters,
    build_seek_filter,
    build_source_filter,
    decode_sort_key,
    encode_sort_key,
    is_system_collection,
    sort_key_of,
)

logger = logging.getLogger(__name__)

# Durable lifecycle messages; status lookups from migration_logs match on them.
MESSAGE_STARTED = "Migration started"
MESSAGE_RESUMED = "Migration resumed"
MESSAGE_COMPLETED = "Migration completed"
MESSAGE_CANCELLED = "Migration cancelled"
MESSAGE_FAILED = "Migration failed"
MESSAGE_DOCUMENT_FAILED = "Document failed to migrate"

LIFECYCLE_STATES: dict[str, MigrationState] = {
    MESSAGE_COMPLETED: MigrationState.COMPLETED,
    MESSAGE_CANCELLED: MigrationState.CANCELLED,
    MESSAGE_FAILED: MigrationState.FAILED,
    MESSAGE_RESUMED: MigrationState.RUNNING,
    MESSAGE_STARTED: MigrationState.RUNNING,
}

MAX_LOGGED_FAILURES_PER_COLLECTION = 100

# Checkpoint metadata: extended JSON sort key of the last committed document
RESUME_AFTER_KEY = "resume_after"

# Progress bands of the run phases
PROGRESS_VALIDATING = 5.0
PROGRESS_PREPARING = 10.0
PROGRESS_INDEXING = 15.0
PROGRESS_MIGRATION_SPAN = 80.0


def _exception_text(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"


def _escalate_conflicts(result: ValidationResult) -> ValidationResult:
    """Turn every conflict into a blocking error."""
    escalated = tuple(
        ValidationError(conflict.conflict_type, conflict.description, conflict.value)
        for conflict in result.conflicts
    )
    return ValidationResult(errors=result.errors + escalated, conflicts=result.conflicts)


@dataclass
class _CollectionProgress:
    """Mutable counters of one collection, owned by its consumer task."""

    collection_name: str
    total: int
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    read: int = 0
    batches: int = 0
    logged_failures: int = 0
    resume_after: dict[str, Any] | None = None
    started: float = field(default_factory=time.perf_counter)

    def apply(self, result: BatchResult) -> None:
        self.migrated += result.migrated
        self.failed += result.failed
        self.skipped += result.skipped
        self.read += result.documents_read
        self.batches += 1

    def statistics(self) -> CollectionStatistics:
        return CollectionStatistics(
            collection_name=self.collection_name,
            total_documents=self.total,
            documents_migrated=self.migrated,
            documents_failed=self.failed,
            documents_skipped=self.skipped,
            duration_seconds=time.perf_counter() - self.started,
        )


class _MigrationRun:
    """State of one migrate or resume call."""

    def __init__(
        self,
        engine: MigrationEngine,
        context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
        cancellation: CancellationToken,
        resume_from: dict[str, MigrationCheckpoint] | None = None,
    ) -> None:
        self.engine = engine
        self.context = context
        self.config = config
        self.migration_id = migration_id
        self.cancellation = cancellation
        self.resume_from = resume_from
        self.checkpoint_lock = asyncio.Lock()
        self.last_checkpoint_id: UUID | None = None
        self.backup_path: str | None = None
        self.progress: dict[str, _CollectionProgress] = {}
        self.processor = BatchProcessor(
            context.target,
            context.transformations,
            max_batch_payload_bytes=config.max_batch_payload_bytes,
            skip_duplicates=config.skip_duplicates,
            tracer=engine._tracer,
        )

    @property
    def _log_extra(self) -> dict[str, Any]:
        return {"migration_id": str(self.migration_id)}

    # -------------------------------------------------------------------------
    # Status and durable log
    # -------------------------------------------------------------------------

    def _advance(self, **changes: Any) -> MigrationStatus:
        return self.engine._statuses.update(self.migration_id, lambda s: s.advance(**changes))

    def _statistics(self) -> MigrationStatistics:
        status = self.engine._statuses.get(self.migration_id)
        return status.statistics if status else MigrationStatistics()

    async def record(
        self,
        level: LogLevel,
        message: str,
        *,
        exception: str | None = None,
        collection: str | None = None,
        document_id: str | None = None,
    ) -> None:
        """Append to migration_logs; a failing log write is only a warning."""
        entry = MigrationLogEntry(
            self.migration_id,
            level,
            message,
            exception=exception,
            collection_name=collection,
            document_id=document_id,
        )
        try:
            await self.context.logs.append(entry)
        except (MigrationError, SQLAlchemyError) as e:
            logger.warning("Could not write migration log entry: %s", e, extra=self._log_extra)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def execute(self) -> MigrationResult:
        try:
            return await self._execute()
        except MigrationCancelledError as e:
            logger.warning("Migration %s cancelled: %s", self.migration_id, e.message, extra=self._log_extra)
            await self.record(LogLevel.ERROR, MESSAGE_CANCELLED, exception=_exception_text(e))
            return self._finish(MigrationState.CANCELLED, error_message=e.message)
        except MigrationError as e:
            logger.error("Migration %s failed: %s", self.migration_id, e, extra=self._log_extra)
            await self.record(LogLevel.ERROR, MESSAGE_FAILED, exception=_exception_text(e))
            return self._finish(MigrationState.FAILED, error_message=str(e))
        except Exception as e:
            logger.exception("Migration %s failed unexpectedly", self.migration_id, extra=self._log_extra)
            await self.record(LogLevel.ERROR, MESSAGE_FAILED, exception=_exception_text(e))
            self._finish(MigrationState.FAILED, error_message=_exception_text(e))
            raise

    def _finish(
        self,
        state: MigrationState,
        *,
        error_message: str | None = None,
        validation: ValidationResult | None = None,
    ) -> MigrationResult:
        statistics = self._statistics().finished(self.context.memory.peak_mb)
        status = self._advance(
            state=state,
            progress_percentage=100.0 if state == MigrationState.COMPLETED else None,
            statistics=statistics,
            error_message=error_message,
            current_operation=state.value,
        )
        return MigrationResult(
            migration_id=self.migration_id,
            success=state == MigrationState.COMPLETED,
            state=state,
            statistics=status.statistics,
            error_message=error_message,
            validation=validation,
            checkpoint_id=self.last_checkpoint_id,
            transformation_statistics={
                name: stats.to_dict() for name, stats in self.context.transformations.all_statistics().items()
            },
            backup_path=self.backup_path,
        )

    async def _execute(self) -> MigrationResult:
        config = self.config
        context = self.context
        resuming = self.resume_from is not None

        self._advance(progress_percentage=PROGRESS_VALIDATING, current_operation="validating")
        candidates = await self.engine._eligible_collections(context, config)
        validation = await self.engine.validate_pre_migration(config, context, candidates)
        # Transformation statistics count migrated documents, never validation samples.
        context.transformations.reset_statistics()
        if not validation.is_valid:
            message = f"Pre-migration validation failed: {validation.error_summary()}"
            logger.error("%s", message, extra=self._log_extra)
            await self.record(LogLevel.ERROR, MESSAGE_FAILED, exception=message)
            return self._finish(MigrationState.FAILED, error_message=message, validation=validation)
        if config.validation.dry_run:
            logger.info("Dry run finished for migration %s", self.migration_id, extra=self._log_extra)
            return self._finish(MigrationState.COMPLETED, validation=validation)
        self.cancellation.raise_if_cancelled("validation")

        self._advance(progress_percentage=PROGRESS_PREPARING, current_operation="preparing target")
        await self._prepare_target(candidates, resuming)
        self._advance(state=MigrationState.RUNNING)
        await self.record(LogLevel.INFO, MESSAGE_RESUMED if resuming else MESSAGE_STARTED)

        if not config.skip_index_creation:
            self._advance(progress_percentage=PROGRESS_INDEXING, current_operation="creating indexes")
            await context.index_optimizer.optimize(candidates, context.source)
        self.cancellation.raise_if_cancelled("index creation")

        worklist = await self._resolve_worklist(candidates)
        logger.info(
            "Migrating %d collections: %s",
            len(worklist),
            ", ".join(a.collection_name for a in worklist),
            extra=self._log_extra,
        )
        await self._migrate_collections(worklist)

        statistics = self._statistics()
        logger.info(
            "Migration %s completed: %d migrated, %d failed, %d skipped",
            self.migration_id,
            statistics.total_documents_migrated,
            statistics.total_documents_failed,
            statistics.total_documents_skipped,
            extra=self._log_extra,
        )
        await self.record(LogLevel.INFO, MESSAGE_COMPLETED)
        return self._finish(MigrationState.COMPLETED, validation=validation)

    async def _prepare_target(self, collections: Sequence[str], resuming: bool) -> None:
        context = self.context
        required = sorted({context.transformations.table_for(c) for c in collections})
        existing = set(await context.target.list_tables())
        missing = [table for table in required if table not in existing]
        if missing:
            raise SchemaError(
                f"Required target tables do not exist: {', '.join(missing)}",
                tables=missing,
            )

        await context.ensure_tracking_schema()
        if self.config.drop_existing_tables and not resuming:
            logger.info("Resetting tracking tables and truncating %s", ", ".join(required))
            await context.reset_tracking_schema()
            await context.target.truncate_tables(required)

        if self.config.create_pre_migration_backup:
            result = await context.backup.create_postgres_backup(
                BackupConfiguration(self.config.target_url, self.config.backup_directory)
            )
            if not result.success:
                raise BackupError(f"Pre-migration backup failed: {result.error_message}")
            self.backup_path = result.path

    async def _resolve_worklist(self, collections: Sequence[str]) -> list[CollectionAnalysis]:
        analyses = [
            await self.context.analyzer.analyze(
                name,
                self.config.date_range,
                self.config.skip_document_ids,
            )
            for name in collections
        ]
        return sorted(analyses, key=lambda a: a.document_count, reverse=True)

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    async def _migrate_collections(self, worklist: Sequence[CollectionAnalysis]) -> None:
        semaphore = asyncio.Semaphore(self.config.max_degree_of_parallelism)

        async def bounded(analysis: CollectionAnalysis) -> None:
            async with semaphore:
                self.cancellation.raise_if_cancelled(f"collection {analysis.collection_name}")
                await self._migrate_collection(analysis)

        tasks = [asyncio.create_task(bounded(analysis)) for analysis in worklist]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _update_progress(self, progress: _CollectionProgress) -> None:
        total = sum(p.total for p in self.progress.values())
        read = sum(min(p.read, p.total) for p in self.progress.values())
        percentage = PROGRESS_INDEXING + (PROGRESS_MIGRATION_SPAN * read / total if total else 0.0)
        self.engine._statuses.update(
            self.migration_id,
            lambda s: s.advance(
                progress_percentage=percentage,
                current_operation=f"migrating {progress.collection_name}",
                statistics=s.statistics.with_collection(progress.statistics()),
            ),
        )

    async def _migrate_collection(self, analysis: CollectionAnalysis) -> None:
        collection = analysis.collection_name
        checkpoint = (self.resume_from or {}).get(collection)
        progress = _CollectionProgress(collection, analysis.document_count)
        if checkpoint is not None:
            progress.migrated = checkpoint.documents_processed
            progress.failed = checkpoint.documents_failed
            progress.read = checkpoint.documents_read
            progress.skipped = int(checkpoint.metadata.get("documents_skipped", 0))
            progress.batches = int(checkpoint.metadata.get("batch_number", 0))
            resume_after = checkpoint.metadata.get(RESUME_AFTER_KEY)
            if resume_after:
                progress.resume_after = decode_sort_key(resume_after)
            logger.info(
                "Resuming %s after %d documents",
                collection,
                checkpoint.documents_read,
                extra={**self._log_extra, "collection": collection},
            )
        self.progress[collection] = progress
        self._update_progress(progress)

        with self.engine._tracer.span(
            "docmigrate.engine.migrate_collection",
            {
                ATTR_MIGRATION_ID: str(self.migration_id),
                ATTR_COLLECTION: collection,
                ATTR_DOCUMENT_COUNT: analysis.document_count,
            },
        ) as span:
            try:
                await self._consume(collection, progress)
            except MigrationError as e:
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                raise
            finally:
                self._update_progress(progress)

        logger.info(
            "Collection %s finished: %d migrated, %d failed of %d",
            collection,
            progress.migrated,
            progress.failed,
            progress.total,
            extra={**self._log_extra, "collection": collection},
        )

    async def _produce(
        self,
        collection: str,
        progress: _CollectionProgress,
        queue: asyncio.Queue[list[Document] | BaseException | None],
    ) -> None:
        """
        Read fixed-size batches into the queue; errors are forwarded to the consumer.

        A resumed collection seeks past the sort key of the last checkpointed
        document. Checkpoints without a stored key fall back to skipping the
        documents read so far.
        """
        query = build_source_filter(self.config.date_range, self.config.skip_document_ids)
        skip = 0
        if progress.resume_after is not None:
            query = and_filters(query, build_seek_filter(progress.resume_after, DEFAULT_SORT))
        else:
            skip = progress.read
        batch: list[Document] = []
        try:
            async for document in self.context.source.find(
                collection,
                query,
                sort=DEFAULT_SORT,
                skip=skip,
                batch_size=self.config.batch_size,
            ):
                batch.append(document)
                if len(batch) >= self.config.batch_size:
                    await queue.put(batch)
                    batch = []
                    if self.cancellation.is_cancelled:
                        break
            if batch and not self.cancellation.is_cancelled:
                await queue.put(batch)
        except Exception as e:
            await queue.put(e)
            return
        await queue.put(None)

    async def _consume(self, collection: str, progress: _CollectionProgress) -> None:
        queue: asyncio.Queue[list[Document] | BaseException | None] = asyncio.Queue(
            maxsize=self.config.max_in_flight_batches
        )
        producer = asyncio.create_task(self._produce(collection, progress, queue))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                self.cancellation.raise_if_cancelled(f"collection {collection}")

                result = await self.processor.process(collection, progress.batches + 1, item)
                progress.apply(result)
                progress.resume_after = sort_key_of(item[-1], DEFAULT_SORT)
                await self._record_failures(collection, progress, result)
                await self._maybe_checkpoint(collection, progress, result)
                self._update_progress(progress)
                await self.context.memory.check()
                logger.debug(
                    "Batch %d of %s: %d migrated, %d failed (%s)",
                    result.batch_number,
                    collection,
                    result.migrated,
                    result.failed,
                    result.commit_mode.value,
                    extra={**self._log_extra, "collection": collection, "batch_number": result.batch_number},
                )
        finally:
            if not producer.done():
                producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
        self.cancellation.raise_if_cancelled(f"collection {collection}")

    async def _record_failures(
        self,
        collection: str,
        progress: _CollectionProgress,
        result: BatchResult,
    ) -> None:
        for failure in result.failures:
            if progress.logged_failures >= MAX_LOGGED_FAILURES_PER_COLLECTION:
                return
            progress.logged_failures += 1
            await self.record(
                LogLevel.WARNING,
                MESSAGE_DOCUMENT_FAILED,
                exception=failure.error,
                collection=collection,
                document_id=failure.document_id,
            )

    async def _maybe_checkpoint(
        self,
        collection: str,
        progress: _CollectionProgress,
        result: BatchResult,
    ) -> None:
        if not self.config.enable_checkpointing or progress.batches % self.config.checkpoint_interval:
            return
        metadata: dict[str, Any] = {"documents_skipped": progress.skipped, "batch_number": progress.batches}
        if progress.resume_after is not None:
            resume_after = encode_sort_key(progress.resume_after)
            if resume_after is not None:
                metadata[RESUME_AFTER_KEY] = resume_after
        checkpoint = MigrationCheckpoint(
            migration_id=self.migration_id,
            collection_name=collection,
            last_processed_id=result.last_document_id,
            documents_processed=progress.migrated,
            documents_read=progress.read,
            total_documents=progress.total,
            metadata=metadata,
        )
        async with self.checkpoint_lock:
            try:
                await self.context.checkpoints.save(checkpoint)
            except (MigrationError, SQLAlchemyError) as e:
                logger.warning(
                    "Checkpoint for %s at %d documents failed: %s",
                    collection,
                    progress.read,
                    e,
                    extra={**self._log_extra, "collection": collection},
                )
                return
            self.last_checkpoint_id = checkpoint.id
        logger.debug("Checkpoint for %s at %d documents", collection, progress.read)


class MigrationEngine:
    """
    Orchestrates migrations and answers status queries.

    The engine keeps the status of every run it started in a StatusRegistry.
    Runs started by another process are looked up in migration_logs.

    Example:
        >>> engine = MigrationEngine()
        >>> token = CancellationToken()
        >>> result = await engine.migrate(config, token)
        >>> status = await engine.get_status(result.migration_id)
        >>> status.state
        <MigrationState.COMPLETED: 'completed'>

    Attributes:
        context_factory: Builds the connected components for a configuration.
    """

    def __init__(
        self,
        context_factory: ContextFactory = open_context,
        *,
        status_registry: StatusRegistry[UUID, MigrationStatus] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.context_factory = context_factory
        self._statuses: StatusRegistry[UUID, MigrationStatus] = status_registry or StatusRegistry()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def migrate(
        self,
        config: MigrationConfiguration,
        cancellation: CancellationToken | None = None,
        *,
        migration_id: UUID | None = None,
    ) -> MigrationResult:
        """
        Run a migration.

        Taxonomy errors and cancellation produce a result; unexpected
        exceptions are logged, persisted and re-raised.

        Args:
            config: Migration configuration.
            cancellation: Token observed between batches and collections.
            migration_id: Identifier for the run; generated when omitted.

        Returns:
            MigrationResult with the statistics gathered so far.
        """
        return await self._run(migration_id or uuid4(), config, cancellation)

    async def resume(
        self,
        migration_id: UUID,
        config: MigrationConfiguration,
        cancellation: CancellationToken | None = None,
    ) -> MigrationResult:
        """
        Continue a migration from the latest checkpoint of each collection.

        Collections without a checkpoint start from the beginning. Tables are
        never truncated on resume, whatever ``drop_existing_tables`` says.
        """
        if config.drop_existing_tables:
            logger.info("Ignoring drop_existing_tables while resuming migration %s", migration_id)
            config = config.with_changes(drop_existing_tables=False)
        return await self._run(migration_id, config, cancellation, resume=True)

    async def _run(
        self,
        migration_id: UUID,
        config: MigrationConfiguration,
        cancellation: CancellationToken | None,
        resume: bool = False,
    ) -> MigrationResult:
        status = MigrationStatus(migration_id, MigrationState.INITIALIZING, current_operation="initializing")
        self._statuses.put(migration_id, status)

        structural = config.validate()
        if not structural.is_valid:
            message = f"Invalid configuration: {structural.error_summary()}"
            logger.error("%s", message)
            status = self._statuses.update(
                migration_id,
                lambda s: s.advance(
                    state=MigrationState.FAILED,
                    error_message=message,
                    statistics=s.statistics.finished(),
                ),
            )
            return MigrationResult(
                migration_id=migration_id,
                success=False,
                state=MigrationState.FAILED,
                statistics=status.statistics,
                error_message=message,
                validation=structural,
            )

        with self._tracer.span(
            "docmigrate.engine.resume" if resume else "docmigrate.engine.migrate",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ):
            try:
                async with self.context_factory(config) as context:
                    resume_from = None
                    if resume:
                        await context.ensure_tracking_schema()
                        resume_from = latest_per_collection(
                            await context.checkpoints.list_for_migration(migration_id)
                        )
                        if not resume_from:
                            logger.info("No checkpoints for migration %s, starting from scratch", migration_id)
                    run = _MigrationRun(
                        self,
                        context,
                        config,
                        migration_id,
                        cancellation or CancellationToken(),
                        resume_from,
                    )
                    return await run.execute()
            except MigrationError as e:
                # Raised while connecting or loading checkpoints, before the run started
                logger.error("Migration %s could not start: %s", migration_id, e)
                status = self._statuses.update(
                    migration_id,
                    lambda s: s.advance(
                        state=MigrationState.FAILED,
                        error_message=str(e),
                        statistics=s.statistics.finished(),
                    ),
                )
                return MigrationResult(
                    migration_id=migration_id,
                    success=False,
                    state=MigrationState.FAILED,
                    statistics=status.statistics,
                    error_message=str(e),
                )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(
        self,
        migration_id: UUID,
        config: MigrationConfiguration | None = None,
    ) -> MigrationStatus:
        """
        Current status of a migration.

        Runs of this engine are answered from memory. Otherwise, when a
        configuration is given, the newest lifecycle entry in migration_logs
        decides the state.

        Raises:
            MigrationNotFoundError: If the migration is unknown.
        """
        status = self._statuses.get(migration_id)
        if status is not None:
            return status
        if config is None:
            raise MigrationNotFoundError(migration_id)

        async with self.context_factory(config) as context:
            entries = await context.logs.get_logs(migration_id)
        for entry in entries:
            state = LIFECYCLE_STATES.get(entry.message)
            if state is None:
                continue
            return MigrationStatus(
                migration_id=migration_id,
                state=state,
                progress_percentage=100.0 if state == MigrationState.COMPLETED else 0.0,
                current_operation=state.value,
                updated_at=entry.logged_at,
                error_message=entry.exception if state == MigrationState.FAILED else None,
            )
        raise MigrationNotFoundError(migration_id)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate(self, config: MigrationConfiguration) -> ValidationResult:
        """
        Structural validation, then connectivity when the structure is valid.
        """
        structural = config.validate()
        if not structural.is_valid:
            return structural

        errors: list[ValidationError] = []
        try:
            async with self.context_factory(config) as context:
                for name, store, field_name in (
                    ("MongoDB", context.source, "source_uri"),
                    ("PostgreSQL", context.target, "target_url"),
                ):
                    try:
                        await store.ping()
                    except ConnectivityError as e:
                        errors.append(ValidationError(field_name, f"Cannot connect to {name}: {e.message}"))
        except MigrationError as e:
            errors.append(ValidationError("connection", e.message))
        return ValidationResult.failure(*errors) if errors else ValidationResult.success()

    async def validate_pre_migration(
        self,
        config: MigrationConfiguration,
        context: MigrationContext,
        collections: Sequence[str] | None = None,
    ) -> ValidationResult:
        """
        Validate the target and source data before any write.

        Schema and data-compatibility checks are skipped when
        ``drop_existing_tables`` is set; conflict detection and referential
        checks always run when enabled.
        """
        options = config.validation
        names = list(collections) if collections is not None else await self._eligible_collections(context, config)
        result = ValidationResult.success()

        if not config.drop_existing_tables:
            if options.validate_schema:
                schema = await context.validator.validate_schema(context.validator.expected_shapes(names))
                result = result.merge(schema.to_validation_result())
            if options.validate_data:
                result = result.merge(
                    await context.validator.validate_data_compatibility(names, options.sample_size)
                )
        if options.detect_conflicts:
            result = result.merge(await context.validator.detect_conflicts(names))
        if options.validate_referential_integrity:
            result = result.merge(await context.validator.validate_referential_integrity(names))

        if options.fail_on_conflicts and result.has_conflicts:
            result = _escalate_conflicts(result)
        logger.info(
            "Pre-migration validation: %d errors, %d conflicts",
            len(result.errors),
            len(result.conflicts),
        )
        return result

    async def _eligible_collections(
        self,
        context: MigrationContext,
        config: MigrationConfiguration,
    ) -> list[str]:
        """Source collections that are allowed, not system collections, and transformable."""
        available = [name for name in await context.source.list_collections() if not is_system_collection(name)]
        if config.collections:
            allowed = {name.lower() for name in config.collections}
            available = [name for name in available if name.lower() in allowed]
        eligible = [name for name in available if context.transformations.supports(name)]
        unsupported = sorted(set(available) - set(eligible))
        if unsupported:
            logger.info("Skipping collections without a transformer: %s", ", ".join(unsupported))
        return eligible


__all__ = [
    "LIFECYCLE_STATES",
    "MAX_LOGGED_FAILURES_PER_COLLECTION",
    "MESSAGE_CANCELLED",
    "MESSAGE_COMPLETED",
    "MESSAGE_DOCUMENT_FAILED",
    "MESSAGE_FAILED",
    "MESSAGE_RESUMED",
    "MESSAGE_STARTED",
    "RESUME_AFTER_KEY",
    "MigrationEngine",
]
