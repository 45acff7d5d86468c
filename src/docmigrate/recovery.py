"""
Failure analysis and recovery of migrations.

RecoveryService reads the durable migration log of a failed run,
classifies the most recent error into a FailureType, and executes one of
the static strategies catalogued for that type. A recovery never restarts
the migration itself: its result says whether the run can resume, from
which checkpoint, and with which adjusted configuration. Hand those to
``MigrationEngine.resume``.

Steps of a recovery, with progress percentages:

    validate (10) -> analyze (20) -> select strategy (30)
        -> optional backup (40) -> execute (60) -> verify (90) -> done (100)

The whole recovery is bounded by ``RecoveryConfiguration.timeout_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from docmigrate.backup import BackupConfiguration, BackupRetentionPolicy
from docmigrate.context import MigrationContext
from docmigrate.engine import MESSAGE_DOCUMENT_FAILED
from docmigrate.exceptions import (
    CONNECTIVITY_RETRY_CONFIG,
    ErrorHandler,
    MigrationError,
    RecoveryError,
    RecoveryNotFoundError,
)
from docmigrate.models import MigrationConfiguration, ValidationError, ValidationResult
from docmigrate.observability import (
    ATTR_FAILURE_TYPE,
    ATTR_MIGRATION_ID,
    ATTR_RECOVERY_ID,
    ATTR_STRATEGY_ID,
    Tracer,
    create_tracer,
)
from docmigrate.repositories import LogLevel, MigrationLogEntry, get_latest_checkpoint
from docmigrate.status import StatusRegistry

logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_TIMEOUT_SECONDS = 1800.0
MAX_ADJUSTED_BATCH_SIZE = 500
ROOT_CAUSE_MAX_LENGTH = 100


class FailureType(Enum):
    """Coarse category of an observed failure."""

    NETWORK = "network"
    DATABASE_CONNECTION = "database_connection"
    OUT_OF_MEMORY = "out_of_memory"
    DISK_SPACE = "disk_space"
    DATA_CORRUPTION = "data_corruption"
    USER_CANCELLATION = "user_cancellation"
    SYSTEM_CRASH = "system_crash"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    SCHEMA_VALIDATION = "schema_validation"
    TRANSFORMATION = "transformation"
    UNKNOWN = "unknown"


class RecoveryAction(Enum):
    """Concrete step a strategy performs."""

    RESUME_FROM_CHECKPOINT = "resume_from_checkpoint"
    RESTORE_CONNECTIONS = "restore_connections"
    CLEANUP_RESOURCES = "cleanup_resources"
    INCREASE_RESOURCES = "increase_resources"
    ADJUST_AND_RETRY = "adjust_and_retry"
    SKIP_DATA = "skip_data"
    CLEANUP_DISK = "cleanup_disk"
    MANUAL_INTERVENTION = "manual_intervention"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryType(Enum):
    """How the strategy of a recovery is chosen."""

    AUTO = "auto"
    """First recommended strategy for the classified failure."""

    RESUME = "resume"
    """Resume from the latest checkpoint."""

    RETRY = "retry"
    """Retry with a smaller batch size and no parallelism."""

    SKIP = "skip"
    """Skip the documents that failed."""

    MANUAL = "manual"
    """The strategy named by ``strategy_id``."""


class RecoveryState(Enum):
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    BACKING_UP = "backing_up"
    RECOVERING = "recovering"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecoveryState.COMPLETED, RecoveryState.FAILED)


# =============================================================================
# Strategy catalog
# =============================================================================


@dataclass(frozen=True)
class RecoveryStrategy:
    """
    A static recovery recipe.

    Attributes:
        id: Stable identifier; several failure types share ids.
        name: Display name.
        description: What the strategy does.
        action: Concrete action executed.
        applicable_failure_types: Failure types this entry was catalogued for.
        success_rate: Estimated success rate in percent.
        estimated_duration_seconds: Rough duration estimate.
        risk_level: Risk of data loss or inconsistency.
        parameters: Action parameters.
    """

    id: str
    name: str
    description: str
    action: RecoveryAction
    applicable_failure_types: tuple[FailureType, ...]
    success_rate: float
    estimated_duration_seconds: float
    risk_level: RiskLevel = RiskLevel.LOW
    parameters: Mapping[str, Any] = field(default_factory=dict)


RESUME_FROM_CHECKPOINT = "resume_from_checkpoint"
RETRY_WITH_ADJUSTMENT = "retry_with_adjustment"
CLEANUP_AND_REDUCE_BATCH_SIZE = "cleanup_and_reduce_batch_size"
SKIP_PROBLEMATIC_DATA = "skip_problematic_data"
MANUAL_INTERVENTION = "manual_intervention"

RESUMABLE_STRATEGIES = frozenset({RESUME_FROM_CHECKPOINT, RETRY_WITH_ADJUSTMENT, CLEANUP_AND_REDUCE_BATCH_SIZE})


def _resume(failure_type: FailureType, success_rate: float, minutes: float, description: str) -> RecoveryStrategy:
    return RecoveryStrategy(
        RESUME_FROM_CHECKPOINT,
        "Resume from Checkpoint",
        description,
        RecoveryAction.RESUME_FROM_CHECKPOINT,
        (failure_type,),
        success_rate,
        minutes * 60,
    )


def _retry(failure_type: FailureType, success_rate: float, minutes: float, name: str) -> RecoveryStrategy:
    return RecoveryStrategy(
        RETRY_WITH_ADJUSTMENT,
        name,
        "Retry with a smaller batch size, no parallelism and connection retries",
        RecoveryAction.ADJUST_AND_RETRY,
        (failure_type,),
        success_rate,
        minutes * 60,
        parameters={"max_batch_size": MAX_ADJUSTED_BATCH_SIZE, "max_degree_of_parallelism": 1},
    )


def _restore(failure_type: FailureType, success_rate: float, name: str, risk: RiskLevel) -> RecoveryStrategy:
    return RecoveryStrategy(
        "restore_connections",
        name,
        "Re-establish database connections with retry and backoff",
        RecoveryAction.RESTORE_CONNECTIONS,
        (failure_type,),
        success_rate,
        5 * 60,
        risk,
    )


def _skip(failure_type: FailureType, success_rate: float, minutes: float, name: str, risk: RiskLevel) -> RecoveryStrategy:
    return RecoveryStrategy(
        SKIP_PROBLEMATIC_DATA,
        name,
        "Skip the documents that failed and continue the migration",
        RecoveryAction.SKIP_DATA,
        (failure_type,),
        success_rate,
        minutes * 60,
        risk,
    )


def _manual(failure_type: FailureType) -> RecoveryStrategy:
    return RecoveryStrategy(
        MANUAL_INTERVENTION,
        "Manual Intervention",
        "Inspect the migration logs and fix the cause by hand",
        RecoveryAction.MANUAL_INTERVENTION,
        (failure_type,),
        10,
        0,
        RiskLevel.HIGH,
    )


def _ordered(*strategies: RecoveryStrategy) -> tuple[RecoveryStrategy, ...]:
    return tuple(sorted(strategies, key=lambda s: s.success_rate, reverse=True))


STRATEGY_CATALOG: dict[FailureType, tuple[RecoveryStrategy, ...]] = {
    FailureType.NETWORK: _ordered(
        _retry(FailureType.NETWORK, 85, 20, "Retry with Connection Adjustment"),
        _resume(FailureType.NETWORK, 90, 15, "Resume migration from the last successful checkpoint"),
    ),
    FailureType.DATABASE_CONNECTION: _ordered(
        _restore(FailureType.DATABASE_CONNECTION, 80, "Restore Database Connections", RiskLevel.LOW),
        _resume(FailureType.DATABASE_CONNECTION, 70, 15, "Resume once the databases are reachable again"),
    ),
    FailureType.OUT_OF_MEMORY: _ordered(
        RecoveryStrategy(
            CLEANUP_AND_REDUCE_BATCH_SIZE,
            "Cleanup and Reduce Batch Size",
            "Force garbage collection and halve the batch size",
            RecoveryAction.CLEANUP_RESOURCES,
            (FailureType.OUT_OF_MEMORY,),
            75,
            10 * 60,
            RiskLevel.MEDIUM,
            {"batch_size_factor": 0.5},
        ),
        RecoveryStrategy(
            "increase_resources",
            "Increase Memory Allocation",
            "Double the memory ceiling of the migration",
            RecoveryAction.INCREASE_RESOURCES,
            (FailureType.OUT_OF_MEMORY,),
            70,
            5 * 60,
            parameters={"memory_factor": 2},
        ),
    ),
    FailureType.DISK_SPACE: _ordered(
        RecoveryStrategy(
            "cleanup_disk_space",
            "Cleanup Disk Space",
            "Delete backups outside the retention policy",
            RecoveryAction.CLEANUP_DISK,
            (FailureType.DISK_SPACE,),
            85,
            15 * 60,
        ),
    ),
    FailureType.DATA_CORRUPTION: _ordered(
        _skip(FailureType.DATA_CORRUPTION, 60, 30, "Skip Corrupted Data", RiskLevel.HIGH),
        _manual(FailureType.DATA_CORRUPTION),
    ),
    FailureType.USER_CANCELLATION: _ordered(
        _resume(FailureType.USER_CANCELLATION, 95, 10, "Resume migration from where it was cancelled"),
    ),
    FailureType.SYSTEM_CRASH: _ordered(
        _resume(FailureType.SYSTEM_CRASH, 85, 20, "Resume migration from the last saved checkpoint"),
    ),
    FailureType.TIMEOUT: _ordered(
        _retry(FailureType.TIMEOUT, 80, 25, "Retry with Extended Timeouts"),
    ),
    FailureType.AUTHENTICATION: _ordered(
        _restore(FailureType.AUTHENTICATION, 70, "Re-authenticate Connections", RiskLevel.MEDIUM),
        _manual(FailureType.AUTHENTICATION),
    ),
    FailureType.SCHEMA_VALIDATION: _ordered(
        _skip(FailureType.SCHEMA_VALIDATION, 65, 20, "Skip Invalid Documents", RiskLevel.MEDIUM),
        _manual(FailureType.SCHEMA_VALIDATION),
    ),
    FailureType.TRANSFORMATION: _ordered(
        _skip(FailureType.TRANSFORMATION, 70, 25, "Skip Transformation Failures", RiskLevel.MEDIUM),
    ),
    FailureType.UNKNOWN: _ordered(
        _resume(FailureType.UNKNOWN, 75, 30, "Resume migration from the last successful checkpoint"),
        _manual(FailureType.UNKNOWN),
    ),
}

# First matching rule wins.
CLASSIFICATION_RULES: tuple[tuple[re.Pattern[str], FailureType], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), failure_type)
    for pattern, failure_type in (
        (r"cancel", FailureType.USER_CANCELLATION),
        (r"auth|permission denied|unauthori[sz]ed|password", FailureType.AUTHENTICATION),
        (
            r"connection refused|could not connect|cannot connect|connect call failed"
            r"|connection failed|(mongodb|postgresql|database) connection",
            FailureType.DATABASE_CONNECTION,
        ),
        (r"network|socket|connection reset|host unreachable|name resolution", FailureType.NETWORK),
        (r"timed? ?out", FailureType.TIMEOUT),
        (r"memory", FailureType.OUT_OF_MEMORY),
        (r"no space left|disk", FailureType.DISK_SPACE),
        (r"corrupt|invalid bson|checksum", FailureType.DATA_CORRUPTION),
        (r"schema|validation", FailureType.SCHEMA_VALIDATION),
        (r"transform|conversion", FailureType.TRANSFORMATION),
        (r"crash|segmentation fault|killed|terminated unexpectedly", FailureType.SYSTEM_CRASH),
    )
)


def classify_failure(message: str, exception: str | None = None) -> FailureType:
    """
    Map an error log entry to a FailureType.

    Example:
        >>> classify_failure("MongoDB connection refused")
        <FailureType.DATABASE_CONNECTION: 'database_connection'>
    """
    text = f"{message} {exception or ''}"
    for pattern, failure_type in CLASSIFICATION_RULES:
        if pattern.search(text):
            return failure_type
    return FailureType.UNKNOWN


def extract_root_cause(message: str, exception: str | None = None) -> str:
    """First line of the exception text, else the message cut to 100 characters."""
    if exception and exception.strip():
        return exception.strip().splitlines()[0].strip()
    if len(message) > ROOT_CAUSE_MAX_LENGTH:
        return message[:ROOT_CAUSE_MAX_LENGTH] + "..."
    return message


def find_strategy(strategy_id: str, failure_type: FailureType | None = None) -> RecoveryStrategy | None:
    """Look up a strategy by id, preferring the entry catalogued for ``failure_type``."""
    if failure_type is not None:
        for strategy in STRATEGY_CATALOG[failure_type]:
            if strategy.id == strategy_id:
                return strategy
    for strategies in STRATEGY_CATALOG.values():
        for strategy in strategies:
            if strategy.id == strategy_id:
                return strategy
    return None


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class FailureAnalysis:
    """
    Classification of the latest failure of a migration.

    Attributes:
        likelihood: Mean success rate of the recommended strategies, in percent.
        requires_immediate_action: True for corruption, crashes and full disks.
    """

    migration_id: UUID
    failure_type: FailureType
    root_cause: str
    recommended_strategies: tuple[RecoveryStrategy, ...]
    likelihood: float
    requires_immediate_action: bool
    failed_at: datetime | None = None
    diagnostic_data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryConfiguration:
    """
    What to recover and how.

    Attributes:
        migration_id: Failed migration.
        migration_configuration: Configuration of the failed run. Adjusting
            strategies return a modified copy.
        recovery_type: How the strategy is chosen.
        strategy_id: Strategy for MANUAL recoveries.
        create_backup: Back up the target before acting. A failed backup is
            only a warning.
        allow_skip_data: Permit strategies that skip documents.
        timeout_seconds: Limit for the whole recovery.
        retention_policy: Policy for disk cleanup.
    """

    migration_id: UUID
    migration_configuration: MigrationConfiguration
    recovery_type: RecoveryType = RecoveryType.AUTO
    strategy_id: str | None = None
    create_backup: bool = False
    allow_skip_data: bool = False
    timeout_seconds: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS
    retention_policy: BackupRetentionPolicy = field(default_factory=BackupRetentionPolicy)


@dataclass(frozen=True)
class RecoveryOperation:
    """One step performed during a recovery."""

    name: str
    success: bool
    description: str = ""
    error_message: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class RecoveryStatus:
    recovery_id: UUID
    state: RecoveryState
    progress_percentage: float = 0.0
    current_operation: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error_message: str | None = None


@dataclass(frozen=True)
class RecoveryResult:
    """
    Outcome of a recovery.

    Attributes:
        can_resume_migration: Whether ``MigrationEngine.resume`` is expected
            to succeed with ``adjusted_configuration``.
        resume_checkpoint_id: Latest checkpoint, when the strategy resumes.
        adjusted_configuration: Configuration to resume with.
    """

    recovery_id: UUID
    success: bool
    strategy_id: str | None = None
    failure_type: FailureType | None = None
    can_resume_migration: bool = False
    resume_checkpoint_id: UUID | None = None
    adjusted_configuration: MigrationConfiguration | None = None
    backup_path: str | None = None
    operations: tuple[RecoveryOperation, ...] = ()
    duration_seconds: float = 0.0
    error_message: str | None = None


@dataclass
class _ActionOutcome:
    configuration: MigrationConfiguration
    checkpoint_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)


class RecoveryService:
    """
    Analyzes failed migrations and prepares them to resume.

    Example:
        >>> async with open_context(config) as context:
        ...     service = RecoveryService(context)
        ...     result = await service.recover(RecoveryConfiguration(migration_id, config))
        ...     if result.can_resume_migration:
        ...         await engine.resume(migration_id, result.adjusted_configuration)
    """

    def __init__(
        self,
        context: MigrationContext,
        *,
        error_handler: ErrorHandler | None = None,
        status_registry: StatusRegistry[UUID, RecoveryStatus] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._context = context
        self._error_handler = error_handler or ErrorHandler()
        self._statuses: StatusRegistry[UUID, RecoveryStatus] = status_registry or StatusRegistry()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def validate_recovery(self, migration_id: UUID) -> ValidationResult:
        """A migration without ERROR-level log entries did not fail and cannot be recovered."""
        errors = await self._context.logs.get_logs(migration_id, level=LogLevel.ERROR, limit=1)
        if not errors:
            return ValidationResult.failure(
                ValidationError(
                    "migration_id",
                    "Migration has no error log entries and does not appear to have failed",
                    str(migration_id),
                )
            )
        return ValidationResult.success()

    async def analyze_failure(self, migration_id: UUID) -> FailureAnalysis:
        """
        Classify the most recent ERROR log entry of a migration.

        Raises:
            RecoveryError: If the migration has no error log entries.
        """
        with self._tracer.span(
            "docmigrate.recovery.analyze_failure",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ) as span:
            entries = await self._context.logs.get_logs(migration_id, level=LogLevel.ERROR, limit=1)
            if not entries:
                raise RecoveryError(
                    f"No error log entries for migration {migration_id}",
                    migration_id=migration_id,
                )
            latest = entries[0]
            failure_type = classify_failure(latest.message, latest.exception)
            if span:
                span.set_attribute(ATTR_FAILURE_TYPE, failure_type.value)

        strategies = self.get_recovery_strategies(failure_type)
        likelihood = sum(s.success_rate for s in strategies) / len(strategies) if strategies else 0.0
        logger.info(
            "Migration %s failed with %s (%d strategies)",
            migration_id,
            failure_type.value,
            len(strategies),
        )
        return FailureAnalysis(
            migration_id=migration_id,
            failure_type=failure_type,
            root_cause=extract_root_cause(latest.message, latest.exception),
            recommended_strategies=strategies,
            likelihood=likelihood,
            requires_immediate_action=failure_type
            in (FailureType.DATA_CORRUPTION, FailureType.SYSTEM_CRASH, FailureType.DISK_SPACE),
            failed_at=latest.logged_at,
            diagnostic_data={
                "error_message": latest.message,
                "exception": latest.exception,
                "collection": latest.collection_name,
                "document_id": latest.document_id,
            },
        )

    def get_recovery_strategies(self, failure_type: FailureType) -> tuple[RecoveryStrategy, ...]:
        """Strategies for a failure type, highest success rate first."""
        return STRATEGY_CATALOG.get(failure_type, ())

    async def get_recovery_status(self, recovery_id: UUID) -> RecoveryStatus:
        """
        Raises:
            RecoveryNotFoundError: If no recovery with this id ran in this service.
        """
        status = self._statuses.get(recovery_id)
        if status is None:
            raise RecoveryNotFoundError(recovery_id)
        return status

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def _update(
        self,
        recovery_id: UUID,
        state: RecoveryState,
        progress: float | None,
        operation: str,
        error_message: str | None = None,
    ) -> None:
        self._statuses.update(
            recovery_id,
            lambda s: replace(
                s,
                state=state,
                progress_percentage=s.progress_percentage if progress is None else progress,
                current_operation=operation,
                updated_at=datetime.now(UTC),
                error_message=error_message or s.error_message,
            ),
            RecoveryStatus(recovery_id, state),
        )

    async def recover(self, config: RecoveryConfiguration) -> RecoveryResult:
        """
        Recover a failed migration.

        Returns:
            RecoveryResult; handled failures and timeouts never raise.
        """
        recovery_id = uuid4()
        started = time.perf_counter()
        operations: list[RecoveryOperation] = []
        self._statuses.put(
            recovery_id,
            RecoveryStatus(recovery_id, RecoveryState.INITIALIZING, current_operation="Initializing recovery"),
        )
        logger.info("Starting recovery %s for migration %s", recovery_id, config.migration_id)

        def failed(message: str) -> RecoveryResult:
            self._update(recovery_id, RecoveryState.FAILED, None, f"Failed: {message}", message)
            return RecoveryResult(
                recovery_id=recovery_id,
                success=False,
                operations=tuple(operations),
                duration_seconds=time.perf_counter() - started,
                error_message=message,
            )

        with self._tracer.span(
            "docmigrate.recovery.recover",
            {ATTR_RECOVERY_ID: str(recovery_id), ATTR_MIGRATION_ID: str(config.migration_id)},
        ):
            try:
                async with asyncio.timeout(config.timeout_seconds):
                    result = await self._recover(config, recovery_id, operations)
            except TimeoutError:
                logger.error("Recovery %s timed out after %.0fs", recovery_id, config.timeout_seconds)
                return failed(f"Recovery timed out after {config.timeout_seconds:.0f} seconds")
            except MigrationError as e:
                logger.error("Recovery %s failed: %s", recovery_id, e)
                operations.append(RecoveryOperation("recovery", False, error_message=e.message))
                return failed(e.message)
            except Exception as e:
                logger.exception("Recovery %s failed unexpectedly", recovery_id)
                failed(str(e))
                raise
        return replace(result, duration_seconds=time.perf_counter() - started)

    async def _recover(
        self,
        config: RecoveryConfiguration,
        recovery_id: UUID,
        operations: list[RecoveryOperation],
    ) -> RecoveryResult:
        self._update(recovery_id, RecoveryState.ANALYZING, 10, "Validating recovery")
        validation = await self.validate_recovery(config.migration_id)
        if not validation.is_valid:
            raise RecoveryError(f"Recovery validation failed: {validation.error_summary()}")
        operations.append(RecoveryOperation("validation", True, "Migration has recorded failures"))

        self._update(recovery_id, RecoveryState.ANALYZING, 20, "Analyzing failure")
        analysis = await self.analyze_failure(config.migration_id)
        operations.append(
            RecoveryOperation(
                "analysis",
                True,
                f"Classified failure as {analysis.failure_type.value}",
                details={"root_cause": analysis.root_cause, "likelihood": analysis.likelihood},
            )
        )

        self._update(recovery_id, RecoveryState.PLANNING, 30, "Selecting recovery strategy")
        strategy = self._select_strategy(config, analysis)
        logger.info("Recovery %s using strategy %s", recovery_id, strategy.id)

        backup_path = None
        if config.create_backup:
            self._update(recovery_id, RecoveryState.BACKING_UP, 40, "Creating pre-recovery backup")
            backup_path = await self._backup(config, operations)

        self._update(recovery_id, RecoveryState.RECOVERING, 60, f"Executing {strategy.name}")
        with self._tracer.span(
            "docmigrate.recovery.execute_strategy",
            {ATTR_RECOVERY_ID: str(recovery_id), ATTR_STRATEGY_ID: strategy.id},
        ):
            outcome = await self._execute(config, strategy)
        operations.append(
            RecoveryOperation(strategy.action.value, True, strategy.description, details=outcome.details)
        )

        self._update(recovery_id, RecoveryState.VERIFYING, 90, "Verifying connectivity")
        verified = await self._verify(operations)

        can_resume = verified and strategy.id in RESUMABLE_STRATEGIES
        self._update(recovery_id, RecoveryState.COMPLETED, 100, "Recovery completed")
        logger.info(
            "Recovery %s completed (strategy=%s, can_resume=%s)",
            recovery_id,
            strategy.id,
            can_resume,
        )
        return RecoveryResult(
            recovery_id=recovery_id,
            success=True,
            strategy_id=strategy.id,
            failure_type=analysis.failure_type,
            can_resume_migration=can_resume,
            resume_checkpoint_id=outcome.checkpoint_id,
            adjusted_configuration=outcome.configuration,
            backup_path=backup_path,
            operations=tuple(operations),
        )

    def _select_strategy(self, config: RecoveryConfiguration, analysis: FailureAnalysis) -> RecoveryStrategy:
        wanted = {
            RecoveryType.RESUME: RESUME_FROM_CHECKPOINT,
            RecoveryType.RETRY: RETRY_WITH_ADJUSTMENT,
            RecoveryType.SKIP: SKIP_PROBLEMATIC_DATA,
            RecoveryType.MANUAL: config.strategy_id,
        }
        if config.recovery_type == RecoveryType.AUTO:
            if not analysis.recommended_strategies:
                raise RecoveryError(f"No recovery strategy for {analysis.failure_type.value} failures")
            return analysis.recommended_strategies[0]

        strategy_id = wanted[config.recovery_type]
        if not strategy_id:
            raise RecoveryError("A strategy id is required for manual recovery")
        strategy = find_strategy(strategy_id, analysis.failure_type)
        if strategy is None:
            raise RecoveryError(f"Unknown recovery strategy: {strategy_id}")
        return strategy

    async def _backup(self, config: RecoveryConfiguration, operations: list[RecoveryOperation]) -> str | None:
        migration = config.migration_configuration
        result = await self._context.backup.create_postgres_backup(
            BackupConfiguration(migration.target_url, migration.backup_directory)
        )
        if not result.success:
            logger.warning("Pre-recovery backup failed: %s", result.error_message)
            operations.append(RecoveryOperation("backup", False, error_message=result.error_message))
            return None
        operations.append(RecoveryOperation("backup", True, f"Backed up target to {result.path}"))
        return result.path

    async def _ping_all(self) -> None:
        await self._context.source.ping()
        await self._context.target.ping()

    async def _restore_connections(self) -> None:
        await self._error_handler.execute_with_retry(
            self._ping_all,
            "restore_connections",
            retry_config=CONNECTIVITY_RETRY_CONFIG,
        )

    async def _execute(self, config: RecoveryConfiguration, strategy: RecoveryStrategy) -> _ActionOutcome:
        migration = config.migration_configuration
        action = strategy.action

        if action == RecoveryAction.RESUME_FROM_CHECKPOINT:
            checkpoint = await get_latest_checkpoint(self._context.checkpoints, config.migration_id)
            if checkpoint is None:
                logger.warning("No checkpoint for migration %s; it will restart from the beginning", config.migration_id)
                return _ActionOutcome(migration, details={"checkpoint": None})
            return _ActionOutcome(
                migration,
                checkpoint.id,
                {
                    "checkpoint": str(checkpoint.id),
                    "collection": checkpoint.collection_name,
                    "documents_processed": checkpoint.documents_processed,
                },
            )

        if action == RecoveryAction.RESTORE_CONNECTIONS:
            await self._restore_connections()
            return _ActionOutcome(migration, details={"connections": "restored"})

        if action == RecoveryAction.CLEANUP_RESOURCES:
            sample = await self._context.memory.collect()
            freed = max(0.0, sample.usage_mb - (sample.after_collect_mb or sample.usage_mb))
            batch_size = max(migration.batch_size // 2, 1)
            return _ActionOutcome(
                migration.with_changes(batch_size=batch_size),
                details={"freed_mb": round(freed, 1), "batch_size": batch_size},
            )

        if action == RecoveryAction.INCREASE_RESOURCES:
            ceiling = migration.max_memory_usage_mb * 2
            return _ActionOutcome(
                migration.with_changes(max_memory_usage_mb=ceiling),
                details={"max_memory_usage_mb": ceiling},
            )

        if action == RecoveryAction.ADJUST_AND_RETRY:
            batch_size = max(min(migration.batch_size // 2, MAX_ADJUSTED_BATCH_SIZE), 1)
            await self._restore_connections()
            return _ActionOutcome(
                migration.with_changes(batch_size=batch_size, max_degree_of_parallelism=1),
                details={"batch_size": batch_size, "max_degree_of_parallelism": 1},
            )

        if action == RecoveryAction.SKIP_DATA:
            if not config.allow_skip_data:
                raise RecoveryError(
                    "Skipping documents requires allow_skip_data",
                    suggested_action="Re-run the recovery with allow_skip_data enabled",
                )
            skipped = await self._failed_document_ids(config.migration_id)
            logger.warning("Skipping %d failed documents of migration %s", len(skipped), config.migration_id)
            return _ActionOutcome(
                migration.with_changes(skip_document_ids=migration.skip_document_ids | skipped),
                details={"skipped_documents": len(skipped)},
            )

        if action == RecoveryAction.CLEANUP_DISK:
            cleanup = await self._context.backup.cleanup_backups(migration.backup_directory, config.retention_policy)
            if not cleanup.success:
                raise RecoveryError(f"Disk cleanup failed: {cleanup.error_message}")
            return _ActionOutcome(
                migration,
                details={"files_deleted": cleanup.files_deleted, "bytes_freed": cleanup.bytes_freed},
            )

        raise RecoveryError(
            f"Manual intervention required for migration {config.migration_id}",
            migration_id=config.migration_id,
            suggested_action="Inspect the migration logs and fix the cause before resuming",
        )

    async def _failed_document_ids(self, migration_id: UUID) -> frozenset[str]:
        entries: list[MigrationLogEntry] = await self._context.logs.get_logs(migration_id)
        return frozenset(
            entry.document_id
            for entry in entries
            if entry.message == MESSAGE_DOCUMENT_FAILED and entry.document_id
        )

    async def _verify(self, operations: list[RecoveryOperation]) -> bool:
        try:
            await self._ping_all()
        except MigrationError as e:
            logger.warning("Post-recovery verification failed: %s", e)
            operations.append(RecoveryOperation("verification", False, error_message=e.message))
            return False
        operations.append(RecoveryOperation("verification", True, "Source and target are reachable"))
        return True


__all__ = [
    "CLASSIFICATION_RULES",
    "DEFAULT_RECOVERY_TIMEOUT_SECONDS",
    "FailureAnalysis",
    "FailureType",
    "RESUMABLE_STRATEGIES",
    "RecoveryAction",
    "RecoveryConfiguration",
    "RecoveryOperation",
    "RecoveryResult",
    "RecoveryService",
    "RecoveryState",
    "RecoveryStatus",
    "RecoveryStrategy",
    "RecoveryType",
    "RiskLevel",
    "STRATEGY_CATALOG",
    "classify_failure",
    "extract_root_cause",
    "find_strategy",
]
