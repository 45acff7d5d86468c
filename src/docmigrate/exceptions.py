"""
Exceptions raised by the docmigrate migration engine.

Exceptions are organized by the phase of a migration that raises them, and
each carries an ErrorClassification so callers can decide between failing
fast, retrying, or handing the failure to the recovery service.

Exception Hierarchy:
    MigrationError (base)
    +-- ConfigurationError
    +-- ConnectivityError
    +-- SchemaError
    +-- TransformationError
    |   +-- UnsupportedCollectionError
    +-- MigrationCancelledError
    +-- MigrationNotFoundError
    +-- RollbackError
    |   +-- RollbackNotFoundError
    +-- RecoveryError
    |   +-- RecoveryNotFoundError
    +-- BackupError
        +-- CommandTimeoutError

Batch commit failures are not exceptions: the target store reports them as
WriteResult values and the batch processor decides how to continue.
Validation conflicts are data, returned inside ValidationResult.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar
from uuid import UUID

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Failure that may leave data damaged or unreachable.
        ERROR: Failure of the current run.
        WARNING: Condition worth monitoring; the run continues.
    """

    CRITICAL = "critical"
    """Failure that may leave data damaged or unreachable."""

    ERROR = "error"
    """Failure of the current run."""

    WARNING = "warning"
    """Condition worth monitoring; the run continues."""

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The run can continue, or be resumed after operator action.
        TRANSIENT: Temporary condition; automatic retry is appropriate.
        FATAL: The run must stop.
    """

    RECOVERABLE = "recoverable"
    """The run can continue, or be resumed after operator action."""

    TRANSIENT = "transient"
    """Temporary condition; automatic retry is appropriate."""

    FATAL = "fatal"
    """The run must stop."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Delay before the first retry in milliseconds.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor between attempts.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # about 800ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate the delay before retry number ``attempt`` (0-indexed).

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)


CONNECTIVITY_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category, one of the taxonomy groups.
        suggested_action: Human-readable guidance for operators.
        retry_config: Retry settings for transient errors.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all docmigrate errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The migration that raised the error, if known.
        collection: The source collection involved, if any.
        suggested_action: Override for the classification's guidance.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review the migration logs",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: UUID | None = None,
        collection: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.collection = collection
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.collection:
            parts.append(f"collection={self.collection}")
        if self.migration_id:
            parts.append(f"migration_id={self.migration_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception type."""
        return self._default_classification

    @property
    def error_code(self) -> str:
        """Unique error code, e.g. ``"CONNECTIVITY_ERROR"``."""
        return self.classification.error_code

    @property
    def recoverability(self) -> ErrorRecoverability:
        """Recoverability of this error."""
        return self.classification.recoverability

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for logging."""
        return {
            "message": self.message,
            "migration_id": str(self.migration_id) if self.migration_id else None,
            "collection": self.collection,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class ConfigurationError(MigrationError):
    """
    Raised when a migration configuration is structurally invalid.

    Configuration errors are detected before any connection is opened.

    Attributes:
        field: Name of the offending configuration field.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONFIGURATION_ERROR",
        category="configuration",
        suggested_action="Correct the configuration and start the migration again",
    )

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConnectivityError(MigrationError):
    """
    Raised when the source or target store cannot be reached.

    Attributes:
        store: ``"source"`` or ``"target"``.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTIVITY_ERROR",
        category="connectivity",
        suggested_action="Check that the database is running and reachable",
        retry_config=CONNECTIVITY_RETRY_CONFIG,
    )

    def __init__(self, message: str, *, store: str, collection: str | None = None) -> None:
        super().__init__(message, collection=collection)
        self.store = store


class SchemaError(MigrationError):
    """
    Raised when the target schema cannot safely receive migrated rows.

    Attributes:
        tables: Tables that are missing or incompatible.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SCHEMA_ERROR",
        category="schema",
        suggested_action="Provision the target schema before migrating",
    )

    def __init__(self, message: str, *, tables: list[str] | None = None) -> None:
        super().__init__(message)
        self.tables = tables or []


class TransformationError(MigrationError):
    """
    Raised when a single source document cannot be transformed.

    The error is local to the document: the engine counts it as failed and
    continues with the rest of the batch.

    Attributes:
        document_id: The source ``_id`` of the document, as text.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TRANSFORMATION_ERROR",
        category="document",
        suggested_action="Inspect the failed document and fix or skip it",
    )

    def __init__(
        self,
        message: str,
        *,
        collection: str | None = None,
        document_id: str | None = None,
    ) -> None:
        super().__init__(message, collection=collection)
        self.document_id = document_id


class UnsupportedCollectionError(TransformationError):
    """Raised when no transformer is registered for a collection."""

    def __init__(self, collection: str) -> None:
        super().__init__(f"No transformer registered for collection '{collection}'", collection=collection)


class MigrationCancelledError(MigrationError):
    """Raised when a cancellation token is observed between batches or collections."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_CANCELLED",
        category="process",
        suggested_action="Resume the migration from its latest checkpoint",
    )

    def __init__(self, message: str = "Migration was cancelled", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class MigrationNotFoundError(MigrationError):
    """Raised when no status exists for a migration identifier."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the migration ID is correct",
    )

    def __init__(self, migration_id: UUID) -> None:
        super().__init__(f"Migration not found: {migration_id}", migration_id=migration_id)


class RollbackError(MigrationError):
    """Raised when a rollback request cannot be carried out."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_ERROR",
        category="rollback",
        suggested_action="Validate the rollback configuration",
    )


class RollbackNotFoundError(RollbackError):
    """Raised when a rollback or rollback point does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the rollback ID is correct",
    )

    def __init__(self, rollback_id: UUID) -> None:
        super().__init__(f"Rollback not found: {rollback_id}")
        self.rollback_id = rollback_id


class RecoveryError(MigrationError):
    """Raised when a recovery request cannot be carried out."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECOVERY_ERROR",
        category="recovery",
        suggested_action="Analyze the failure and choose a recovery strategy manually",
    )


class RecoveryNotFoundError(RecoveryError):
    """Raised when no status exists for a recovery identifier."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RECOVERY_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the recovery ID is correct",
    )

    def __init__(self, recovery_id: UUID) -> None:
        super().__init__(f"Recovery not found: {recovery_id}")
        self.recovery_id = recovery_id


class BackupError(MigrationError):
    """Raised when a dump, restore, or verification tool cannot be run."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BACKUP_ERROR",
        category="backup",
        suggested_action="Check that the database tools are installed and on PATH",
    )


class CommandTimeoutError(BackupError):
    """
    Raised when an external command exceeds its timeout.

    The process has already been killed when this is raised.

    Attributes:
        command: Program name that timed out.
        timeout_seconds: The timeout that was exceeded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="COMMAND_TIMEOUT",
        category="timeout",
        suggested_action="Increase the timeout or reduce the amount of data per run",
    )

    def __init__(self, command: str, timeout_seconds: float) -> None:
        super().__init__(f"{command} timed out after {timeout_seconds:g} seconds")
        self.command = command
        self.timeout_seconds = timeout_seconds


class ErrorHandler:
    """
    Retries operations that fail with transient migration errors.

    Usage:
        >>> handler = ErrorHandler()
        >>> await handler.execute_with_retry(store.ping, "ping_target")
    """

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation, retrying transient MigrationErrors with backoff.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            MigrationError: If retries are exhausted or the error is not transient.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info("Operation '%s' succeeded after %d retries", operation_name, attempt)
                return result
            except MigrationError as e:
                logger.log(
                    e.classification.severity.log_level,
                    "Error in '%s': %s [code=%s]",
                    operation_name,
                    e.message,
                    e.error_code,
                )
                if not e.recoverability.should_retry:
                    raise

                config = retry_config or e.classification.retry_config or RetryConfig()
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d). Retrying in %.1fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    delay_ms / 1000.0,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1


__all__ = [
    "BackupError",
    "CONNECTIVITY_RETRY_CONFIG",
    "CommandTimeoutError",
    "ConfigurationError",
    "ConnectivityError",
    "ErrorClassification",
    "ErrorHandler",
    "ErrorRecoverability",
    "ErrorSeverity",
    "MigrationCancelledError",
    "MigrationError",
    "MigrationNotFoundError",
    "RecoveryError",
    "RecoveryNotFoundError",
    "RetryConfig",
    "RollbackError",
    "RollbackNotFoundError",
    "SchemaError",
    "TransformationError",
    "UnsupportedCollectionError",
]
