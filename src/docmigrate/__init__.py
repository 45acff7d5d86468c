"""
docmigrate - Batched, checkpointed MongoDB to PostgreSQL document migration.

This library provides:
- Migration engine with bounded parallelism, backpressure and resumable checkpoints
- Document transformers for Nightscout collections
- Schema, data compatibility and referential validation
- Rollback of migrated data (full, schema-only, partial, point-in-time)
- Failure analysis and recovery strategies
- mongodump / pg_dump backups with verification and retention cleanup
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("docmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from docmigrate.analysis import CollectionAnalysis, CollectionAnalyzer
from docmigrate.backup import (
    BackupConfiguration,
    BackupResult,
    BackupRetentionPolicy,
    BackupService,
    BackupType,
)
from docmigrate.batching import BatchProcessor, BatchResult, CommitMode
from docmigrate.cancellation import CancellationToken
from docmigrate.context import ContextFactory, MigrationContext, open_context
from docmigrate.engine import MigrationEngine
from docmigrate.exceptions import (
    BackupError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectivityError,
    MigrationCancelledError,
    MigrationError,
    MigrationNotFoundError,
    RecoveryError,
    RecoveryNotFoundError,
    RollbackError,
    RollbackNotFoundError,
    SchemaError,
    TransformationError,
    UnsupportedCollectionError,
)
from docmigrate.indexes import IndexOptimizer
from docmigrate.memory import MemoryMonitor
from docmigrate.models import (
    CollectionStatistics,
    ConflictResolutionOption,
    DateRange,
    MigrationCheckpoint,
    MigrationConfiguration,
    MigrationResult,
    MigrationState,
    MigrationStatistics,
    MigrationStatus,
    TransformationOptions,
    ValidationConflict,
    ValidationError,
    ValidationOptions,
    ValidationResult,
)
from docmigrate.recovery import (
    FailureAnalysis,
    FailureType,
    RecoveryConfiguration,
    RecoveryResult,
    RecoveryService,
    RecoveryStatus,
    RecoveryStrategy,
    RecoveryType,
)
from docmigrate.rollback import (
    RollbackConfiguration,
    RollbackPoint,
    RollbackPointState,
    RollbackResult,
    RollbackService,
    RollbackStatus,
    RollbackType,
)
from docmigrate.transformers import TransformationService
from docmigrate.validator import SchemaValidator

__all__ = [
    # Version
    "__version__",
    # Configuration and models
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
    # Engine
    "BatchProcessor",
    "BatchResult",
    "CancellationToken",
    "CommitMode",
    "ContextFactory",
    "MigrationContext",
    "MigrationEngine",
    "open_context",
    # Components
    "CollectionAnalysis",
    "CollectionAnalyzer",
    "IndexOptimizer",
    "MemoryMonitor",
    "SchemaValidator",
    "TransformationService",
    # Backup
    "BackupConfiguration",
    "BackupResult",
    "BackupRetentionPolicy",
    "BackupService",
    "BackupType",
    # Rollback
    "RollbackConfiguration",
    "RollbackPoint",
    "RollbackPointState",
    "RollbackResult",
    "RollbackService",
    "RollbackStatus",
    "RollbackType",
    # Recovery
    "FailureAnalysis",
    "FailureType",
    "RecoveryConfiguration",
    "RecoveryResult",
    "RecoveryService",
    "RecoveryStatus",
    "RecoveryStrategy",
    "RecoveryType",
    # Exceptions
    "BackupError",
    "CommandTimeoutError",
    "ConfigurationError",
    "ConnectivityError",
    "MigrationCancelledError",
    "MigrationError",
    "MigrationNotFoundError",
    "RecoveryError",
    "RecoveryNotFoundError",
    "RollbackError",
    "RollbackNotFoundError",
    "SchemaError",
    "TransformationError",
    "UnsupportedCollectionError",
]
