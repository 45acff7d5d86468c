"""
Repositories for the migration-tracking tables.

Each repository has a SQL implementation (PostgreSQL in production, SQLite
in tests) and an in-memory implementation.
"""

from docmigrate.repositories.checkpoints import (
    CheckpointRepository,
    InMemoryCheckpointRepository,
    PostgreSQLCheckpointRepository,
    checkpoint_metadata,
    get_latest_checkpoint,
    is_progress_checkpoint,
    latest_per_collection,
)
from docmigrate.repositories.logs import (
    InMemoryMigrationLogRepository,
    LogLevel,
    MigrationLogEntry,
    MigrationLogRepository,
    PostgreSQLMigrationLogRepository,
)

__all__ = [
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "InMemoryMigrationLogRepository",
    "LogLevel",
    "MigrationLogEntry",
    "MigrationLogRepository",
    "PostgreSQLCheckpointRepository",
    "PostgreSQLMigrationLogRepository",
    "checkpoint_metadata",
    "get_latest_checkpoint",
    "is_progress_checkpoint",
    "latest_per_collection",
]
