"""
Standard span attributes for docmigrate.

Attribute names follow OpenTelemetry semantic conventions where one exists
(``db.*``) and use the ``docmigrate.`` prefix otherwise.

Example:
    >>> with tracer.span(
    ...     "docmigrate.engine.migrate_collection",
    ...     {ATTR_MIGRATION_ID: str(migration_id), ATTR_COLLECTION: "entries"},
    ... ):
    ...     pass
"""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system, 'mongodb' or 'postgresql'."""

ATTR_DB_NAME = "db.name"
"""Database name."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g., 'INSERT', 'DROP TABLE', 'find')."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_ID = "docmigrate.migration.id"
"""Migration identifier (UUID string)."""

ATTR_COLLECTION = "docmigrate.collection"
"""Source collection name."""

ATTR_TABLE_NAME = "docmigrate.table"
"""Target table name."""

ATTR_BATCH_NUMBER = "docmigrate.batch.number"
"""1-based batch number within a collection."""

ATTR_BATCH_SIZE = "docmigrate.batch.size"
"""Number of documents in a batch."""

ATTR_SUB_BATCH_COUNT = "docmigrate.batch.sub_batches"
"""Number of payload-bounded sub-batches a batch was split into."""

ATTR_COMMIT_MODE = "docmigrate.batch.commit_mode"
"""How a batch was committed ('whole_batch' or 'per_document')."""

ATTR_DOCUMENT_COUNT = "docmigrate.document.count"
"""Number of documents involved in an operation."""

ATTR_INDEX_NAME = "docmigrate.index.name"
"""Target index name."""

# =============================================================================
# Backup, Rollback and Recovery Attributes
# =============================================================================

ATTR_BACKUP_TYPE = "docmigrate.backup.type"
"""Backup type ('mongodb' or 'postgresql')."""

ATTR_ROLLBACK_ID = "docmigrate.rollback.id"
"""Rollback identifier (UUID string)."""

ATTR_ROLLBACK_TYPE = "docmigrate.rollback.type"
"""Rollback type (e.g., 'full', 'partial')."""

ATTR_RECOVERY_ID = "docmigrate.recovery.id"
"""Recovery identifier (UUID string)."""

ATTR_FAILURE_TYPE = "docmigrate.failure.type"
"""Classified failure type."""

ATTR_STRATEGY_ID = "docmigrate.recovery.strategy"
"""Selected recovery strategy identifier."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name."""

__all__ = [
    "ATTR_BACKUP_TYPE",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_COLLECTION",
    "ATTR_COMMIT_MODE",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DOCUMENT_COUNT",
    "ATTR_ERROR_TYPE",
    "ATTR_FAILURE_TYPE",
    "ATTR_INDEX_NAME",
    "ATTR_MIGRATION_ID",
    "ATTR_RECOVERY_ID",
    "ATTR_ROLLBACK_ID",
    "ATTR_ROLLBACK_TYPE",
    "ATTR_STRATEGY_ID",
    "ATTR_SUB_BATCH_COUNT",
    "ATTR_TABLE_NAME",
]
