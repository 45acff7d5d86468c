"""
Observability for docmigrate: span tracing and standard span attributes.

Tracing is optional. Without OpenTelemetry every component gets a
NullTracer and runs unchanged.
"""

from docmigrate.observability.attributes import (
    ATTR_BACKUP_TYPE,
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_COLLECTION,
    ATTR_COMMIT_MODE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    ATTR_ERROR_TYPE,
    ATTR_FAILURE_TYPE,
    ATTR_INDEX_NAME,
    ATTR_MIGRATION_ID,
    ATTR_RECOVERY_ID,
    ATTR_ROLLBACK_ID,
    ATTR_ROLLBACK_TYPE,
    ATTR_STRATEGY_ID,
    ATTR_SUB_BATCH_COUNT,
    ATTR_TABLE_NAME,
)
from docmigrate.observability.tracer import (
    OTEL_AVAILABLE,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    RecordingTracer,
    Tracer,
    clean_attributes,
    create_tracer,
)

__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "RecordingTracer",
    "clean_attributes",
    "create_tracer",
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
