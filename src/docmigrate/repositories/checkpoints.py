"""
Checkpoint repository for migration progress.

Checkpoints are the only migration state that survives a process restart.
They enable:
- Resuming a collection without re-reading committed documents
- Recovery decisions after a failed run
- Rollback points (stored in the same table with a distinct status)
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from docmigrate.models import CHECKPOINT_ROLLBACK_POINT, MigrationCheckpoint
from docmigrate.observability import ATTR_COLLECTION, ATTR_MIGRATION_ID, Tracer, create_tracer
from docmigrate.repositories._connection import execute_with_connection
from docmigrate.schema import backend_for_dialect, get_drop_statement, get_schema, iter_statements
from docmigrate.serialization import json_dumps, json_loads


@runtime_checkable
class CheckpointRepository(Protocol):
    """Protocol for storing and querying migration checkpoints."""

    async def ensure_schema(self) -> None:
        """Create the checkpoint table if it does not exist."""
        ...

    async def drop_schema(self) -> None:
        ...

    async def save(self, checkpoint: MigrationCheckpoint) -> None:
        """Insert a checkpoint. Every checkpoint carries a fresh id."""
        ...

    async def get(self, checkpoint_id: UUID) -> MigrationCheckpoint | None:
        ...

    async def list_for_migration(self, migration_id: UUID) -> list[MigrationCheckpoint]:
        """All checkpoints and rollback points of a migration, oldest first."""
        ...


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _as_mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        return dict(json_loads(value))
    return dict(value)


def is_progress_checkpoint(checkpoint: MigrationCheckpoint) -> bool:
    """True for checkpoints written by the engine, False for rollback points."""
    return checkpoint.status != CHECKPOINT_ROLLBACK_POINT


def latest_per_collection(checkpoints: Sequence[MigrationCheckpoint]) -> dict[str, MigrationCheckpoint]:
    """
    Reduce checkpoints (oldest first) to the newest progress checkpoint per collection.
    """
    latest: dict[str, MigrationCheckpoint] = {}
    for checkpoint in checkpoints:
        if is_progress_checkpoint(checkpoint):
            latest[checkpoint.collection_name] = checkpoint
    return latest


async def get_latest_checkpoint(
    repository: CheckpointRepository,
    migration_id: UUID,
) -> MigrationCheckpoint | None:
    """Newest progress checkpoint of a migration, across all collections."""
    progress = [c for c in await repository.list_for_migration(migration_id) if is_progress_checkpoint(c)]
    return progress[-1] if progress else None


class PostgreSQLCheckpointRepository:
    """
    SQL implementation of the checkpoint repository.

    Stores checkpoints in the ``migration_checkpoints`` table. The SQL is
    portable, so the same class also runs against SQLite for tests.

    Example:
        >>> repo = PostgreSQLCheckpointRepository(engine)
        >>> await repo.ensure_schema()
        >>> await repo.save(MigrationCheckpoint(migration_id, "entries", documents_processed=5000))
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    @property
    def _backend(self) -> Any:
        return backend_for_dialect(self.conn.dialect.name)

    async def ensure_schema(self) -> None:
        async with execute_with_connection(self.conn) as conn:
            for statement in iter_statements(get_schema("checkpoints", self._backend)):
                await conn.execute(text(statement))

    async def drop_schema(self) -> None:
        async with execute_with_connection(self.conn) as conn:
            await conn.execute(text(get_drop_statement("checkpoints")))

    async def save(self, checkpoint: MigrationCheckpoint) -> None:
        with self._tracer.span(
            "docmigrate.checkpoint.save",
            {
                ATTR_MIGRATION_ID: str(checkpoint.migration_id),
                ATTR_COLLECTION: checkpoint.collection_name,
            },
        ):
            query = text("""
                INSERT INTO migration_checkpoints
                    (id, migration_id, collection_name, last_processed_id,
                     documents_processed, documents_read, total_documents,
                     status, checkpoint_data, created_at)
                VALUES
                    (:id, :migration_id, :collection_name, :last_processed_id,
                     :documents_processed, :documents_read, :total_documents,
                     :status, :checkpoint_data, :created_at)
            """)
            params = {
                "id": str(checkpoint.id),
                "migration_id": str(checkpoint.migration_id),
                "collection_name": checkpoint.collection_name,
                "last_processed_id": checkpoint.last_processed_id,
                "documents_processed": checkpoint.documents_processed,
                "documents_read": checkpoint.documents_read,
                "total_documents": checkpoint.total_documents,
                "status": checkpoint.status,
                "checkpoint_data": json_dumps(dict(checkpoint.metadata)),
                "created_at": checkpoint.created_at,
            }
            async with execute_with_connection(self.conn) as conn:
                await conn.execute(query, params)

    async def get(self, checkpoint_id: UUID) -> MigrationCheckpoint | None:
        query = text("""
            SELECT id, migration_id, collection_name, last_processed_id,
                   documents_processed, documents_read, total_documents,
                   status, checkpoint_data, created_at
            FROM migration_checkpoints
            WHERE id = :id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"id": str(checkpoint_id)})
            row = result.fetchone()
        return self._row_to_checkpoint(row) if row else None

    async def list_for_migration(self, migration_id: UUID) -> list[MigrationCheckpoint]:
        with self._tracer.span(
            "docmigrate.checkpoint.list_for_migration",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ):
            query = text("""
                SELECT id, migration_id, collection_name, last_processed_id,
                       documents_processed, documents_read, total_documents,
                       status, checkpoint_data, created_at
                FROM migration_checkpoints
                WHERE migration_id = :migration_id
                ORDER BY created_at ASC, documents_processed ASC
            """)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"migration_id": str(migration_id)})
                rows = result.fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    @staticmethod
    def _row_to_checkpoint(row: Any) -> MigrationCheckpoint:
        return MigrationCheckpoint(
            id=_as_uuid(row[0]),
            migration_id=_as_uuid(row[1]),
            collection_name=row[2],
            last_processed_id=row[3],
            documents_processed=int(row[4]),
            documents_read=int(row[5]),
            total_documents=int(row[6]),
            status=row[7],
            metadata=_as_mapping(row[8]),
            created_at=_as_datetime(row[9]),
        )


class InMemoryCheckpointRepository:
    """
    In-memory checkpoint repository for testing.

    Thread-safety:
        Uses an asyncio.Lock for concurrent tasks in one event loop.
    """

    def __init__(self) -> None:
        self._checkpoints: list[MigrationCheckpoint] = []
        self._lock = asyncio.Lock()
        self.schema_resets = 0

    async def ensure_schema(self) -> None:
        return None

    async def drop_schema(self) -> None:
        async with self._lock:
            self._checkpoints.clear()
            self.schema_resets += 1

    async def save(self, checkpoint: MigrationCheckpoint) -> None:
        async with self._lock:
            self._checkpoints.append(checkpoint)

    async def get(self, checkpoint_id: UUID) -> MigrationCheckpoint | None:
        async with self._lock:
            return next((c for c in self._checkpoints if c.id == checkpoint_id), None)

    async def list_for_migration(self, migration_id: UUID) -> list[MigrationCheckpoint]:
        async with self._lock:
            matching = [c for c in self._checkpoints if c.migration_id == migration_id]
        return sorted(matching, key=lambda c: (c.created_at, c.documents_processed))

    async def clear(self) -> None:
        async with self._lock:
            self._checkpoints.clear()


def checkpoint_metadata(checkpoint: MigrationCheckpoint) -> Mapping[str, Any]:
    """Metadata of a checkpoint with its progress counters folded in."""
    return {
        **dict(checkpoint.metadata),
        "documents_processed": checkpoint.documents_processed,
        "documents_read": checkpoint.documents_read,
        "total_documents": checkpoint.total_documents,
        "collection_name": checkpoint.collection_name,
    }


__all__ = [
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "PostgreSQLCheckpointRepository",
    "checkpoint_metadata",
    "get_latest_checkpoint",
    "is_progress_checkpoint",
    "latest_per_collection",
]
