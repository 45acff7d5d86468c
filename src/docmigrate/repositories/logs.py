"""
Durable migration log.

Lifecycle messages and failed document ids are written to the
``migration_logs`` table so that status lookups and recovery analysis work
after the process that ran the migration is gone.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID, uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from docmigrate.observability import ATTR_MIGRATION_ID, Tracer, create_tracer
from docmigrate.repositories._connection import execute_with_connection
from docmigrate.repositories.checkpoints import _as_datetime, _as_uuid
from docmigrate.schema import backend_for_dialect, get_drop_statement, get_schema, iter_statements


class LogLevel(Enum):
    """Severity of a durable log entry."""

    INFO = "INFO"
    """Lifecycle message."""

    WARNING = "WARNING"
    """Per-document failure or a non-fatal step failure."""

    ERROR = "ERROR"
    """Failure that ended the migration."""


@dataclass(frozen=True)
class MigrationLogEntry:
    """
    One row of the durable migration log.

    Attributes:
        migration_id: Migration the entry belongs to.
        level: Severity.
        message: Human-readable message.
        exception: Exception text, when the entry records a failure.
        collection_name: Collection being processed, when known.
        document_id: Source document id, for per-document failures.
        id: Entry id.
        logged_at: When the entry was written.
    """

    migration_id: UUID
    level: LogLevel
    message: str
    exception: str | None = None
    collection_name: str | None = None
    document_id: str | None = None
    id: UUID = field(default_factory=uuid4)
    logged_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "migration_id": str(self.migration_id),
            "level": self.level.value,
            "message": self.message,
            "exception": self.exception,
            "collection_name": self.collection_name,
            "document_id": self.document_id,
            "logged_at": self.logged_at.isoformat(),
        }


@runtime_checkable
class MigrationLogRepository(Protocol):
    """Protocol for the durable migration log."""

    async def ensure_schema(self) -> None:
        ...

    async def drop_schema(self) -> None:
        ...

    async def append(self, entry: MigrationLogEntry) -> None:
        ...

    async def get_logs(
        self,
        migration_id: UUID,
        *,
        level: LogLevel | None = None,
        limit: int | None = None,
    ) -> list[MigrationLogEntry]:
        """Entries of a migration, newest first."""
        ...


class PostgreSQLMigrationLogRepository:
    """
    SQL implementation of the migration log.

    Example:
        >>> logs = PostgreSQLMigrationLogRepository(engine)
        >>> await logs.append(MigrationLogEntry(migration_id, LogLevel.INFO, "Migration started"))
        >>> errors = await logs.get_logs(migration_id, level=LogLevel.ERROR)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def ensure_schema(self) -> None:
        backend = backend_for_dialect(self.conn.dialect.name)
        async with execute_with_connection(self.conn) as conn:
            for statement in iter_statements(get_schema("logs", backend)):
                await conn.execute(text(statement))

    async def drop_schema(self) -> None:
        async with execute_with_connection(self.conn) as conn:
            await conn.execute(text(get_drop_statement("logs")))

    async def append(self, entry: MigrationLogEntry) -> None:
        query = text("""
            INSERT INTO migration_logs
                (id, migration_id, level, message, exception,
                 collection_name, document_id, logged_at)
            VALUES
                (:id, :migration_id, :level, :message, :exception,
                 :collection_name, :document_id, :logged_at)
        """)
        params = {
            "id": str(entry.id),
            "migration_id": str(entry.migration_id),
            "level": entry.level.value,
            "message": entry.message,
            "exception": entry.exception,
            "collection_name": entry.collection_name,
            "document_id": entry.document_id,
            "logged_at": entry.logged_at,
        }
        async with execute_with_connection(self.conn) as conn:
            await conn.execute(query, params)

    async def get_logs(
        self,
        migration_id: UUID,
        *,
        level: LogLevel | None = None,
        limit: int | None = None,
    ) -> list[MigrationLogEntry]:
        with self._tracer.span(
            "docmigrate.logs.get_logs",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ):
            conditions = ["migration_id = :migration_id"]
            params: dict[str, Any] = {"migration_id": str(migration_id)}
            if level is not None:
                conditions.append("level = :level")
                params["level"] = level.value
            sql = f"""
                SELECT id, migration_id, level, message, exception,
                       collection_name, document_id, logged_at
                FROM migration_logs
                WHERE {" AND ".join(conditions)}
                ORDER BY logged_at DESC
            """  # nosec B608
            if limit is not None:
                sql += " LIMIT :limit"
                params["limit"] = limit
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(text(sql), params)
                rows = result.fetchall()
        return [
            MigrationLogEntry(
                id=_as_uuid(row[0]),
                migration_id=_as_uuid(row[1]),
                level=LogLevel(row[2]),
                message=row[3],
                exception=row[4],
                collection_name=row[5],
                document_id=row[6],
                logged_at=_as_datetime(row[7]),
            )
            for row in rows
        ]


class InMemoryMigrationLogRepository:
    """In-memory migration log for testing."""

    def __init__(self) -> None:
        self._entries: list[MigrationLogEntry] = []
        self._lock = asyncio.Lock()
        self.schema_resets = 0

    async def ensure_schema(self) -> None:
        return None

    async def drop_schema(self) -> None:
        async with self._lock:
            self._entries.clear()
            self.schema_resets += 1

    async def append(self, entry: MigrationLogEntry) -> None:
        async with self._lock:
            self._entries.append(entry)

    async def get_logs(
        self,
        migration_id: UUID,
        *,
        level: LogLevel | None = None,
        limit: int | None = None,
    ) -> list[MigrationLogEntry]:
        async with self._lock:
            entries = [
                e
                for e in self._entries
                if e.migration_id == migration_id and (level is None or e.level == level)
            ]
        # Stable reverse keeps insertion order meaningful for equal timestamps
        entries = list(reversed(entries))
        entries.sort(key=lambda e: e.logged_at, reverse=True)
        return entries[:limit] if limit is not None else entries

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


__all__ = [
    "InMemoryMigrationLogRepository",
    "LogLevel",
    "MigrationLogEntry",
    "MigrationLogRepository",
    "PostgreSQLMigrationLogRepository",
]
