"""
Unit tests for the checkpoint and migration log repositories.

Tests cover:
- In-memory repositories and the checkpoint helper functions
- The SQL repositories against a SQLite file database (skipped when
  aiosqlite is not installed)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from docmigrate.models import CHECKPOINT_ROLLBACK_POINT, MigrationCheckpoint
from docmigrate.repositories import (
    CheckpointRepository,
    InMemoryCheckpointRepository,
    InMemoryMigrationLogRepository,
    LogLevel,
    MigrationLogEntry,
    MigrationLogRepository,
    PostgreSQLCheckpointRepository,
    PostgreSQLMigrationLogRepository,
    checkpoint_metadata,
    get_latest_checkpoint,
    latest_per_collection,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def checkpoint(
    migration_id: UUID,
    collection: str,
    processed: int,
    minutes: int = 0,
    **kwargs: Any,
) -> MigrationCheckpoint:
    return MigrationCheckpoint(
        migration_id,
        collection,
        documents_processed=processed,
        documents_read=processed,
        created_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


def log_entry(migration_id: UUID, level: LogLevel, message: str, minutes: int = 0) -> MigrationLogEntry:
    return MigrationLogEntry(migration_id, level, message, logged_at=T0 + timedelta(minutes=minutes))


class TestCheckpointHelpers:
    """Tests for latest_per_collection, get_latest_checkpoint and checkpoint_metadata."""

    def test_latest_per_collection_ignores_rollback_points(self) -> None:
        migration_id = uuid4()
        checkpoints = [
            checkpoint(migration_id, "entries", 10, 1),
            checkpoint(migration_id, "treatments", 5, 2),
            checkpoint(migration_id, "entries", 20, 3),
            checkpoint(migration_id, "entries", 0, 4, status=CHECKPOINT_ROLLBACK_POINT),
        ]

        latest = latest_per_collection(checkpoints)

        assert {name: c.documents_processed for name, c in latest.items()} == {
            "entries": 20,
            "treatments": 5,
        }

    @pytest.mark.asyncio
    async def test_get_latest_checkpoint(self) -> None:
        repository = InMemoryCheckpointRepository()
        migration_id = uuid4()
        await repository.save(checkpoint(migration_id, "entries", 20, 2))
        await repository.save(checkpoint(migration_id, "entries", 10, 1))
        await repository.save(checkpoint(migration_id, "entries", 0, 3, status=CHECKPOINT_ROLLBACK_POINT))

        latest = await get_latest_checkpoint(repository, migration_id)

        assert latest is not None
        assert latest.documents_processed == 20

    @pytest.mark.asyncio
    async def test_no_checkpoint(self) -> None:
        assert await get_latest_checkpoint(InMemoryCheckpointRepository(), uuid4()) is None

    def test_checkpoint_metadata_folds_in_counters(self) -> None:
        data = checkpoint_metadata(
            MigrationCheckpoint(uuid4(), "entries", documents_processed=3, total_documents=9, metadata={"batch_number": 2})
        )
        assert data == {
            "batch_number": 2,
            "documents_processed": 3,
            "documents_read": 0,
            "total_documents": 9,
            "collection_name": "entries",
        }


class TestInMemoryRepositories:
    """Tests for the in-memory repositories."""

    def test_protocols(self) -> None:
        assert isinstance(InMemoryCheckpointRepository(), CheckpointRepository)
        assert isinstance(InMemoryMigrationLogRepository(), MigrationLogRepository)

    @pytest.mark.asyncio
    async def test_checkpoints_are_scoped_and_ordered(self) -> None:
        repository = InMemoryCheckpointRepository()
        migration_id = uuid4()
        later = checkpoint(migration_id, "entries", 20, 5)
        earlier = checkpoint(migration_id, "entries", 10, 1)
        await repository.save(later)
        await repository.save(earlier)
        await repository.save(checkpoint(uuid4(), "entries", 99))

        assert await repository.list_for_migration(migration_id) == [earlier, later]
        assert await repository.get(later.id) == later

    @pytest.mark.asyncio
    async def test_drop_schema_counts_resets(self) -> None:
        repository = InMemoryCheckpointRepository()
        migration_id = uuid4()
        await repository.save(checkpoint(migration_id, "entries", 1))

        await repository.drop_schema()

        assert await repository.list_for_migration(migration_id) == []
        assert repository.schema_resets == 1

    @pytest.mark.asyncio
    async def test_logs_newest_first_with_filters(self) -> None:
        logs = InMemoryMigrationLogRepository()
        migration_id = uuid4()
        await logs.append(log_entry(migration_id, LogLevel.INFO, "Migration started", 0))
        await logs.append(log_entry(migration_id, LogLevel.WARNING, "Document failed", 1))
        await logs.append(log_entry(migration_id, LogLevel.ERROR, "Migration failed", 2))
        await logs.append(log_entry(uuid4(), LogLevel.ERROR, "Other migration", 3))

        assert [e.message for e in await logs.get_logs(migration_id)] == [
            "Migration failed",
            "Document failed",
            "Migration started",
        ]
        assert [e.message for e in await logs.get_logs(migration_id, level=LogLevel.WARNING)] == [
            "Document failed"
        ]
        assert len(await logs.get_logs(migration_id, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_newest_insert_first(self) -> None:
        logs = InMemoryMigrationLogRepository()
        migration_id = uuid4()
        await logs.append(log_entry(migration_id, LogLevel.INFO, "first"))
        await logs.append(log_entry(migration_id, LogLevel.INFO, "second"))

        assert [e.message for e in await logs.get_logs(migration_id)] == ["second", "first"]

    def test_log_entry_to_dict(self) -> None:
        migration_id = uuid4()
        data = log_entry(migration_id, LogLevel.WARNING, "Document failed").to_dict()
        assert data["migration_id"] == str(migration_id)
        assert data["level"] == "WARNING"
        assert data["logged_at"] == "2024-01-01T00:00:00+00:00"


# =============================================================================
# SQL repositories on SQLite
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncIterator[Any]:
    pytest.importorskip("aiosqlite")
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_checkpoints(sqlite_engine: Any) -> PostgreSQLCheckpointRepository:
    repository = PostgreSQLCheckpointRepository(sqlite_engine, enable_tracing=False)
    await repository.ensure_schema()
    return repository


@pytest_asyncio.fixture
async def sql_logs(sqlite_engine: Any) -> PostgreSQLMigrationLogRepository:
    repository = PostgreSQLMigrationLogRepository(sqlite_engine, enable_tracing=False)
    await repository.ensure_schema()
    return repository


class TestSQLCheckpointRepository:
    """Tests for PostgreSQLCheckpointRepository on SQLite."""

    def test_implements_protocol(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        assert isinstance(sql_checkpoints, CheckpointRepository)

    @pytest.mark.asyncio
    async def test_save_and_get(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        saved = checkpoint(
            uuid4(),
            "entries",
            5000,
            last_processed_id="65920080a1b2c3d4e5f60718",
            total_documents=12000,
            metadata={"batch_number": 5, "documents_skipped": 2},
        )

        await sql_checkpoints.save(saved)
        loaded = await sql_checkpoints.get(saved.id)

        assert loaded == saved

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        assert await sql_checkpoints.get(uuid4()) is None

    @pytest.mark.asyncio
    async def test_list_for_migration(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        migration_id = uuid4()
        for processed, minutes in ((20, 2), (10, 1), (30, 3)):
            await sql_checkpoints.save(checkpoint(migration_id, "entries", processed, minutes))
        await sql_checkpoints.save(checkpoint(uuid4(), "entries", 99))

        listed = await sql_checkpoints.list_for_migration(migration_id)

        assert [c.documents_processed for c in listed] == [10, 20, 30]
        assert all(c.created_at.tzinfo is not None for c in listed)

    @pytest.mark.asyncio
    async def test_ensure_schema_is_idempotent(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        await sql_checkpoints.ensure_schema()

    @pytest.mark.asyncio
    async def test_drop_schema(self, sql_checkpoints: PostgreSQLCheckpointRepository) -> None:
        migration_id = uuid4()
        await sql_checkpoints.save(checkpoint(migration_id, "entries", 1))

        await sql_checkpoints.drop_schema()
        await sql_checkpoints.ensure_schema()

        assert await sql_checkpoints.list_for_migration(migration_id) == []


class TestSQLMigrationLogRepository:
    """Tests for PostgreSQLMigrationLogRepository on SQLite."""

    @pytest.mark.asyncio
    async def test_append_and_read(self, sql_logs: PostgreSQLMigrationLogRepository) -> None:
        migration_id = uuid4()
        failure = MigrationLogEntry(
            migration_id,
            LogLevel.WARNING,
            "Document failed",
            exception='null value in column "sgv" violates not-null constraint',
            collection_name="entries",
            document_id="65920080a1b2c3d4e5f60718",
            logged_at=T0 + timedelta(minutes=1),
        )
        await sql_logs.append(log_entry(migration_id, LogLevel.INFO, "Migration started"))
        await sql_logs.append(failure)

        entries = await sql_logs.get_logs(migration_id)

        assert [e.message for e in entries] == ["Document failed", "Migration started"]
        assert entries[0] == failure

    @pytest.mark.asyncio
    async def test_level_and_limit(self, sql_logs: PostgreSQLMigrationLogRepository) -> None:
        migration_id = uuid4()
        for minute in range(3):
            await sql_logs.append(log_entry(migration_id, LogLevel.WARNING, f"warning {minute}", minute))
        await sql_logs.append(log_entry(migration_id, LogLevel.ERROR, "Migration failed", 5))

        warnings = await sql_logs.get_logs(migration_id, level=LogLevel.WARNING, limit=2)

        assert [e.message for e in warnings] == ["warning 2", "warning 1"]
