"""
Unit tests for failure analysis and RecoveryService.

Tests cover:
- Classification rules and their precedence
- Root cause extraction
- Strategy catalog ordering and lookup
- Failure analysis from the durable log
- Recovery actions and the configurations they return
- Skip permission, manual intervention and timeouts
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from docmigrate.backup import CommandResult
from docmigrate.context import MigrationContext
from docmigrate.engine import MESSAGE_DOCUMENT_FAILED, MESSAGE_FAILED
from docmigrate.exceptions import RecoveryError, RecoveryNotFoundError
from docmigrate.models import MigrationCheckpoint, MigrationConfiguration
from docmigrate.recovery import (
    STRATEGY_CATALOG,
    FailureType,
    RecoveryConfiguration,
    RecoveryService,
    RecoveryState,
    RecoveryType,
    classify_failure,
    extract_root_cause,
    find_strategy,
)
from docmigrate.repositories import LogLevel, MigrationLogEntry


@pytest.fixture
def service(migration_context: MigrationContext) -> RecoveryService:
    return RecoveryService(migration_context, enable_tracing=False)


@pytest.fixture
def migration_id() -> UUID:
    return uuid4()


async def record_failure(context: MigrationContext, migration_id: UUID, exception: str) -> None:
    await context.logs.append(MigrationLogEntry(migration_id, LogLevel.ERROR, MESSAGE_FAILED, exception=exception))


class TestClassifyFailure:
    """Tests for classify_failure."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("MigrationCancelledError: Migration was cancelled", FailureType.USER_CANCELLATION),
            ("password authentication failed for user postgres", FailureType.AUTHENTICATION),
            ("ConnectivityError: MongoDB connection refused", FailureType.DATABASE_CONNECTION),
            ("Connect call failed ('127.0.0.1', 5432)", FailureType.DATABASE_CONNECTION),
            ("socket closed by peer", FailureType.NETWORK),
            ("CommandTimeoutError: pg_dump timed out", FailureType.TIMEOUT),
            ("MemoryError: cannot allocate", FailureType.OUT_OF_MEMORY),
            ("OSError: No space left on device", FailureType.DISK_SPACE),
            ("InvalidBSON: invalid bson document", FailureType.DATA_CORRUPTION),
            ("SchemaError: Required target tables do not exist", FailureType.SCHEMA_VALIDATION),
            ("TransformationError: conversion failed", FailureType.TRANSFORMATION),
            ("worker was killed", FailureType.SYSTEM_CRASH),
            ("something odd happened", FailureType.UNKNOWN),
        ],
    )
    def test_rules(self, text: str, expected: FailureType) -> None:
        assert classify_failure(MESSAGE_FAILED, text) == expected

    def test_first_matching_rule_wins(self) -> None:
        """Test that authentication outranks connection errors."""
        text = "PostgreSQL connection failed: password authentication failed"
        assert classify_failure(text) == FailureType.AUTHENTICATION

    def test_message_alone_is_classified(self) -> None:
        assert classify_failure("Network is unreachable") == FailureType.NETWORK


class TestExtractRootCause:
    """Tests for extract_root_cause."""

    def test_first_exception_line(self) -> None:
        assert extract_root_cause("Migration failed", "RuntimeError: boom\n  at line 3") == "RuntimeError: boom"

    def test_long_message_is_truncated(self) -> None:
        cause = extract_root_cause("x" * 150)
        assert cause == "x" * 100 + "..."

    def test_short_message_is_kept(self) -> None:
        assert extract_root_cause("short") == "short"


class TestStrategyCatalog:
    """Tests for the strategy catalog."""

    def test_every_failure_type_has_strategies(self) -> None:
        assert set(STRATEGY_CATALOG) == set(FailureType)
        assert all(STRATEGY_CATALOG[t] for t in FailureType)

    def test_strategies_are_ordered_by_success_rate(self) -> None:
        for strategies in STRATEGY_CATALOG.values():
            rates = [s.success_rate for s in strategies]
            assert rates == sorted(rates, reverse=True)

    def test_network_prefers_resume(self) -> None:
        assert [s.id for s in STRATEGY_CATALOG[FailureType.NETWORK]] == [
            "resume_from_checkpoint",
            "retry_with_adjustment",
        ]

    def test_find_strategy_prefers_the_failure_type_entry(self) -> None:
        strategy = find_strategy("resume_from_checkpoint", FailureType.USER_CANCELLATION)
        assert strategy is not None
        assert strategy.success_rate == 95

    def test_find_unknown_strategy(self) -> None:
        assert find_strategy("does_not_exist") is None


class TestAnalyzeFailure:
    """Tests for analyze_failure and validate_recovery."""

    @pytest.mark.asyncio
    async def test_uses_the_latest_error(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        migration_id: UUID,
    ) -> None:
        """Test that the newest ERROR entry decides the failure type."""
        await record_failure(migration_context, migration_id, "MemoryError: out of memory")

        analysis = await service.analyze_failure(migration_id)

        assert analysis.failure_type == FailureType.OUT_OF_MEMORY
        assert analysis.root_cause == "MemoryError: out of memory"
        assert analysis.recommended_strategies[0].id == "cleanup_and_reduce_batch_size"
        assert analysis.likelihood == pytest.approx(72.5)
        assert not analysis.requires_immediate_action

    @pytest.mark.asyncio
    async def test_corruption_requires_immediate_action(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        migration_id: UUID,
    ) -> None:
        await record_failure(migration_context, migration_id, "Checksum mismatch in archive")

        analysis = await service.analyze_failure(migration_id)

        assert analysis.failure_type == FailureType.DATA_CORRUPTION
        assert analysis.requires_immediate_action

    @pytest.mark.asyncio
    async def test_no_errors_means_nothing_to_recover(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        migration_id: UUID,
    ) -> None:
        """Test that warnings alone do not make a migration recoverable."""
        await migration_context.logs.append(
            MigrationLogEntry(migration_id, LogLevel.WARNING, MESSAGE_DOCUMENT_FAILED, document_id="a")
        )

        validation = await service.validate_recovery(migration_id)

        assert not validation.is_valid
        with pytest.raises(RecoveryError, match="No error log entries"):
            await service.analyze_failure(migration_id)


class TestRecover:
    """Tests for RecoveryService.recover."""

    @pytest.mark.asyncio
    async def test_resume_returns_the_latest_checkpoint(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that network failures resume from the latest checkpoint."""
        checkpoint = MigrationCheckpoint(migration_id, "entries", documents_processed=100, documents_read=100)
        await migration_context.checkpoints.save(checkpoint)
        await record_failure(migration_context, migration_id, "ConnectionResetError: connection reset by peer")

        result = await service.recover(RecoveryConfiguration(migration_id, config))

        assert result.success
        assert result.failure_type == FailureType.NETWORK
        assert result.strategy_id == "resume_from_checkpoint"
        assert result.can_resume_migration
        assert result.resume_checkpoint_id == checkpoint.id
        assert result.adjusted_configuration == config

    @pytest.mark.asyncio
    async def test_retry_halves_batch_size_and_disables_parallelism(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test the adjusted configuration of retry_with_adjustment."""
        await record_failure(migration_context, migration_id, "CommandTimeoutError: timed out")

        result = await service.recover(
            RecoveryConfiguration(migration_id, config.with_changes(batch_size=2000, max_degree_of_parallelism=4))
        )

        assert result.strategy_id == "retry_with_adjustment"
        assert result.adjusted_configuration is not None
        assert result.adjusted_configuration.batch_size == 500
        assert result.adjusted_configuration.max_degree_of_parallelism == 1
        assert result.can_resume_migration

    @pytest.mark.asyncio
    async def test_cleanup_halves_batch_size(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that out-of-memory failures collect garbage and shrink batches."""
        await record_failure(migration_context, migration_id, "MemoryError")

        result = await service.recover(RecoveryConfiguration(migration_id, config))

        assert result.strategy_id == "cleanup_and_reduce_batch_size"
        assert result.adjusted_configuration is not None
        assert result.adjusted_configuration.batch_size == config.batch_size // 2
        assert migration_context.memory.collections_forced == 1

    @pytest.mark.asyncio
    async def test_increase_resources_doubles_the_memory_ceiling(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        await record_failure(migration_context, migration_id, "MemoryError")

        result = await service.recover(
            RecoveryConfiguration(migration_id, config, RecoveryType.MANUAL, strategy_id="increase_resources")
        )

        assert result.adjusted_configuration is not None
        assert result.adjusted_configuration.max_memory_usage_mb == config.max_memory_usage_mb * 2
        assert not result.can_resume_migration

    @pytest.mark.asyncio
    async def test_restore_connections(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that connection failures ping both stores."""
        await record_failure(migration_context, migration_id, "ConnectivityError: PostgreSQL connection refused")

        result = await service.recover(RecoveryConfiguration(migration_id, config))

        assert result.success
        assert result.failure_type == FailureType.DATABASE_CONNECTION
        assert result.strategy_id == "restore_connections"

    @pytest.mark.asyncio
    async def test_skip_requires_permission(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that skipping data is refused unless allowed."""
        await record_failure(migration_context, migration_id, "TransformationError: conversion failed")

        result = await service.recover(RecoveryConfiguration(migration_id, config))

        assert not result.success
        assert "allow_skip_data" in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_skip_adds_failed_documents(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that logged document failures are added to skip_document_ids."""
        for document_id in ("a", "b"):
            await migration_context.logs.append(
                MigrationLogEntry(
                    migration_id,
                    LogLevel.WARNING,
                    MESSAGE_DOCUMENT_FAILED,
                    collection_name="entries",
                    document_id=document_id,
                )
            )
        await record_failure(migration_context, migration_id, "TransformationError: conversion failed")

        result = await service.recover(
            RecoveryConfiguration(
                migration_id,
                config.with_changes(skip_document_ids=frozenset({"z"})),
                allow_skip_data=True,
            )
        )

        assert result.success
        assert result.adjusted_configuration is not None
        assert result.adjusted_configuration.skip_document_ids == frozenset({"a", "b", "z"})
        assert not result.can_resume_migration

    @pytest.mark.asyncio
    async def test_disk_cleanup_applies_retention(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
        tmp_path: Path,
    ) -> None:
        """Test that old backups are deleted for full-disk failures."""
        old = tmp_path / "postgres_backup_nocturne_20230101_000000.sql.gz"
        old.write_bytes(b"\x1f\x8b old")
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))
        await record_failure(migration_context, migration_id, "OSError: No space left on device")

        result = await service.recover(
            RecoveryConfiguration(migration_id, config.with_changes(backup_directory=str(tmp_path)))
        )

        assert result.success
        assert result.strategy_id == "cleanup_disk_space"
        assert not old.exists()

    @pytest.mark.asyncio
    async def test_manual_intervention_fails(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        await record_failure(migration_context, migration_id, "Checksum mismatch")

        result = await service.recover(
            RecoveryConfiguration(migration_id, config, RecoveryType.MANUAL, strategy_id="manual_intervention")
        )

        assert not result.success
        assert "Manual intervention required" in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_unknown_strategy_id(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        await record_failure(migration_context, migration_id, "boom")

        result = await service.recover(
            RecoveryConfiguration(migration_id, config, RecoveryType.MANUAL, strategy_id="reboot_everything")
        )

        assert not result.success
        assert "Unknown recovery strategy" in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_nothing_to_recover(
        self,
        service: RecoveryService,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        result = await service.recover(RecoveryConfiguration(migration_id, config))

        assert not result.success
        assert "Recovery validation failed" in (result.error_message or "")
        status = await service.get_recovery_status(result.recovery_id)
        assert status.state == RecoveryState.FAILED

    @pytest.mark.asyncio
    async def test_backup_failure_is_only_a_warning(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        command_runner: AsyncMock,
        config: MigrationConfiguration,
        migration_id: UUID,
        tmp_path: Path,
    ) -> None:
        """Test that a failed pre-recovery backup does not stop the recovery."""
        command_runner.return_value = CommandResult(1, stderr="pg_dump: error")
        await record_failure(migration_context, migration_id, "socket closed")

        result = await service.recover(
            RecoveryConfiguration(
                migration_id,
                config.with_changes(backup_directory=str(tmp_path)),
                create_backup=True,
            )
        )

        assert result.success
        assert result.backup_path is None
        assert [op.success for op in result.operations if op.name == "backup"] == [False]

    @pytest.mark.asyncio
    async def test_times_out(
        self,
        service: RecoveryService,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        """Test that the whole recovery is bounded by its timeout."""

        async def slow_validation(migration_id: UUID) -> None:
            await asyncio.sleep(5)

        service.validate_recovery = slow_validation  # type: ignore[method-assign]

        result = await service.recover(RecoveryConfiguration(migration_id, config, timeout_seconds=0.05))

        assert not result.success
        assert "timed out" in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_status_after_completion(
        self,
        service: RecoveryService,
        migration_context: MigrationContext,
        config: MigrationConfiguration,
        migration_id: UUID,
    ) -> None:
        await record_failure(migration_context, migration_id, "MigrationCancelledError: cancelled")

        result = await service.recover(RecoveryConfiguration(migration_id, config))
        status = await service.get_recovery_status(result.recovery_id)

        assert status.state == RecoveryState.COMPLETED
        assert status.progress_percentage == 100

    @pytest.mark.asyncio
    async def test_unknown_recovery_raises(self, service: RecoveryService) -> None:
        with pytest.raises(RecoveryNotFoundError):
            await service.get_recovery_status(uuid4())
