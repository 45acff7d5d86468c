"""
Unit tests for docmigrate models.

Tests cover:
- MigrationConfiguration validation and round-tripping through dicts
- ValidationResult merging and summaries
- Statistics aggregation
- MigrationStatus snapshots and time estimates
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from docmigrate.models import (
    CollectionStatistics,
    ConflictResolutionOption,
    DateRange,
    MigrationCheckpoint,
    MigrationConfiguration,
    MigrationState,
    MigrationStatistics,
    MigrationStatus,
    ValidationConflict,
    ValidationError,
    ValidationOptions,
    ValidationResult,
)


def make_config(**changes) -> MigrationConfiguration:
    config = MigrationConfiguration(
        source_uri="mongodb://localhost:27017",
        source_database="nightscout",
        target_url="postgresql://postgres@localhost/nocturne",
        collections=("entries",),
    )
    return config.with_changes(**changes)


def error_fields(config: MigrationConfiguration) -> list[str]:
    return [error.field for error in config.validate().errors]


class TestMigrationState:
    """Tests for MigrationState."""

    @pytest.mark.parametrize(
        ("state", "terminal"),
        [
            (MigrationState.INITIALIZING, False),
            (MigrationState.RUNNING, False),
            (MigrationState.COMPLETED, True),
            (MigrationState.FAILED, True),
            (MigrationState.CANCELLED, True),
        ],
    )
    def test_is_terminal(self, state: MigrationState, terminal: bool) -> None:
        assert state.is_terminal is terminal


class TestConfigurationValidation:
    """Tests for MigrationConfiguration.validate."""

    def test_valid_configuration(self) -> None:
        assert make_config().validate().is_valid

    def test_srv_uri_is_accepted_without_dns(self) -> None:
        """Test that SRV URIs are only checked for shape."""
        assert make_config(source_uri="mongodb+srv://cluster0.example.net").validate().is_valid

    @pytest.mark.parametrize(
        ("changes", "field"),
        [
            ({"source_uri": ""}, "source_uri"),
            ({"source_uri": "http://localhost"}, "source_uri"),
            ({"source_uri": "mongodb+srv://"}, "source_uri"),
            ({"source_database": ""}, "source_database"),
            ({"target_url": ""}, "target_url"),
            ({"target_url": "mysql://root@localhost/nocturne"}, "target_url"),
            ({"target_url": "postgresql://postgres@localhost"}, "target_url"),
            ({"batch_size": 0}, "batch_size"),
            ({"max_memory_usage_mb": -1}, "max_memory_usage_mb"),
            ({"max_degree_of_parallelism": 0}, "max_degree_of_parallelism"),
            ({"checkpoint_interval": 0}, "checkpoint_interval"),
            ({"max_batch_payload_bytes": 0}, "max_batch_payload_bytes"),
            ({"max_in_flight_batches": 0}, "max_in_flight_batches"),
            ({"validation": ValidationOptions(sample_size=0)}, "validation.sample_size"),
        ],
    )
    def test_invalid_field_is_named(self, changes: dict, field: str) -> None:
        """Test that each structural problem names its field."""
        assert error_fields(make_config(**changes)) == [field]

    def test_date_range_must_be_ordered(self) -> None:
        start = datetime(2024, 2, 1, tzinfo=UTC)
        config = make_config(date_range=DateRange(start=start, end=start - timedelta(days=1)))
        assert error_fields(config) == ["date_range"]

    def test_open_ended_date_range_is_valid(self) -> None:
        config = make_config(date_range=DateRange(start=datetime(2024, 1, 1, tzinfo=UTC)))
        assert config.validate().is_valid

    def test_all_errors_are_reported(self) -> None:
        """Test that validation does not stop at the first problem."""
        config = make_config(source_database="", batch_size=0, checkpoint_interval=0)
        assert error_fields(config) == ["source_database", "batch_size", "checkpoint_interval"]

    def test_async_target_url_selects_asyncpg(self) -> None:
        assert make_config().async_target_url.drivername == "postgresql+asyncpg"

    def test_async_target_url_keeps_explicit_driver(self) -> None:
        config = make_config(target_url="postgresql+psycopg://postgres@localhost/nocturne")
        assert config.async_target_url.drivername == "postgresql+psycopg"


class TestConfigurationSerialization:
    """Tests for to_dict/from_dict."""

    def test_round_trip(self) -> None:
        config = make_config(
            collections=("entries", "treatments"),
            batch_size=250,
            max_degree_of_parallelism=3,
            skip_document_ids=frozenset({"b", "a"}),
            date_range=DateRange(
                start=datetime(2024, 1, 1, tzinfo=UTC),
                end=datetime(2024, 2, 1, tzinfo=UTC),
            ),
            validation=ValidationOptions(
                dry_run=True, sample_size=50, expected_indexes={"entries": ("ix_entries_mills",)}
            ),
        )

        data = config.to_dict()

        assert data["skip_document_ids"] == ["a", "b"]
        assert data["date_range"]["start"] == "2024-01-01T00:00:00+00:00"
        assert MigrationConfiguration.from_dict(data) == config

    def test_from_dict_fills_defaults(self) -> None:
        config = MigrationConfiguration.from_dict(
            {
                "source_uri": "mongodb://localhost",
                "source_database": "nightscout",
                "target_url": "postgresql://postgres@localhost/nocturne",
            }
        )
        assert config.batch_size == 1000
        assert config.skip_duplicates is True
        assert config.date_range is None
        assert config.validation == ValidationOptions()


class TestValidationResult:
    """Tests for ValidationResult."""

    def test_conflicts_do_not_invalidate(self) -> None:
        conflict = ValidationConflict(
            "TypeMismatch",
            "Field 'sgv' has mixed types",
            resolution_options=(
                ConflictResolutionOption("convert", "Convert to the majority type"),
                ConflictResolutionOption("skip", "Skip mismatching documents"),
            ),
        )
        result = ValidationResult.from_findings(conflicts=[conflict])

        assert result.is_valid
        assert result.has_conflicts
        assert conflict.option_names == ["convert", "skip"]

    def test_merge_keeps_order(self) -> None:
        first = ValidationError("batch_size", "must be > 0")
        second = ValidationError("source_uri", "is required")

        result = ValidationResult.failure(first).merge(
            ValidationResult.success(), ValidationResult.failure(second)
        )

        assert result.errors == (first, second)
        assert not result.is_valid
        assert result.error_summary() == "batch_size: must be > 0; source_uri: is required"


class TestStatistics:
    """Tests for CollectionStatistics and MigrationStatistics."""

    def test_documents_inserted_excludes_skipped(self) -> None:
        stats = CollectionStatistics("entries", total_documents=10, documents_migrated=9, documents_skipped=4)
        assert stats.documents_inserted == 5

    def test_totals_aggregate_collections(self) -> None:
        stats = (
            MigrationStatistics()
            .with_collection(CollectionStatistics("entries", 10, 8, 2, 1))
            .with_collection(CollectionStatistics("treatments", 5, 5, 0, 0))
        )

        assert stats.total_documents == 15
        assert stats.total_documents_migrated == 13
        assert stats.total_documents_failed == 2
        assert stats.total_documents_skipped == 1

    def test_with_collection_replaces_by_name(self) -> None:
        """Test that snapshots never mutate and later stats win."""
        first = MigrationStatistics().with_collection(CollectionStatistics("entries", 10, 1))
        second = first.with_collection(CollectionStatistics("entries", 10, 10))

        assert first.total_documents_migrated == 1
        assert second.total_documents_migrated == 10

    def test_finished_sets_end_time(self) -> None:
        stats = MigrationStatistics().finished(peak_memory_mb=42.0)
        assert stats.end_time is not None
        assert stats.peak_memory_mb == 42.0
        assert stats.duration >= timedelta(0)
        assert stats.to_dict()["end_time"] == stats.end_time.isoformat()


class TestMigrationStatus:
    """Tests for MigrationStatus."""

    def test_advance_produces_new_snapshot(self) -> None:
        status = MigrationStatus(uuid4(), MigrationState.INITIALIZING)

        advanced = status.advance(
            state=MigrationState.RUNNING, progress_percentage=150, current_operation="entries"
        )

        assert status.state == MigrationState.INITIALIZING
        assert advanced.state == MigrationState.RUNNING
        assert advanced.progress_percentage == 100.0
        assert advanced.current_operation == "entries"

    def test_advance_keeps_unchanged_fields(self) -> None:
        status = MigrationStatus(uuid4(), MigrationState.RUNNING, 40.0, "entries")
        advanced = status.advance(error_message="boom")
        assert advanced.progress_percentage == 40.0
        assert advanced.current_operation == "entries"
        assert advanced.error_message == "boom"

    def test_estimated_time_remaining(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=UTC)
        status = MigrationStatus(
            uuid4(),
            MigrationState.RUNNING,
            progress_percentage=25.0,
            statistics=MigrationStatistics(start_time=start),
            updated_at=start + timedelta(minutes=10),
        )
        assert status.estimated_time_remaining == timedelta(minutes=30)

    @pytest.mark.parametrize(
        ("state", "progress"),
        [
            (MigrationState.RUNNING, 0.0),
            (MigrationState.RUNNING, 100.0),
            (MigrationState.COMPLETED, 50.0),
        ],
    )
    def test_no_estimate(self, state: MigrationState, progress: float) -> None:
        status = MigrationStatus(uuid4(), state, progress_percentage=progress)
        assert status.estimated_time_remaining is None

    def test_to_dict(self) -> None:
        migration_id = uuid4()
        data = MigrationStatus(migration_id, MigrationState.FAILED, error_message="boom").to_dict()
        assert data["migration_id"] == str(migration_id)
        assert data["state"] == "failed"
        assert data["error_message"] == "boom"


class TestMigrationCheckpoint:
    """Tests for MigrationCheckpoint."""

    def test_documents_failed(self) -> None:
        checkpoint = MigrationCheckpoint(uuid4(), "entries", documents_processed=95, documents_read=100)
        assert checkpoint.documents_failed == 5

    def test_every_checkpoint_gets_a_fresh_id(self) -> None:
        migration_id = uuid4()
        assert MigrationCheckpoint(migration_id, "entries").id != MigrationCheckpoint(migration_id, "entries").id
