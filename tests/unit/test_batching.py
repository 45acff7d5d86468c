"""
Unit tests for BatchProcessor and payload splitting.

Tests cover:
- Whole-batch commits
- Per-document fallback after a failed batch transaction
- Duplicate handling with and without skip_duplicates
- Transformation failures staying document-local
- Payload-bounded sub-batches
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from docmigrate.batching import BatchProcessor, CommitMode, row_size, split_by_payload
from docmigrate.stores import InMemoryTargetStore
from docmigrate.transformers import TransformationService

EntryFactory = Callable[..., dict[str, Any]]


@pytest.fixture
def processor(target_store: InMemoryTargetStore) -> BatchProcessor:
    return BatchProcessor(target_store, TransformationService(), enable_tracing=False)


class TestSplitByPayload:
    """Tests for split_by_payload."""

    def test_rows_within_budget_share_a_sub_batch(self) -> None:
        """Test that small rows are grouped together."""
        assert split_by_payload(["a", "b", "c"], [3, 3, 3], 10) == [["a", "b", "c"]]

    def test_budget_is_never_exceeded(self) -> None:
        """Test that a sub-batch is closed before it would overflow."""
        assert split_by_payload(["a", "b", "c", "d"], [4, 4, 4, 4], 10) == [["a", "b"], ["c", "d"]]

    def test_oversized_row_stands_alone(self) -> None:
        """Test that a row larger than the budget forms its own sub-batch."""
        assert split_by_payload(["a", "b", "c"], [6, 6, 12], 10) == [["a"], ["b"], ["c"]]

    def test_empty_input(self) -> None:
        assert split_by_payload([], [], 10) == []


class TestRowSize:
    """Tests for row_size."""

    def test_measures_the_transformed_row(self, make_entry: EntryFactory) -> None:
        """Test that source fields the transformer drops do not count."""
        padded = make_entry(0, raw_dump="x" * 10_000)
        row = TransformationService().transform(padded, "entries").to_row()

        assert "raw_dump" not in row
        assert row_size(row) < 1000

    def test_json_columns_are_measured_as_text(self, make_treatment: EntryFactory) -> None:
        """Test that rows carrying serialized JSON columns can be measured."""
        row = TransformationService().transform(
            make_treatment(0, boluscalc={"carbs": 20, "ratio": 10}), "treatments"
        ).to_row()

        assert row_size(row) > len(row["boluscalc"])


class TestProcess:
    """Tests for BatchProcessor.process."""

    @pytest.mark.asyncio
    async def test_whole_batch_commit(
        self,
        processor: BatchProcessor,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that a clean batch is written in one transaction."""
        documents = [make_entry(i) for i in range(5)]

        result = await processor.process("entries", 1, documents)

        assert result.commit_mode == CommitMode.WHOLE_BATCH
        assert result.migrated == 5
        assert result.failed == 0
        assert result.documents_read == 5
        assert result.last_document_id == str(documents[-1]["_id"])
        assert target_store.batch_writes == 1
        assert len(target_store.rows("entries")) == 5

    @pytest.mark.asyncio
    async def test_failed_batch_retries_each_row(
        self,
        processor: BatchProcessor,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that one constraint violation costs one document."""
        target_store.add_table("entries", not_null=["sgv"])
        bad = make_entry(2, sgv=None)
        documents = [make_entry(0), make_entry(1), bad, make_entry(3)]

        result = await processor.process("entries", 7, documents)

        assert result.commit_mode == CommitMode.PER_DOCUMENT
        assert result.batch_number == 7
        assert result.migrated == 3
        assert result.failed == 1
        assert result.failures[0].document_id == str(bad["_id"])
        assert result.failures[0].stage == "write"
        assert "not-null" in result.failures[0].error
        assert len(target_store.rows("entries")) == 3

    @pytest.mark.asyncio
    async def test_duplicates_are_skipped(
        self,
        processor: BatchProcessor,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that existing rows count as migrated and skipped."""
        await processor.process("entries", 1, [make_entry(0), make_entry(1)])

        result = await processor.process("entries", 2, [make_entry(0), make_entry(1), make_entry(2)])

        assert result.migrated == 3
        assert result.skipped == 2
        assert result.failed == 0
        assert len(target_store.rows("entries")) == 3

    @pytest.mark.asyncio
    async def test_duplicates_fail_without_skip(
        self,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that duplicates are failures when skipping is disabled."""
        processor = BatchProcessor(
            target_store, TransformationService(), skip_duplicates=False, enable_tracing=False
        )
        await processor.process("entries", 1, [make_entry(0)])

        result = await processor.process("entries", 2, [make_entry(0), make_entry(1)])

        assert result.migrated == 1
        assert result.failed == 1
        assert "duplicate key" in result.failures[0].error

    @pytest.mark.asyncio
    async def test_transformation_failure_is_document_local(
        self,
        processor: BatchProcessor,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that an untransformable document does not block its batch."""
        documents: list[Any] = [make_entry(0), ["not", "a", "document"], make_entry(1)]

        result = await processor.process("entries", 1, documents)

        assert result.commit_mode == CommitMode.WHOLE_BATCH
        assert result.migrated == 2
        assert result.failed == 1
        assert result.failures[0].stage == "transform"
        assert len(target_store.rows("entries")) == 2

    @pytest.mark.asyncio
    async def test_small_payload_budget_splits_the_batch(
        self,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that sub-batches respect the payload budget within one transaction."""
        service = TransformationService()
        processor = BatchProcessor(
            target_store,
            service,
            max_batch_payload_bytes=row_size(service.transform(make_entry(0), "entries").to_row()) + 1,
            enable_tracing=False,
        )

        result = await processor.process("entries", 1, [make_entry(i) for i in range(4)])

        assert result.sub_batch_count == 4
        assert result.commit_mode == CommitMode.WHOLE_BATCH
        assert target_store.batch_writes == 1

    @pytest.mark.asyncio
    async def test_budget_counts_rows_not_source_documents(
        self,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that large source fields dropped by the transformer do not split the batch."""
        processor = BatchProcessor(
            target_store,
            TransformationService(),
            max_batch_payload_bytes=8 * 1024,
            enable_tracing=False,
        )
        documents = [make_entry(i, raw_dump="x" * 10_000) for i in range(4)]

        result = await processor.process("entries", 1, documents)

        assert result.migrated == 4
        assert result.sub_batch_count == 1

    @pytest.mark.asyncio
    async def test_counts_always_balance(
        self,
        processor: BatchProcessor,
        target_store: InMemoryTargetStore,
        make_entry: EntryFactory,
    ) -> None:
        """Test that migrated plus failed equals documents read."""
        target_store.add_table("entries", not_null=["sgv"])
        documents = [make_entry(i, sgv=None) if i % 3 == 0 else make_entry(i) for i in range(9)]

        result = await processor.process("entries", 1, documents)

        assert result.migrated + result.failed == result.documents_read
