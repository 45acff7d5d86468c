"""
Batch transformation and commit.

BatchProcessor turns one batch of source documents into target rows and
commits them. Commit is an explicit two-state machine:

    WHOLE_BATCH --(write failed)--> PER_DOCUMENT

WHOLE_BATCH writes every staged row in one transaction. When that
transaction fails, nothing of it is kept and each row is retried in its own
transaction, so one bad row costs one document instead of the batch. The
mode that produced the final counts is reported in BatchResult.

Rows are grouped into sub-batches whose summed serialized row size stays
within the payload budget. Every sub-batch of a batch is flushed in the
same transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docmigrate.exceptions import TransformationError
from docmigrate.models import DEFAULT_MAX_BATCH_PAYLOAD_BYTES
from docmigrate.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_COLLECTION,
    ATTR_COMMIT_MODE,
    ATTR_SUB_BATCH_COUNT,
    Tracer,
    create_tracer,
)
from docmigrate.serialization import json_dumps
from docmigrate.stores.target import Row, TargetStore, WriteOutcome
from docmigrate.transformers import TransformationService

logger = logging.getLogger(__name__)


class CommitMode(Enum):
    """How a batch was committed."""

    WHOLE_BATCH = "whole_batch"
    """All rows in one transaction."""

    PER_DOCUMENT = "per_document"
    """The batch transaction failed; each row got its own transaction."""


@dataclass(frozen=True)
class DocumentFailure:
    """
    A document that was not migrated.

    Attributes:
        document_id: Source ``_id`` as text, when known.
        error: What went wrong.
        stage: ``"transform"`` or ``"write"``.
    """

    document_id: str | None
    error: str
    stage: str


@dataclass(frozen=True)
class BatchResult:
    """
    Counts for one processed batch.

    ``migrated`` includes ``skipped`` duplicates, so
    ``migrated + failed == documents_read`` always holds.
    """

    batch_number: int
    documents_read: int
    migrated: int
    failed: int
    skipped: int = 0
    commit_mode: CommitMode = CommitMode.WHOLE_BATCH
    sub_batch_count: int = 0
    last_document_id: str | None = None
    failures: tuple[DocumentFailure, ...] = ()


def row_size(row: Row) -> int:
    """
    Serialized size of a target row in bytes.

    Rows are measured as JSON text. JSON columns are already text in a row,
    so nested source structure is counted once.
    """
    return len(json_dumps(row).encode())


def split_by_payload(
    rows: Sequence[Row],
    sizes: Sequence[int],
    max_payload_bytes: int,
) -> list[list[Row]]:
    """
    Group rows into sub-batches whose summed size stays within the budget.

    A row larger than the budget on its own forms its own sub-batch.

    Example:
        >>> split_by_payload(["a", "b", "c"], [6, 6, 12], 10)
        [['a'], ['b'], ['c']]
    """
    sub_batches: list[list[Row]] = []
    current: list[Row] = []
    current_size = 0
    for row, size in zip(rows, sizes, strict=True):
        if current and current_size + size > max_payload_bytes:
            sub_batches.append(current)
            current, current_size = [], 0
        current.append(row)
        current_size += size
    if current:
        sub_batches.append(current)
    return sub_batches


class BatchProcessor:
    """
    Transforms and commits batches for one target store.

    Example:
        >>> processor = BatchProcessor(target, TransformationService(), skip_duplicates=True)
        >>> result = await processor.process("entries", 1, documents)
        >>> result.migrated + result.failed == result.documents_read
        True
    """

    def __init__(
        self,
        target: TargetStore,
        transformation_service: TransformationService,
        *,
        max_batch_payload_bytes: int = DEFAULT_MAX_BATCH_PAYLOAD_BYTES,
        skip_duplicates: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._target = target
        self._transformations = transformation_service
        self.max_batch_payload_bytes = max_batch_payload_bytes
        self.skip_duplicates = skip_duplicates
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _stage(
        self,
        collection: str,
        documents: Sequence[Mapping[str, Any]],
    ) -> tuple[list[Row], list[int], list[str | None], list[DocumentFailure]]:
        rows: list[Row] = []
        sizes: list[int] = []
        ids: list[str | None] = []
        failures: list[DocumentFailure] = []
        for document in documents:
            try:
                record = self._transformations.transform(document, collection)
            except TransformationError as e:
                failures.append(DocumentFailure(e.document_id, e.message, "transform"))
                continue
            rows.append(record.to_row())
            sizes.append(row_size(rows[-1]))
            ids.append(record.original_id)
        return rows, sizes, ids, failures

    async def process(
        self,
        collection: str,
        batch_number: int,
        documents: Sequence[Mapping[str, Any]],
    ) -> BatchResult:
        """
        Transform and commit one batch.

        Transformation failures are document-local. Write failures trigger
        the per-document fallback.

        Raises:
            UnsupportedCollectionError: If no transformer handles the collection.
            ConnectivityError: If the target connection is lost.
        """
        table = self._transformations.table_for(collection)
        last_id = str(documents[-1].get("_id")) if documents else None

        with self._tracer.span(
            "docmigrate.batch.process",
            {
                ATTR_COLLECTION: collection,
                ATTR_BATCH_NUMBER: batch_number,
                ATTR_BATCH_SIZE: len(documents),
            },
        ) as span:
            rows, sizes, ids, failures = self._stage(collection, documents)
            sub_batches = split_by_payload(rows, sizes, self.max_batch_payload_bytes)
            if span:
                span.set_attribute(ATTR_SUB_BATCH_COUNT, len(sub_batches))

            if not rows:
                return BatchResult(
                    batch_number,
                    len(documents),
                    migrated=0,
                    failed=len(failures),
                    last_document_id=last_id,
                    failures=tuple(failures),
                )

            outcome = await self._target.write_batch(table, sub_batches)
            if outcome.committed:
                if span:
                    span.set_attribute(ATTR_COMMIT_MODE, CommitMode.WHOLE_BATCH.value)
                logger.debug(
                    "Committed batch %d of %s: %d rows in %d sub-batches",
                    batch_number,
                    collection,
                    len(rows),
                    len(sub_batches),
                )
                return BatchResult(
                    batch_number,
                    len(documents),
                    migrated=len(rows),
                    failed=len(failures),
                    sub_batch_count=len(sub_batches),
                    last_document_id=last_id,
                    failures=tuple(failures),
                )

            if outcome.outcome == WriteOutcome.FAILED:
                logger.warning(
                    "Batch %d of %s failed, retrying per document: %s",
                    batch_number,
                    collection,
                    outcome.error,
                    extra={"collection": collection, "batch_number": batch_number},
                )
            else:
                logger.debug("Batch %d of %s hit duplicates, retrying per document", batch_number, collection)
            if span:
                span.set_attribute(ATTR_COMMIT_MODE, CommitMode.PER_DOCUMENT.value)

            migrated = skipped = 0
            for row, document_id in zip(rows, ids, strict=True):
                result = await self._target.write_row(table, row)
                if result.committed:
                    migrated += 1
                elif result.outcome == WriteOutcome.DUPLICATE and self.skip_duplicates:
                    migrated += 1
                    skipped += 1
                else:
                    failures.append(DocumentFailure(document_id, result.error or "write failed", "write"))

        return BatchResult(
            batch_number,
            len(documents),
            migrated=migrated,
            failed=len(failures),
            skipped=skipped,
            commit_mode=CommitMode.PER_DOCUMENT,
            sub_batch_count=len(sub_batches),
            last_document_id=last_id,
            failures=tuple(failures),
        )


__all__ = [
    "BatchProcessor",
    "BatchResult",
    "CommitMode",
    "DocumentFailure",
    "row_size",
    "split_by_payload",
]
