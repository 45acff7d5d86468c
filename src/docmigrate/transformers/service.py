"""
Transformer registry.

TransformationService maps collection names to transformer instances and is
the only transformation entry point the engine and validator use.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from docmigrate.exceptions import UnsupportedCollectionError
from docmigrate.models import TransformationOptions
from docmigrate.transformers.base import (
    BaseDocumentTransformer,
    TransformationStatistics,
    TransformationValidationResult,
)
from docmigrate.transformers.entries import EntryTransformer
from docmigrate.transformers.profiles import ProfileTransformer
from docmigrate.transformers.records import TargetRecord
from docmigrate.transformers.simple import (
    ActivityTransformer,
    DeviceStatusTransformer,
    FoodTransformer,
    SettingsTransformer,
)
from docmigrate.transformers.treatments import TreatmentTransformer

DEFAULT_TRANSFORMERS: tuple[type[BaseDocumentTransformer], ...] = (
    EntryTransformer,
    TreatmentTransformer,
    ProfileTransformer,
    DeviceStatusTransformer,
    SettingsTransformer,
    FoodTransformer,
    ActivityTransformer,
)


@dataclass
class BatchValidationSummary:
    """
    Aggregate of validating many documents of one collection.

    Attributes:
        collection_name: Collection the documents came from.
        total_documents: Documents validated.
        valid_documents: Documents without errors.
        invalid_documents: Documents with at least one error.
        documents_with_warnings: Valid documents that produced warnings.
        common_errors: Error message counts.
        common_warnings: Warning message counts.
    """

    collection_name: str
    total_documents: int = 0
    valid_documents: int = 0
    invalid_documents: int = 0
    documents_with_warnings: int = 0
    common_errors: Counter[str] = field(default_factory=Counter)
    common_warnings: Counter[str] = field(default_factory=Counter)

    @property
    def success_rate(self) -> float:
        if self.total_documents == 0:
            return 0.0
        return self.valid_documents / self.total_documents * 100


class TransformationService:
    """
    Registry of document transformers keyed by collection name.

    Collection names are matched case-insensitively.

    Example:
        >>> service = TransformationService()
        >>> record = service.transform({"_id": oid, "sgv": 120, "mills": 1704067200000}, "entries")
        >>> service.table_for("entries")
        'entries'
    """

    def __init__(
        self,
        options: TransformationOptions | None = None,
        transformer_types: Iterable[type[BaseDocumentTransformer]] = DEFAULT_TRANSFORMERS,
    ) -> None:
        self.options = options or TransformationOptions()
        self._types = {t.collection_name: t for t in transformer_types}
        self._transformers = {name: t(self.options) for name, t in self._types.items()}

    def _get(self, collection: str) -> BaseDocumentTransformer:
        transformer = self._transformers.get(collection.lower())
        if transformer is None:
            raise UnsupportedCollectionError(collection)
        return transformer

    def supports(self, collection: str) -> bool:
        return collection.lower() in self._transformers

    def supported_collections(self) -> list[str]:
        return sorted(self._transformers)

    def table_for(self, collection: str) -> str:
        return self._get(collection).table_name

    def record_type_for(self, collection: str) -> type[TargetRecord]:
        return self._get(collection).record_type

    def tables(self) -> list[str]:
        """Target tables of every registered transformer."""
        return sorted({t.table_name for t in self._transformers.values()})

    def transform(self, document: Mapping[str, Any], collection: str) -> TargetRecord:
        """
        Transform one document.

        Raises:
            UnsupportedCollectionError: If no transformer handles the collection.
            TransformationError: If the document cannot be transformed.
        """
        return self._get(collection).transform(document)

    def validate_document(self, document: Mapping[str, Any], collection: str) -> TransformationValidationResult:
        return self._get(collection).validate(document)

    def validate_batch(
        self,
        documents: Iterable[Mapping[str, Any]],
        collection: str,
    ) -> BatchValidationSummary:
        transformer = self._get(collection)
        summary = BatchValidationSummary(collection_name=collection)
        for document in documents:
            summary.total_documents += 1
            result = transformer.validate(document)
            if result.is_valid:
                summary.valid_documents += 1
                if result.warnings:
                    summary.documents_with_warnings += 1
                    summary.common_warnings.update(result.warnings)
            else:
                summary.invalid_documents += 1
                summary.common_errors.update(result.errors)
        return summary

    def get_statistics(self, collection: str) -> TransformationStatistics:
        return self._get(collection).statistics

    def all_statistics(self) -> dict[str, TransformationStatistics]:
        return {name: t.statistics for name, t in self._transformers.items()}

    def reset_statistics(self, collection: str | None = None) -> None:
        """Start fresh statistics for one collection, or for all when none is given."""
        names = [collection.lower()] if collection else list(self._transformers)
        for name in names:
            if name not in self._types:
                raise UnsupportedCollectionError(name)
            self._transformers[name] = self._types[name](self.options)
