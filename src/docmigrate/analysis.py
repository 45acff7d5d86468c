"""
Source collection analysis.

CollectionAnalyzer reports document counts and date ranges per collection.
The engine uses the counts to order its worklist and to size progress
reporting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from docmigrate.models import DateRange
from docmigrate.observability import ATTR_COLLECTION, ATTR_DOCUMENT_COUNT, Tracer, create_tracer
from docmigrate.stores.source import (
    ASCENDING,
    DESCENDING,
    SourceStore,
    build_source_filter,
    is_system_collection,
)
from docmigrate.transformers.base import BaseDocumentTransformer

logger = logging.getLogger(__name__)

COLLECTION_DATE_FIELDS: dict[str, str] = {
    "entries": "date",
    "treatments": "created_at",
    "devicestatus": "created_at",
    "profiles": "created_at",
    "food": "created_at",
    "activity": "created_at",
}
"""Primary date field of each collection, used for the date range."""


@dataclass(frozen=True)
class CollectionAnalysis:
    """
    Planning statistics for one collection.

    Attributes:
        collection_name: Source collection.
        document_count: Documents matching the date filter.
        earliest_date: Smallest value of the collection's date field.
        latest_date: Largest value of the collection's date field.
    """

    collection_name: str
    document_count: int
    earliest_date: datetime | None = None
    latest_date: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_name": self.collection_name,
            "document_count": self.document_count,
            "earliest_date": self.earliest_date.isoformat() if self.earliest_date else None,
            "latest_date": self.latest_date.isoformat() if self.latest_date else None,
        }


class CollectionAnalyzer:
    """
    Computes per-collection counts and date ranges.

    Example:
        >>> analyzer = CollectionAnalyzer(source)
        >>> for analysis in await analyzer.analyze_all():
        ...     print(analysis.collection_name, analysis.document_count)
    """

    def __init__(
        self,
        source: SourceStore,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def analyze(
        self,
        collection: str,
        date_range: DateRange | None = None,
        skip_document_ids: frozenset[str] = frozenset(),
    ) -> CollectionAnalysis:
        """
        Analyze one collection.

        Raises:
            ConnectivityError: If the source cannot be read.
        """
        with self._tracer.span("docmigrate.analysis.analyze", {ATTR_COLLECTION: collection}) as span:
            query = build_source_filter(date_range, skip_document_ids)
            count = await self._source.count_documents(collection, query)
            if span:
                span.set_attribute(ATTR_DOCUMENT_COUNT, count)

            earliest = latest = None
            date_field = COLLECTION_DATE_FIELDS.get(collection.lower())
            if date_field and count:
                first = await self._source.find_one(collection, query, sort=[(date_field, ASCENDING)])
                last = await self._source.find_one(collection, query, sort=[(date_field, DESCENDING)])
                earliest = BaseDocumentTransformer.to_datetime(first.get(date_field)) if first else None
                latest = BaseDocumentTransformer.to_datetime(last.get(date_field)) if last else None

        logger.debug("Analyzed collection %s: %d documents", collection, count)
        return CollectionAnalysis(collection, count, earliest, latest)

    async def analyze_all(
        self,
        collections: list[str] | None = None,
        date_range: DateRange | None = None,
    ) -> list[CollectionAnalysis]:
        """
        Analyze collections, largest first.

        Args:
            collections: Collections to analyze. All non-system collections
                when omitted.
            date_range: Optional date restriction.
        """
        names = collections if collections is not None else await self._source.list_collections()
        results = [
            await self.analyze(name, date_range)
            for name in names
            if not is_system_collection(name)
        ]
        return sorted(results, key=lambda a: a.document_count, reverse=True)


__all__ = ["COLLECTION_DATE_FIELDS", "CollectionAnalysis", "CollectionAnalyzer"]
