"""
Source store boundary: read-only access to the MongoDB document store.

The engine depends only on the SourceStore protocol. MongoSourceStore is the
production implementation built on motor; InMemorySourceStore in
``docmigrate.stores.in_memory`` implements the same protocol for tests.

Driver failures are converted to ConnectivityError at this boundary.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from bson import ObjectId, json_util
from bson.decimal128 import Decimal128
from bson.regex import Regex
from bson.timestamp import Timestamp
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from docmigrate.exceptions import ConnectivityError
from docmigrate.models import DateRange
from docmigrate.observability import (
    ATTR_COLLECTION,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

Document = dict[str, Any]
"""A source document: an ordered field-name to value mapping."""

SortSpec = Sequence[tuple[str, int]]

ASCENDING = 1
DESCENDING = -1

DEFAULT_SORT: SortSpec = (("date", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING))
"""Stable source order: date, then creation time, then identifier."""

BSON_TYPE_ORDER: tuple[str, ...] = (
    "number",
    "string",
    "object",
    "array",
    "binData",
    "objectId",
    "bool",
    "date",
    "timestamp",
    "regex",
)
"""``$type`` aliases in BSON comparison order. Null and missing values sort first."""

SORT_KEY_JSON_OPTIONS = json_util.JSONOptions(
    json_mode=json_util.JSONMode.CANONICAL,
    tz_aware=True,
    tzinfo=UTC,
)

SYSTEM_COLLECTION_PREFIX = "system."

DUPLICATE_SCAN_LIMIT = 100


@runtime_checkable
class SourceStore(Protocol):
    """Read-only streaming access to source collections."""

    async def ping(self) -> None:
        """Raise ConnectivityError if the store is unreachable."""
        ...

    async def list_collections(self) -> list[str]:
        ...

    async def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int:
        ...

    def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec = DEFAULT_SORT,
        skip: int = 0,
        batch_size: int | None = None,
    ) -> AsyncIterator[Document]:
        """Stream documents in ``sort`` order."""
        ...

    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
    ) -> Document | None:
        ...

    async def sample(self, collection: str, size: int) -> list[Document]:
        """Return up to ``size`` documents from the collection."""
        ...

    async def list_indexes(self, collection: str) -> list[dict[str, Any]]:
        """Return index descriptions (``name``, ``key``, and options)."""
        ...

    async def find_duplicate_ids(self, collection: str, limit: int = DUPLICATE_SCAN_LIMIT) -> list[Any]:
        """Return ``_id`` values that occur more than once, at most ``limit``."""
        ...

    async def close(self) -> None:
        ...


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def build_date_filter(date_range: DateRange | None) -> dict[str, Any]:
    """
    Build a filter matching documents inside ``date_range``.

    Each bound is satisfied when any known date field satisfies it: ``date``
    and ``mills`` hold epoch milliseconds, ``created_at`` holds a datetime.

    Example:
        >>> build_date_filter(DateRange(start=datetime(2024, 1, 1, tzinfo=UTC)))
        {'$or': [{'date': {'$gte': 1704067200000}}, {'mills': {'$gte': ...}}, ...]}
    """
    if date_range is None or date_range.is_empty:
        return {}

    clauses: list[dict[str, Any]] = []
    for bound, operator in ((date_range.start, "$gte"), (date_range.end, "$lte")):
        if bound is None:
            continue
        millis = _to_millis(bound)
        clauses.append(
            {
                "$or": [
                    {"date": {operator: millis}},
                    {"mills": {operator: millis}},
                    {"created_at": {operator: bound}},
                ]
            }
        )
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def _document_id_values(document_ids: Iterable[str]) -> list[Any]:
    values: list[Any] = []
    for document_id in document_ids:
        values.append(document_id)
        if ObjectId.is_valid(document_id):
            values.append(ObjectId(document_id))
    return values


def build_source_filter(
    date_range: DateRange | None,
    skip_document_ids: Iterable[str] = (),
) -> dict[str, Any]:
    """
    Build the full read filter for a collection.

    Args:
        date_range: Optional date restriction.
        skip_document_ids: Source ids (as text) to leave out. Ids that look
            like ObjectIds match both their text and ObjectId forms.
    """
    clauses: list[dict[str, Any]] = []
    date_filter = build_date_filter(date_range)
    if date_filter:
        clauses.append(date_filter)
    excluded = _document_id_values(skip_document_ids)
    if excluded:
        clauses.append({"_id": {"$nin": excluded}})
    if not clauses:
        return {}
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def and_filters(*filters: Mapping[str, Any]) -> dict[str, Any]:
    """Combine filters with ``$and``, dropping empty ones."""
    clauses = [dict(f) for f in filters if f]
    if not clauses:
        return {}
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


# =============================================================================
# Resume positions
# =============================================================================


def bson_type_alias(value: Any) -> str | None:
    """
    The ``$type`` alias of a value, or None for null.

    Raises:
        TypeError: If the value has no BSON counterpart.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, bytes):
        return "binData"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, Timestamp):
        return "timestamp"
    if isinstance(value, (Regex, re.Pattern)):
        return "regex"
    raise TypeError(f"No BSON type for {type(value).__name__}")


def sort_key_of(document: Mapping[str, Any], sort: SortSpec = DEFAULT_SORT) -> dict[str, Any]:
    """Sort field values of a document; missing fields are None."""
    return {field_name: document.get(field_name) for field_name, _ in sort}


def _field_after(field_name: str, value: Any, direction: int) -> dict[str, Any] | None:
    """Clause for values of one field that sort strictly after ``value``."""
    alias = bson_type_alias(value)
    if direction >= 0:
        if alias is None:
            return {field_name: {"$ne": None}}
        later = BSON_TYPE_ORDER[BSON_TYPE_ORDER.index(alias) + 1 :]
        clauses: list[dict[str, Any]] = [{field_name: {"$gt": value}}]
        if later:
            clauses.append({field_name: {"$type": list(later)}})
    else:
        if alias is None:
            return None
        earlier = BSON_TYPE_ORDER[: BSON_TYPE_ORDER.index(alias)]
        clauses = [{field_name: {"$lt": value}}, {field_name: None}]
        if earlier:
            clauses.append({field_name: {"$type": list(earlier)}})
    return clauses[0] if len(clauses) == 1 else {"$or": clauses}


def build_seek_filter(after: Mapping[str, Any], sort: SortSpec = DEFAULT_SORT) -> dict[str, Any]:
    """
    Build a filter matching the documents that sort strictly after ``after``.

    Range operators in MongoDB only compare values of the same type, so each
    field also matches the types that sort later in BSON order. A field that
    was null or missing is matched by any non-null value.

    Example:
        >>> build_seek_filter({"date": 1704067200000, "_id": oid}, (("date", 1), ("_id", 1)))
        {'$or': [{'$or': [{'date': {'$gt': 1704067200000}}, {'date': {'$type': [...]}}]},
                 {'$and': [{'date': 1704067200000}, {'$or': [{'_id': {'$gt': oid}}, ...]}]}]}
    """
    branches: list[dict[str, Any]] = []
    equal: list[dict[str, Any]] = []
    for field_name, direction in sort:
        value = after.get(field_name)
        clause = _field_after(field_name, value, direction)
        if clause is not None:
            branches.append({"$and": [*equal, clause]} if equal else clause)
        equal.append({field_name: value})
    if not branches:
        return {"_id": {"$in": []}}
    return branches[0] if len(branches) == 1 else {"$or": branches}


def encode_sort_key(key: Mapping[str, Any]) -> str | None:
    """
    Extended JSON text of a sort key, or None when a value cannot be encoded.

    Extended JSON keeps ObjectIds, dates and numbers distinct, so the decoded
    key compares like the original.
    """
    try:
        for value in key.values():
            bson_type_alias(value)
        return json_util.dumps(dict(key), json_options=SORT_KEY_JSON_OPTIONS)
    except (TypeError, ValueError) as e:
        logger.warning("Sort key cannot be stored as a resume position: %s", e)
        return None


def decode_sort_key(text: str) -> dict[str, Any]:
    return dict(json_util.loads(text, json_options=SORT_KEY_JSON_OPTIONS))


def is_system_collection(name: str) -> bool:
    return name.startswith(SYSTEM_COLLECTION_PREFIX)


class MongoSourceStore:
    """
    MongoDB source store built on motor.

    Each operation borrows a connection from the motor client's pool, so
    concurrent collection workers read independently.

    Example:
        >>> store = MongoSourceStore("mongodb://localhost:27017", "nightscout")
        >>> await store.ping()
        >>> async for doc in store.find("entries", {}, batch_size=1000):
        ...     ...
        >>> await store.close()

    Attributes:
        database_name: Source database name.
    """

    def __init__(
        self,
        uri: str,
        database_name: str,
        *,
        client: AsyncIOMotorClient | None = None,
        server_selection_timeout_ms: int = 10000,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.database_name = database_name
        self._client = client or AsyncIOMotorClient(
            uri,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            tz_aware=True,
        )
        self._db: AsyncIOMotorDatabase = self._client[database_name]
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _span_attributes(self, operation: str, collection: str | None = None) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            ATTR_DB_SYSTEM: "mongodb",
            ATTR_DB_NAME: self.database_name,
            ATTR_DB_OPERATION: operation,
        }
        if collection:
            attributes[ATTR_COLLECTION] = collection
        return attributes

    def _wrap(self, e: PyMongoError, action: str, collection: str | None = None) -> ConnectivityError:
        return ConnectivityError(
            f"MongoDB {action} failed: {e}",
            store="source",
            collection=collection,
        )

    async def ping(self) -> None:
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            raise self._wrap(e, "ping") from e

    async def list_collections(self) -> list[str]:
        with self._tracer.span(
            "docmigrate.source.list_collections", self._span_attributes("listCollections")
        ):
            try:
                names = await self._db.list_collection_names()
            except PyMongoError as e:
                raise self._wrap(e, "listCollections") from e
        return sorted(names)

    async def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int:
        try:
            return int(await self._db[collection].count_documents(dict(filter or {})))
        except PyMongoError as e:
            raise self._wrap(e, "count", collection) from e

    async def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec = DEFAULT_SORT,
        skip: int = 0,
        batch_size: int | None = None,
    ) -> AsyncIterator[Document]:
        cursor = self._db[collection].find(dict(filter or {}), sort=list(sort), skip=skip)
        if batch_size:
            cursor = cursor.batch_size(batch_size)
        try:
            async for document in cursor:
                yield document
        except PyMongoError as e:
            raise self._wrap(e, "find", collection) from e
        finally:
            await cursor.close()

    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
    ) -> Document | None:
        try:
            return await self._db[collection].find_one(
                dict(filter or {}), sort=list(sort) if sort else None
            )
        except PyMongoError as e:
            raise self._wrap(e, "findOne", collection) from e

    async def sample(self, collection: str, size: int) -> list[Document]:
        with self._tracer.span(
            "docmigrate.source.sample", self._span_attributes("aggregate", collection)
        ):
            try:
                cursor = self._db[collection].aggregate([{"$sample": {"size": size}}])
                return await cursor.to_list(length=size)
            except PyMongoError as e:
                raise self._wrap(e, "sample", collection) from e

    async def list_indexes(self, collection: str) -> list[dict[str, Any]]:
        try:
            indexes = await self._db[collection].list_indexes().to_list(length=None)
        except PyMongoError as e:
            raise self._wrap(e, "listIndexes", collection) from e
        return [dict(index) for index in indexes]

    async def find_duplicate_ids(self, collection: str, limit: int = DUPLICATE_SCAN_LIMIT) -> list[Any]:
        pipeline = [
            {"$group": {"_id": "$_id", "count": {"$sum": 1}}},
            {"$match": {"count": {"$gt": 1}}},
            {"$limit": limit},
        ]
        with self._tracer.span(
            "docmigrate.source.find_duplicate_ids", self._span_attributes("aggregate", collection)
        ):
            try:
                cursor = self._db[collection].aggregate(pipeline, allowDiskUse=True)
                groups = await cursor.to_list(length=limit)
            except PyMongoError as e:
                raise self._wrap(e, "aggregate", collection) from e
        return [group["_id"] for group in groups]

    async def close(self) -> None:
        self._client.close()


__all__ = [
    "ASCENDING",
    "BSON_TYPE_ORDER",
    "DEFAULT_SORT",
    "DESCENDING",
    "DUPLICATE_SCAN_LIMIT",
    "Document",
    "MongoSourceStore",
    "SourceStore",
    "and_filters",
    "bson_type_alias",
    "build_date_filter",
    "build_seek_filter",
    "build_source_filter",
    "decode_sort_key",
    "encode_sort_key",
    "is_system_collection",
    "sort_key_of",
]
