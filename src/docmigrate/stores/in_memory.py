"""
In-memory source and target stores.

Useful for testing and development. Not suitable for production: nothing is
persisted, and the source store understands only the query operators the
engine generates.
"""

from __future__ import annotations

import asyncio
import copy
import re
from collections import Counter
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from bson import ObjectId

from docmigrate.exceptions import ConnectivityError
from docmigrate.stores.source import DEFAULT_SORT, DUPLICATE_SCAN_LIMIT, Document, SortSpec, bson_type_alias
from docmigrate.stores.target import Row, WriteOutcome, WriteResult

_MISSING = object()

# BSON comparison order of value types
_TYPE_RANK: tuple[tuple[type | tuple[type, ...], int], ...] = (
    ((int, float), 1),
    (str, 2),
    (dict, 3),
    (list, 4),
    (bytes, 5),
    (ObjectId, 6),
    (bool, 7),
    (datetime, 8),
)


def _type_rank(value: Any) -> int:
    if value is None or value is _MISSING:
        return 0
    if isinstance(value, bool):
        return 7
    for types, rank in _TYPE_RANK:
        if isinstance(value, types):
            return rank
    return 9


def _sort_key(document: Mapping[str, Any], sort: SortSpec) -> tuple[Any, ...]:
    key: list[Any] = []
    for field_name, direction in sort:
        value = document.get(field_name, _MISSING)
        rank = _type_rank(value)
        comparable = value if rank in (1, 2, 6, 8) else (str(value) if rank else "")
        key.append(_Directional((rank, comparable), direction))
    return tuple(key)


class _Directional:
    """Sort key wrapper that honours a per-field sort direction."""

    __slots__ = ("value", "direction")

    def __init__(self, value: tuple[int, Any], direction: int) -> None:
        self.value = value
        self.direction = direction

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _Directional) and self.value == other.value

    def __lt__(self, other: _Directional) -> bool:
        if self.direction >= 0:
            return self.value < other.value
        return other.value < self.value


def _type_matches(value: Any, aliases: Any) -> bool:
    if value is _MISSING:
        return False
    wanted = {aliases} if isinstance(aliases, str) else set(aliases)
    try:
        alias = bson_type_alias(value)
    except TypeError:
        return False
    return (alias or "null") in wanted


def _compare(value: Any, operator: str, operand: Any) -> bool:
    if operator == "$eq":
        return value in (None, _MISSING) if operand is None else value == operand
    if operator == "$ne":
        return not _compare(value, "$eq", operand)
    if operator == "$in":
        return value in operand
    if operator == "$nin":
        return value not in operand
    if operator == "$type":
        return _type_matches(value, operand)
    if value is _MISSING or value is None or _type_rank(value) != _type_rank(operand):
        return False
    if operator == "$gte":
        return value >= operand
    if operator == "$gt":
        return value > operand
    if operator == "$lte":
        return value <= operand
    if operator == "$lt":
        return value < operand
    raise ValueError(f"Unsupported query operator: {operator}")


def matches(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """Evaluate the subset of MongoDB query syntax the engine generates."""
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        else:
            value = document.get(key, _MISSING)
            if isinstance(condition, Mapping) and condition and all(
                str(k).startswith("$") for k in condition
            ):
                if not all(_compare(value, op, operand) for op, operand in condition.items()):
                    return False
            elif not _compare(value, "$eq", condition):
                return False
    return True


class InMemorySourceStore:
    """
    In-memory implementation of the SourceStore protocol.

    Example:
        >>> source = InMemorySourceStore({"entries": [{"_id": ObjectId(), "sgv": 120}]})
        >>> await source.count_documents("entries")
        1

    Attributes:
        available: When False, every call raises ConnectivityError.
    """

    def __init__(
        self,
        collections: Mapping[str, Iterable[Document]] | None = None,
        *,
        indexes: Mapping[str, Sequence[dict[str, Any]]] | None = None,
    ) -> None:
        self._collections: dict[str, list[Document]] = {
            name: list(docs) for name, docs in (collections or {}).items()
        }
        self._indexes: dict[str, list[dict[str, Any]]] = {
            name: list(items) for name, items in (indexes or {}).items()
        }
        self.available = True
        self.closed = False

    def add_documents(self, collection: str, documents: Iterable[Document]) -> None:
        self._collections.setdefault(collection, []).extend(documents)

    def set_indexes(self, collection: str, indexes: Sequence[dict[str, Any]]) -> None:
        self._indexes[collection] = list(indexes)

    def _check_available(self) -> None:
        if not self.available:
            raise ConnectivityError("MongoDB connection refused", store="source")

    def _query(self, collection: str, filter: Mapping[str, Any] | None) -> list[Document]:
        return [d for d in self._collections.get(collection, []) if matches(d, filter or {})]

    async def ping(self) -> None:
        self._check_available()

    async def list_collections(self) -> list[str]:
        self._check_available()
        return sorted(self._collections)

    async def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int:
        self._check_available()
        return len(self._query(collection, filter))

    async def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec = DEFAULT_SORT,
        skip: int = 0,
        batch_size: int | None = None,
    ) -> AsyncIterator[Document]:
        self._check_available()
        documents = sorted(self._query(collection, filter), key=lambda d: _sort_key(d, sort))
        for index, document in enumerate(documents[skip:], start=1):
            yield copy.deepcopy(document)
            if batch_size and index % batch_size == 0:
                # Yield control like a cursor fetching its next batch
                await asyncio.sleep(0)

    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
    ) -> Document | None:
        self._check_available()
        documents = self._query(collection, filter)
        if sort:
            documents.sort(key=lambda d: _sort_key(d, sort))
        return copy.deepcopy(documents[0]) if documents else None

    async def sample(self, collection: str, size: int) -> list[Document]:
        self._check_available()
        return copy.deepcopy(self._collections.get(collection, [])[:size])

    async def list_indexes(self, collection: str) -> list[dict[str, Any]]:
        self._check_available()
        return [dict(index) for index in self._indexes.get(collection, [])]

    async def find_duplicate_ids(self, collection: str, limit: int = DUPLICATE_SCAN_LIMIT) -> list[Any]:
        self._check_available()
        counts = Counter(str(d.get("_id")) for d in self._collections.get(collection, []))
        seen: dict[str, Any] = {}
        for document in self._collections.get(collection, []):
            seen.setdefault(str(document.get("_id")), document.get("_id"))
        return [seen[key] for key, count in counts.items() if count > 1][:limit]

    async def close(self) -> None:
        self.closed = True


_INDEX_DDL = re.compile(
    r'INDEX\s+(?:CONCURRENTLY\s+)?(?:IF NOT EXISTS\s+)?"?(?P<name>\w+)"?\s+ON\s+"?(?P<table>\w+)"?',
    re.IGNORECASE,
)
_DROP_INDEX_DDL = re.compile(r'DROP\s+INDEX\s+(?:IF EXISTS\s+)?"?(?P<name>\w+)"?', re.IGNORECASE)


class InMemoryTargetStore:
    """
    In-memory implementation of the TargetStore protocol.

    Each table maps primary key ``id`` to a row. A write call is applied only
    when every row passes the constraints, which mirrors transactional
    all-or-nothing behaviour.

    Suitable for:
    - Unit testing the engine, rollback and index optimizer

    NOT suitable for:
    - Anything needing real SQL semantics

    Thread-safety:
        Uses an asyncio.Lock; safe for concurrent tasks in one event loop.

    Example:
        >>> target = InMemoryTargetStore(["entries"], not_null={"entries": {"sgv"}})
        >>> await target.write_row("entries", {"id": "a", "sgv": None})
        WriteResult(outcome=<WriteOutcome.FAILED: 'failed'>, rows=0, error=...)

    Attributes:
        available: When False, ping raises ConnectivityError.
        drop_failures: Tables whose drop should fail.
        ddl_statements: Every DDL statement executed, in order.
        batch_writes: Number of write_batch calls.
    """

    def __init__(
        self,
        tables: Iterable[str] = (),
        *,
        not_null: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {name: {} for name in tables}
        self._not_null = {table: set(cols) for table, cols in (not_null or {}).items()}
        self._indexes: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.available = True
        self.drop_failures: set[str] = set()
        self.ddl_statements: list[str] = []
        self.batch_writes = 0
        self.closed = False

    def rows(self, table: str) -> list[dict[str, Any]]:
        """All rows of ``table`` in insertion order."""
        return list(self._tables.get(table, {}).values())

    def add_table(self, table: str, *, not_null: Iterable[str] = ()) -> None:
        self._tables.setdefault(table, {})
        if not_null:
            self._not_null[table] = set(not_null)

    def _violation(self, table: str, row: Row, pending: set[Any]) -> WriteResult | None:
        if table not in self._tables:
            return WriteResult(WriteOutcome.FAILED, 0, f'relation "{table}" does not exist')
        for column in self._not_null.get(table, ()):
            if row.get(column) is None:
                return WriteResult(
                    WriteOutcome.FAILED,
                    0,
                    f'null value in column "{column}" violates not-null constraint',
                )
        key = row.get("id")
        if key in self._tables[table] or key in pending:
            return WriteResult(
                WriteOutcome.DUPLICATE,
                0,
                f'duplicate key value violates unique constraint "{table}_pkey"',
            )
        pending.add(key)
        return None

    async def ping(self) -> None:
        if not self.available:
            raise ConnectivityError("PostgreSQL connection refused", store="target")

    async def list_tables(self) -> list[str]:
        return sorted(self._tables)

    async def write_batch(self, table: str, sub_batches: Sequence[Sequence[Row]]) -> WriteResult:
        async with self._lock:
            self.batch_writes += 1
            pending: set[Any] = set()
            rows = [row for sub in sub_batches for row in sub]
            for row in rows:
                violation = self._violation(table, row, pending)
                if violation:
                    return violation
            for row in rows:
                self._tables[table][row.get("id")] = dict(row)
            return WriteResult.ok(len(rows))

    async def write_row(self, table: str, row: Row) -> WriteResult:
        async with self._lock:
            violation = self._violation(table, row, set())
            if violation:
                return violation
            self._tables[table][row.get("id")] = dict(row)
            return WriteResult.ok(1)

    async def truncate_tables(self, tables: Sequence[str]) -> None:
        async with self._lock:
            for table in tables:
                if table in self._tables:
                    self._tables[table].clear()

    async def drop_table(self, table: str) -> WriteResult:
        async with self._lock:
            self.ddl_statements.append(f'DROP TABLE IF EXISTS "{table}" CASCADE')
            if table in self.drop_failures:
                return WriteResult(WriteOutcome.FAILED, 0, f"cannot drop table {table}")
            self._tables.pop(table, None)
            self._indexes = {n: t for n, t in self._indexes.items() if t != table}
            return WriteResult.ok()

    async def list_indexes(self, table: str) -> list[str]:
        return sorted(name for name, owner in self._indexes.items() if owner == table)

    async def drop_index(self, name: str) -> WriteResult:
        return await self.execute_ddl(f'DROP INDEX IF EXISTS "{name}"')

    async def delete_rows(
        self,
        table: str,
        *,
        created_from: str | None = None,
        created_to: str | None = None,
        original_ids: Sequence[str] | None = None,
        written_after: datetime | None = None,
    ) -> int:
        def selected(row: Mapping[str, Any]) -> bool:
            if row.get("original_id") is None:
                return False
            created_at = row.get("created_at")
            if created_from is not None and (created_at is None or created_at < created_from):
                return False
            if created_to is not None and (created_at is None or created_at > created_to):
                return False
            if original_ids and row.get("original_id") not in original_ids:
                return False
            if written_after is not None:
                written = row.get("sys_created_at")
                if written is None or written <= written_after:
                    return False
            return True

        async with self._lock:
            rows = self._tables.get(table, {})
            doomed = [key for key, row in rows.items() if selected(row)]
            for key in doomed:
                del rows[key]
            return len(doomed)

    async def execute_ddl(self, sql: str, *, autocommit: bool = False) -> WriteResult:
        async with self._lock:
            self.ddl_statements.append(sql)
            dropped = _DROP_INDEX_DDL.search(sql)
            if dropped:
                self._indexes.pop(dropped.group("name"), None)
                return WriteResult.ok()
            created = _INDEX_DDL.search(sql)
            if created:
                if created.group("table") not in self._tables:
                    return WriteResult(
                        WriteOutcome.FAILED, 0, f'relation "{created.group("table")}" does not exist'
                    )
                self._indexes[created.group("name")] = created.group("table")
            return WriteResult.ok()

    async def close(self) -> None:
        self.closed = True


__all__ = [
    "InMemorySourceStore",
    "InMemoryTargetStore",
    "matches",
]
