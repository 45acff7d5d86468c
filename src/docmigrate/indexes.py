"""
Secondary index planning and creation for the target tables.

IndexOptimizer combines two sources of IndexStrategy values:

- the source collection's own MongoDB indexes, translated to target columns
- a fixed catalog of query-pattern indexes per collection

Strategies are deduplicated by table and column list, ordered by priority,
and created with bounded concurrency. Index creation is an optimization: a
failed index is reported as an IndexCreationResult and never raised.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from docmigrate.exceptions import MigrationError
from docmigrate.observability import (
    ATTR_COLLECTION,
    ATTR_INDEX_NAME,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)
from docmigrate.repositories._connection import quote_identifier
from docmigrate.stores.source import SourceStore
from docmigrate.stores.target import TargetStore
from docmigrate.transformers import TransformationService

logger = logging.getLogger(__name__)


class IndexType(Enum):
    """PostgreSQL index access methods."""

    BTREE = "btree"
    GIN = "gin"
    GIST = "gist"
    HASH = "hash"
    BRIN = "brin"


class IndexBenefit(Enum):
    """Estimated query benefit of an index."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class IndexColumn:
    """One key of an index."""

    name: str
    descending: bool = False

    def render(self, postgresql: bool = True) -> str:
        rendered = quote_identifier(self.name)
        if self.descending:
            rendered += " DESC"
            if postgresql:
                rendered += " NULLS LAST"
        return rendered


@dataclass(frozen=True)
class IndexStrategy:
    """
    A planned secondary index.

    Attributes:
        index_name: Name of the index to create.
        table_name: Target table.
        columns: Index keys in order.
        index_type: Access method. Non-btree methods are PostgreSQL only.
        unique: Create a UNIQUE index.
        partial_condition: SQL predicate for a partial index.
        create_concurrently: Use CREATE INDEX CONCURRENTLY on PostgreSQL.
        priority: Higher values are created first.
        benefit: Estimated query benefit.
        description: Why the index exists.
        source_collection: Collection the strategy was derived for.
    """

    index_name: str
    table_name: str
    columns: tuple[IndexColumn, ...]
    index_type: IndexType = IndexType.BTREE
    unique: bool = False
    partial_condition: str | None = None
    create_concurrently: bool = True
    priority: int = 5
    benefit: IndexBenefit = IndexBenefit.MEDIUM
    description: str = ""
    source_collection: str | None = None

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def is_partial(self) -> bool:
        return self.partial_condition is not None


@dataclass(frozen=True)
class IndexCreationResult:
    """Outcome of creating one index."""

    strategy: IndexStrategy
    success: bool
    sql: str
    duration_seconds: float = 0.0
    error_message: str | None = None

    @property
    def index_name(self) -> str:
        return self.strategy.index_name


@dataclass(frozen=True)
class IndexDropResult:
    """Outcome of dropping the secondary indexes of one table."""

    table_name: str
    dropped: tuple[str, ...] = ()
    failed: Mapping[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class IndexOptimizationOptions:
    """
    Index planning toggles.

    Attributes:
        create_concurrently: Build indexes without blocking writes (PostgreSQL).
        include_source_indexes: Translate the source collection's indexes.
        create_covering_indexes: Include wide covering indexes.
        create_partial_indexes: Include partial indexes.
        create_json_indexes: Include GIN indexes on JSON columns.
        max_concurrency: Indexes built at the same time.
    """

    create_concurrently: bool = True
    include_source_indexes: bool = True
    create_covering_indexes: bool = True
    create_partial_indexes: bool = True
    create_json_indexes: bool = True
    max_concurrency: int = 2


def _btree(table: str, name: str, *columns: IndexColumn, **kwargs: Any) -> IndexStrategy:
    return IndexStrategy(
        index_name=f"ix_{table}_{name}",
        table_name=table,
        columns=columns,
        source_collection=table,
        **kwargs,
    )


def _gin(table: str, column: str, **kwargs: Any) -> IndexStrategy:
    return IndexStrategy(
        index_name=f"ix_{table}_{column}_gin",
        table_name=table,
        columns=(IndexColumn(column),),
        index_type=IndexType.GIN,
        source_collection=table,
        **kwargs,
    )


_C = IndexColumn

INDEX_CATALOG: dict[str, tuple[IndexStrategy, ...]] = {
    "entries": (
        _btree("entries", "mills_type", _C("mills", descending=True), _C("type"),
               priority=10, benefit=IndexBenefit.CRITICAL,
               description="Time-range glucose queries filtered by entry type"),
        _btree("entries", "mills_covering",
               _C("mills", descending=True), _C("sgv"), _C("type"), _C("device"),
               priority=8, benefit=IndexBenefit.HIGH,
               description="Covering index for chart queries"),
        _btree("entries", "sgv_mills_partial", _C("mills", descending=True), _C("sgv"),
               partial_condition="type = 'sgv' AND sgv IS NOT NULL",
               priority=7, benefit=IndexBenefit.HIGH,
               description="Sensor glucose readings only"),
        _btree("entries", "device_mills", _C("device"), _C("mills", descending=True),
               priority=5, description="Per-device history"),
    ),
    "treatments": (
        _btree("treatments", "event_type_mills", _C("event_type"), _C("mills", descending=True),
               priority=9, benefit=IndexBenefit.HIGH,
               description="Treatments by event type over time"),
        _btree("treatments", "insulin_mills_partial", _C("mills", descending=True), _C("insulin"),
               partial_condition="insulin IS NOT NULL AND insulin > 0",
               priority=6, description="Insulin deliveries only"),
        _gin("treatments", "additional_properties", priority=4, benefit=IndexBenefit.LOW,
             description="Containment queries on extra treatment fields"),
        _gin("treatments", "boluscalc", priority=3, benefit=IndexBenefit.LOW,
             description="Bolus wizard details"),
    ),
    "profiles": (
        _btree("profiles", "start_date_default_profile",
               _C("start_date", descending=True), _C("default_profile"),
               priority=8, benefit=IndexBenefit.HIGH,
               description="Active profile lookup"),
        _gin("profiles", "store", priority=3, benefit=IndexBenefit.LOW,
             description="Queries into profile stores"),
    ),
    "devicestatus": (
        _btree("devicestatus", "device_created_at", _C("device"), _C("created_at", descending=True),
               priority=8, benefit=IndexBenefit.HIGH,
               description="Latest status per device"),
        _gin("devicestatus", "additional_properties", priority=3, benefit=IndexBenefit.LOW,
             description="Queries into uploader and pump status"),
    ),
    "food": (
        _btree("food", "name_category", _C("name"), _C("category"),
               priority=6, description="Food search by name"),
    ),
    "activity": (
        _btree("activity", "created_at_type", _C("created_at", descending=True), _C("type"),
               priority=6, description="Activity history"),
    ),
    "settings": (
        _btree("settings", "key_unique", _C("key"), unique=True,
               priority=9, benefit=IndexBenefit.HIGH,
               description="One value per settings key"),
    ),
}
"""Query-pattern indexes for each supported collection."""

del _C

_SOURCE_FIELD_ALIASES = {"_id": "original_id", "date": "mills", "dateString": "date_string"}
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def source_field_to_column(field_name: str) -> str:
    """
    Map a MongoDB field name to the target column name.

    Example:
        >>> source_field_to_column("eventType")
        'event_type'
    """
    if field_name in _SOURCE_FIELD_ALIASES:
        return _SOURCE_FIELD_ALIASES[field_name]
    return _CAMEL_BOUNDARY.sub("_", field_name).lower()


def _sql_literal(value: Any) -> str | None:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return None


def partial_filter_to_sql(partial_filter: Mapping[str, Any]) -> str | None:
    """
    Translate a simple ``partialFilterExpression`` to a SQL predicate.

    Supports equality, ``$exists``, ``$gt``/``$gte``/``$lt``/``$lte`` on scalar
    values. Returns None for anything else, in which case the index is
    created without a predicate.
    """
    operators = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}
    conditions: list[str] = []
    for field_name, condition in partial_filter.items():
        if field_name.startswith("$"):
            return None
        column = quote_identifier(source_field_to_column(field_name))
        if not isinstance(condition, Mapping):
            literal = _sql_literal(condition)
            if literal is None:
                return None
            conditions.append(f"{column} = {literal}")
            continue
        for operator, operand in condition.items():
            if operator == "$exists":
                conditions.append(f"{column} IS {'NOT ' if operand else ''}NULL")
            elif operator in operators and (literal := _sql_literal(operand)) is not None:
                conditions.append(f"{column} {operators[operator]} {literal}")
            else:
                return None
    return " AND ".join(conditions) if conditions else None


def generate_index_sql(strategy: IndexStrategy, *, postgresql: bool = True) -> str:
    """
    Render the CREATE INDEX statement for a strategy.

    On other dialects the PostgreSQL-only clauses (CONCURRENTLY, USING,
    NULLS LAST) are left out.

    Example:
        >>> generate_index_sql(INDEX_CATALOG["settings"][0])
        'CREATE UNIQUE INDEX CONCURRENTLY IF NOT EXISTS "ix_settings_key_unique" ON "settings" ("key")'
    """
    parts = ["CREATE"]
    if strategy.unique:
        parts.append("UNIQUE")
    parts.append("INDEX")
    if postgresql and strategy.create_concurrently:
        parts.append("CONCURRENTLY")
    parts.append(f"IF NOT EXISTS {quote_identifier(strategy.index_name)}")
    parts.append(f"ON {quote_identifier(strategy.table_name)}")
    if postgresql and strategy.index_type is not IndexType.BTREE:
        parts.append(f"USING {strategy.index_type.value}")
    parts.append("(" + ", ".join(column.render(postgresql) for column in strategy.columns) + ")")
    if strategy.partial_condition:
        parts.append(f"WHERE {strategy.partial_condition}")
    return " ".join(parts)


def deduplicate_strategies(strategies: Iterable[IndexStrategy]) -> list[IndexStrategy]:
    """
    Keep one strategy per table, key columns and predicate, highest priority first.

    Ties keep the strategy seen first.
    """
    best: dict[tuple[str, tuple[str, ...], str | None], IndexStrategy] = {}
    for strategy in strategies:
        key = (strategy.table_name, strategy.column_names, strategy.partial_condition)
        current = best.get(key)
        if current is None or strategy.priority > current.priority:
            best[key] = strategy
    return sorted(best.values(), key=lambda s: s.priority, reverse=True)


def is_constraint_index(name: str) -> bool:
    """True for primary key and unique constraint indexes, which are never dropped."""
    return name.endswith(("_pkey", "_key"))


class IndexOptimizer:
    """
    Plans, creates and drops secondary indexes on the target.

    Example:
        >>> optimizer = IndexOptimizer(target, TransformationService())
        >>> strategies = await optimizer.plan(["entries", "treatments"], source)
        >>> results = await optimizer.create_indexes(strategies)
        >>> [r.index_name for r in results if not r.success]
        []
    """

    def __init__(
        self,
        target: TargetStore,
        transformation_service: TransformationService | None = None,
        options: IndexOptimizationOptions | None = None,
        *,
        postgresql: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._target = target
        self._transformations = transformation_service or TransformationService()
        self.options = options or IndexOptimizationOptions()
        self._postgresql = postgresql
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _columns_of(self, collection: str) -> set[str]:
        return set(self._transformations.record_type_for(collection).model_fields)

    def collection_strategies(self, collection: str) -> list[IndexStrategy]:
        """
        Catalog strategies for a collection, filtered by the options.

        Raises:
            UnsupportedCollectionError: If no transformer handles the collection.
        """
        table = self._transformations.table_for(collection)
        strategies = []
        for strategy in INDEX_CATALOG.get(collection.lower(), ()):
            json_index = strategy.index_type is IndexType.GIN
            if json_index and not (self.options.create_json_indexes and self._postgresql):
                continue
            if strategy.is_partial and not self.options.create_partial_indexes:
                continue
            if len(strategy.columns) > 3 and not self.options.create_covering_indexes:
                continue
            strategies.append(
                replace(
                    strategy,
                    table_name=table,
                    create_concurrently=self.options.create_concurrently,
                    source_collection=collection,
                )
            )
        return strategies

    async def analyze_source_indexes(self, source: SourceStore, collection: str) -> list[IndexStrategy]:
        """
        Translate a source collection's indexes into strategies.

        The ``_id_`` index, text and geospatial indexes, and indexes on
        fields without a target column are skipped.

        Raises:
            ConnectivityError: If the source indexes cannot be listed.
        """
        table = self._transformations.table_for(collection)
        columns = self._columns_of(collection)
        strategies = []
        for index in await source.list_indexes(collection):
            name = index.get("name", "")
            if name == "_id_":
                continue
            keys = list((index.get("key") or {}).items())
            if not keys or any(not isinstance(direction, (int, float)) for _, direction in keys):
                logger.debug("Skipping non-btree source index %s.%s", collection, name)
                continue
            index_columns = tuple(
                IndexColumn(source_field_to_column(field_name), descending=direction < 0)
                for field_name, direction in keys
            )
            missing = [c.name for c in index_columns if c.name not in columns]
            if missing:
                logger.debug(
                    "Skipping source index %s.%s: no target column for %s",
                    collection,
                    name,
                    ", ".join(missing),
                )
                continue
            partial = index.get("partialFilterExpression")
            strategies.append(
                IndexStrategy(
                    index_name=f"ix_{table}_{re.sub(r'[^a-z0-9_]', '_', name.lower())}",
                    table_name=table,
                    columns=index_columns,
                    unique=bool(index.get("unique")),
                    partial_condition=partial_filter_to_sql(partial) if partial else None,
                    create_concurrently=self.options.create_concurrently,
                    priority=1,
                    benefit=IndexBenefit.LOW,
                    description=f"Source index {name}",
                    source_collection=collection,
                )
            )
        return strategies

    async def plan(
        self,
        collections: Sequence[str],
        source: SourceStore | None = None,
    ) -> list[IndexStrategy]:
        """
        Build the deduplicated, priority-ordered strategies for collections.

        Source indexes that cannot be listed are logged and ignored.
        """
        strategies: list[IndexStrategy] = []
        for collection in collections:
            if not self._transformations.supports(collection):
                continue
            strategies.extend(self.collection_strategies(collection))
            if source is not None and self.options.include_source_indexes:
                try:
                    strategies.extend(await self.analyze_source_indexes(source, collection))
                except MigrationError as e:
                    logger.warning("Could not read source indexes of %s: %s", collection, e)
        return deduplicate_strategies(strategies)

    def generate_sql(self, strategy: IndexStrategy) -> str:
        return generate_index_sql(strategy, postgresql=self._postgresql)

    async def create_index(self, strategy: IndexStrategy) -> IndexCreationResult:
        """Create one index. Failures are returned, not raised."""
        sql = self.generate_sql(strategy)
        started = time.perf_counter()
        with self._tracer.span(
            "docmigrate.indexes.create_index",
            {ATTR_INDEX_NAME: strategy.index_name, ATTR_TABLE_NAME: strategy.table_name},
        ):
            outcome = await self._target.execute_ddl(
                sql,
                autocommit=self._postgresql and strategy.create_concurrently,
            )
        duration = time.perf_counter() - started
        if not outcome.committed:
            logger.warning("Index %s failed: %s", strategy.index_name, outcome.error)
            return IndexCreationResult(strategy, False, sql, duration, outcome.error)
        logger.debug("Created index %s in %.2fs", strategy.index_name, duration)
        return IndexCreationResult(strategy, True, sql, duration)

    async def create_indexes(self, strategies: Sequence[IndexStrategy]) -> list[IndexCreationResult]:
        """
        Create indexes in priority order with bounded concurrency.

        Returns:
            One result per strategy, in the order given.
        """
        semaphore = asyncio.Semaphore(max(1, self.options.max_concurrency))

        async def bounded(strategy: IndexStrategy) -> IndexCreationResult:
            async with semaphore:
                return await self.create_index(strategy)

        results = list(await asyncio.gather(*(bounded(s) for s in strategies)))
        created = sum(1 for r in results if r.success)
        logger.info("Index creation finished: %d created, %d failed", created, len(results) - created)
        return results

    async def optimize(
        self,
        collections: Sequence[str],
        source: SourceStore | None = None,
    ) -> list[IndexCreationResult]:
        """Plan and create indexes for collections."""
        with self._tracer.span(
            "docmigrate.indexes.optimize",
            {ATTR_COLLECTION: ",".join(collections)},
        ):
            strategies = await self.plan(collections, source)
            return await self.create_indexes(strategies)

    async def drop_indexes(self, table: str) -> IndexDropResult:
        """Drop the secondary indexes of a table, keeping constraint indexes."""
        dropped: list[str] = []
        failed: dict[str, str] = {}
        for name in await self._target.list_indexes(table):
            if is_constraint_index(name):
                continue
            outcome = await self._target.drop_index(name)
            if outcome.committed:
                dropped.append(name)
            else:
                failed[name] = outcome.error or "unknown error"
                logger.warning("Dropping index %s failed: %s", name, outcome.error)
        return IndexDropResult(table, tuple(dropped), failed)


__all__ = [
    "INDEX_CATALOG",
    "IndexBenefit",
    "IndexColumn",
    "IndexCreationResult",
    "IndexDropResult",
    "IndexOptimizationOptions",
    "IndexOptimizer",
    "IndexStrategy",
    "IndexType",
    "deduplicate_strategies",
    "generate_index_sql",
    "is_constraint_index",
    "partial_filter_to_sql",
    "source_field_to_column",
]
