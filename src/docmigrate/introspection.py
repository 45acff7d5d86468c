"""
Target schema discovery.

SchemaIntrospector reads tables, columns, nullability and indexes from the
target's system catalogs. On PostgreSQL it queries ``information_schema``
and ``pg_catalog`` directly; other dialects go through SQLAlchemy's
inspector. Full discoveries are cached per database URL.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from docmigrate.exceptions import ConnectivityError
from docmigrate.observability import ATTR_DB_SYSTEM, ATTR_TABLE_NAME, Tracer, create_tracer
from docmigrate.repositories._connection import execute_with_connection

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"


@dataclass(frozen=True)
class ColumnSchema:
    """
    A discovered column.

    Attributes:
        name: Column name.
        data_type: Catalog type name, e.g. ``"timestamp with time zone"``.
        nullable: Whether the column accepts NULL.
        is_primary_key: Whether the column is part of the primary key.
        default: Column default expression, if any.
    """

    name: str
    data_type: str
    nullable: bool
    is_primary_key: bool = False
    default: str | None = None


@dataclass(frozen=True)
class IndexSchema:
    """A discovered index and its column names, in key order."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    is_primary: bool = False


@dataclass(frozen=True)
class TableSchema:
    """A discovered table."""

    name: str
    columns: dict[str, ColumnSchema] = field(default_factory=dict)
    indexes: tuple[IndexSchema, ...] = ()

    @property
    def index_names(self) -> list[str]:
        return [index.name for index in self.indexes]

    @property
    def not_null_columns(self) -> list[str]:
        return [c.name for c in self.columns.values() if not c.nullable]

    def has_index_on(self, columns: tuple[str, ...]) -> bool:
        """True when an index covers exactly ``columns`` as its leading keys."""
        return any(index.columns[: len(columns)] == columns for index in self.indexes)


_PG_COLUMNS_QUERY = """
    SELECT
        c.table_name,
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.column_default,
        CASE WHEN pk.column_name IS NOT NULL THEN true ELSE false END AS is_primary_key
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_name = c.table_name AND t.table_schema = c.table_schema
    LEFT JOIN (
        SELECT kcu.table_name, kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
        WHERE tc.constraint_type = 'PRIMARY KEY'
            AND tc.table_schema = :schema
    ) pk ON c.table_name = pk.table_name AND c.column_name = pk.column_name
    WHERE c.table_schema = :schema
        AND t.table_type = 'BASE TABLE'
    ORDER BY c.table_name, c.ordinal_position
"""

_PG_INDEXES_QUERY = """
    SELECT
        t.relname AS table_name,
        i.relname AS index_name,
        ix.indisunique,
        ix.indisprimary,
        a.attname
    FROM pg_class t
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_index ix ON ix.indrelid = t.oid
    JOIN pg_class i ON i.oid = ix.indexrelid
    LEFT JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord) ON true
    LEFT JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
    WHERE n.nspname = :schema AND t.relkind = 'r'
    ORDER BY t.relname, i.relname, k.ord
"""


class SchemaIntrospector:
    """
    Discovers the target relational schema.

    Example:
        >>> introspector = SchemaIntrospector(engine)
        >>> tables = await introspector.discover_all_tables()
        >>> tables["entries"].columns["sgv"].nullable
        True

    Thread-safety:
        Discovery is serialized per introspector with an asyncio.Lock so
        concurrent callers share one catalog read.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        schema: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._schema = schema
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._cache: dict[str, dict[str, TableSchema]] = {}
        self._lock = asyncio.Lock()

    @property
    def _cache_key(self) -> str:
        return f"{self._engine.url.render_as_string(hide_password=True)}#{self._schema or ''}"

    @property
    def _is_postgresql(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    async def database_exists(self) -> bool:
        """True when a connection can be opened."""
        try:
            async with execute_with_connection(self._engine, transactional=False) as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Database connection failed: %s", e)
            return False
        return True

    async def discover_all_tables(self, *, refresh: bool = False) -> dict[str, TableSchema]:
        """
        Discover every base table with its columns and indexes.

        Args:
            refresh: Ignore and replace the cached discovery.

        Raises:
            ConnectivityError: If the catalog cannot be read.
        """
        async with self._lock:
            cached = self._cache.get(self._cache_key)
            if cached is not None and not refresh:
                logger.debug("Returning cached schema with %d tables", len(cached))
                return cached

            with self._tracer.span(
                "docmigrate.introspection.discover_all_tables",
                {ATTR_DB_SYSTEM: self._engine.dialect.name},
            ):
                try:
                    if self._is_postgresql:
                        tables = await self._discover_postgresql()
                    else:
                        tables = await self._discover_with_inspector()
                except (SQLAlchemyError, OSError) as e:
                    raise ConnectivityError(f"Schema discovery failed: {e}", store="target") from e

            self._cache[self._cache_key] = tables
            logger.info("Schema discovery completed: found %d tables", len(tables))
            return tables

    async def get_existing_tables(self) -> list[str]:
        return sorted(await self.discover_all_tables())

    async def discover_table(self, table_name: str) -> TableSchema | None:
        """Schema of one table, or None when it does not exist."""
        with self._tracer.span("docmigrate.introspection.discover_table", {ATTR_TABLE_NAME: table_name}):
            return (await self.discover_all_tables()).get(table_name)

    async def table_exists(self, table_name: str) -> bool:
        return await self.discover_table(table_name) is not None

    def clear_cache(self) -> None:
        """Forget cached discoveries, e.g. after DDL."""
        self._cache.clear()

    async def _discover_postgresql(self) -> dict[str, TableSchema]:
        schema = self._schema or DEFAULT_SCHEMA
        async with execute_with_connection(self._engine, transactional=False) as conn:
            column_rows = (await conn.execute(text(_PG_COLUMNS_QUERY), {"schema": schema})).fetchall()
            index_rows = (await conn.execute(text(_PG_INDEXES_QUERY), {"schema": schema})).fetchall()

        columns: dict[str, dict[str, ColumnSchema]] = {}
        for table_name, column_name, data_type, is_nullable, default, is_pk in column_rows:
            columns.setdefault(table_name, {})[column_name] = ColumnSchema(
                name=column_name,
                data_type=data_type,
                nullable=is_nullable == "YES",
                is_primary_key=bool(is_pk),
                default=default,
            )

        index_parts: dict[tuple[str, str], dict[str, Any]] = {}
        for table_name, index_name, unique, primary, column_name in index_rows:
            entry = index_parts.setdefault(
                (table_name, index_name),
                {"unique": bool(unique), "primary": bool(primary), "columns": []},
            )
            if column_name is not None:
                entry["columns"].append(column_name)

        indexes: dict[str, list[IndexSchema]] = {}
        for (table_name, index_name), entry in index_parts.items():
            indexes.setdefault(table_name, []).append(
                IndexSchema(index_name, tuple(entry["columns"]), entry["unique"], entry["primary"])
            )

        return {
            name: TableSchema(name, table_columns, tuple(indexes.get(name, ())))
            for name, table_columns in columns.items()
        }

    async def _discover_with_inspector(self) -> dict[str, TableSchema]:
        schema = self._schema

        def discover(sync_conn: Any) -> dict[str, TableSchema]:
            inspector = inspect(sync_conn)
            tables: dict[str, TableSchema] = {}
            for table_name in inspector.get_table_names(schema=schema):
                primary_key = inspector.get_pk_constraint(table_name, schema=schema)
                pk_columns = tuple(primary_key.get("constrained_columns") or ())
                columns = {
                    column["name"]: ColumnSchema(
                        name=column["name"],
                        data_type=str(column["type"]),
                        nullable=bool(column.get("nullable", True)) and column["name"] not in pk_columns,
                        is_primary_key=column["name"] in pk_columns,
                        default=column.get("default"),
                    )
                    for column in inspector.get_columns(table_name, schema=schema)
                }
                indexes = [
                    IndexSchema(
                        index["name"],
                        tuple(c for c in index["column_names"] if c is not None),
                        bool(index.get("unique")),
                    )
                    for index in inspector.get_indexes(table_name, schema=schema)
                    if index.get("name")
                ]
                if pk_columns:
                    pk_name = primary_key.get("name") or f"{table_name}_pkey"
                    indexes.insert(0, IndexSchema(pk_name, pk_columns, unique=True, is_primary=True))
                tables[table_name] = TableSchema(table_name, columns, tuple(indexes))
            return tables

        async with execute_with_connection(self._engine, transactional=False) as conn:
            return await conn.run_sync(discover)


__all__ = [
    "ColumnSchema",
    "IndexSchema",
    "SchemaIntrospector",
    "TableSchema",
]
