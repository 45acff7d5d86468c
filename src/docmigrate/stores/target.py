"""
Target store boundary: transactional writes into the relational store.

The target schema is provisioned elsewhere. This store never creates base
tables; it inserts rows, reports write outcomes as values, and offers the
destructive operations rollback needs.

Write outcomes are explicit results rather than exceptions:

- COMMITTED: every row of the call was durably written
- DUPLICATE: the transaction failed on a unique-key violation
- FAILED: the transaction failed for any other data reason

Connection-level failures are raised as ConnectivityError because retrying
row by row cannot fix them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import bindparam, inspect, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from docmigrate.exceptions import ConnectivityError, RollbackError
from docmigrate.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    ATTR_SUB_BATCH_COUNT,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)
from docmigrate.repositories._connection import execute_with_connection, quote_identifier

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

UNIQUE_VIOLATION_SQLSTATE = "23505"


class WriteOutcome(Enum):
    """Outcome of one transactional write."""

    COMMITTED = "committed"
    """All rows were written."""

    DUPLICATE = "duplicate"
    """A unique-key violation rolled the transaction back."""

    FAILED = "failed"
    """Any other error rolled the transaction back."""


@dataclass(frozen=True)
class WriteResult:
    """
    Result of a write or DDL call.

    Attributes:
        outcome: What happened.
        rows: Rows written (zero unless COMMITTED).
        error: Driver error message for DUPLICATE and FAILED.
    """

    outcome: WriteOutcome
    rows: int = 0
    error: str | None = None

    @property
    def committed(self) -> bool:
        return self.outcome == WriteOutcome.COMMITTED

    @classmethod
    def ok(cls, rows: int = 0) -> WriteResult:
        return cls(WriteOutcome.COMMITTED, rows)


@runtime_checkable
class TargetStore(Protocol):
    """Relational target used by the engine, index optimizer and rollback."""

    async def ping(self) -> None:
        """Raise ConnectivityError if the store is unreachable."""
        ...

    async def list_tables(self) -> list[str]:
        ...

    async def write_batch(self, table: str, sub_batches: Sequence[Sequence[Row]]) -> WriteResult:
        """Insert every sub-batch inside one transaction."""
        ...

    async def write_row(self, table: str, row: Row) -> WriteResult:
        """Insert one row in its own transaction."""
        ...

    async def truncate_tables(self, tables: Sequence[str]) -> None:
        ...

    async def drop_table(self, table: str) -> WriteResult:
        ...

    async def list_indexes(self, table: str) -> list[str]:
        """Names of secondary (non primary key) indexes on ``table``."""
        ...

    async def drop_index(self, name: str) -> WriteResult:
        ...

    async def delete_rows(
        self,
        table: str,
        *,
        created_from: str | None = None,
        created_to: str | None = None,
        original_ids: Sequence[str] | None = None,
        written_after: datetime | None = None,
    ) -> int:
        """Delete migrated rows matching every given condition."""
        ...

    async def execute_ddl(self, sql: str, *, autocommit: bool = False) -> WriteResult:
        ...

    async def close(self) -> None:
        ...


def is_duplicate_key_error(error: BaseException) -> bool:
    """
    Check whether a driver error is a unique-key violation.

    Uses the SQLSTATE when the driver exposes one and falls back to the
    message text for drivers that do not.
    """
    orig = getattr(error, "orig", None) or error
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(orig).lower()
    return "duplicate key" in message or "unique constraint" in message


def _error_message(error: SQLAlchemyError) -> str:
    orig = getattr(error, "orig", None)
    return str(orig) if orig is not None else str(error)


class PostgreSQLTargetStore:
    """
    Target store on a SQLAlchemy AsyncEngine (asyncpg driver in production).

    Every call borrows its own pooled connection. Concurrent collection
    workers therefore never share a transaction.

    Example:
        >>> store = PostgreSQLTargetStore.from_url("postgresql+asyncpg://localhost/nocturne")
        >>> result = await store.write_batch("entries", [rows])
        >>> result.committed
        True

    Attributes:
        engine: The underlying AsyncEngine, shared with the repositories.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        schema: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.engine = engine
        self._schema = schema
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._statements: dict[tuple[str, tuple[str, ...]], Any] = {}

    @classmethod
    def from_url(
        cls,
        url: str | URL,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        **engine_kwargs: Any,
    ) -> PostgreSQLTargetStore:
        """Create a store with its own engine."""
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_async_engine(url, **engine_kwargs), tracer=tracer, enable_tracing=enable_tracing)

    @property
    def _is_postgresql(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def _insert_statement(self, table: str, columns: tuple[str, ...]) -> Any:
        key = (table, columns)
        statement = self._statements.get(key)
        if statement is None:
            column_list = ", ".join(quote_identifier(c) for c in columns)
            values = ", ".join(f":{c}" for c in columns)
            statement = text(
                f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES ({values})"  # nosec B608
            )
            self._statements[key] = statement
        return statement

    def _connectivity_error(self, e: BaseException, action: str) -> ConnectivityError:
        return ConnectivityError(f"PostgreSQL {action} failed: {e}", store="target")

    async def ping(self) -> None:
        try:
            async with execute_with_connection(self.engine, transactional=False) as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            raise self._connectivity_error(e, "connection") from e

    async def list_tables(self) -> list[str]:
        try:
            async with execute_with_connection(self.engine, transactional=False) as conn:
                names = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names(schema=self._schema)
                )
        except (SQLAlchemyError, OSError) as e:
            raise self._connectivity_error(e, "catalog query") from e
        return sorted(names)

    async def write_batch(self, table: str, sub_batches: Sequence[Sequence[Row]]) -> WriteResult:
        non_empty = [list(sub) for sub in sub_batches if sub]
        total = sum(len(sub) for sub in non_empty)
        if total == 0:
            return WriteResult.ok(0)

        with self._tracer.span(
            "docmigrate.target.write_batch",
            {
                ATTR_DB_SYSTEM: self.engine.dialect.name,
                ATTR_DB_OPERATION: "INSERT",
                ATTR_TABLE_NAME: table,
                ATTR_DOCUMENT_COUNT: total,
                ATTR_SUB_BATCH_COUNT: len(non_empty),
            },
        ):
            try:
                async with execute_with_connection(self.engine) as conn:
                    for sub_batch in non_empty:
                        statement = self._insert_statement(table, tuple(sub_batch[0].keys()))
                        await conn.execute(statement, sub_batch)
            except (OperationalError, InterfaceError) as e:
                raise self._connectivity_error(e, f"insert into {table}") from e
            except SQLAlchemyError as e:
                outcome = (
                    WriteOutcome.DUPLICATE if is_duplicate_key_error(e) else WriteOutcome.FAILED
                )
                logger.debug("Batch insert into %s rolled back: %s", table, _error_message(e))
                return WriteResult(outcome, 0, _error_message(e))
        return WriteResult.ok(total)

    async def write_row(self, table: str, row: Row) -> WriteResult:
        statement = self._insert_statement(table, tuple(row.keys()))
        try:
            async with execute_with_connection(self.engine) as conn:
                await conn.execute(statement, dict(row))
        except (OperationalError, InterfaceError) as e:
            raise self._connectivity_error(e, f"insert into {table}") from e
        except SQLAlchemyError as e:
            outcome = WriteOutcome.DUPLICATE if is_duplicate_key_error(e) else WriteOutcome.FAILED
            return WriteResult(outcome, 0, _error_message(e))
        return WriteResult.ok(1)

    async def truncate_tables(self, tables: Sequence[str]) -> None:
        if not tables:
            return
        async with execute_with_connection(self.engine) as conn:
            if self._is_postgresql:
                names = ", ".join(quote_identifier(t) for t in tables)
                await conn.execute(text(f"TRUNCATE TABLE {names}"))
            else:
                for table in tables:
                    await conn.execute(text(f"DELETE FROM {quote_identifier(table)}"))  # nosec B608
        logger.info("Truncated target tables: %s", ", ".join(tables))

    async def drop_table(self, table: str) -> WriteResult:
        cascade = " CASCADE" if self._is_postgresql else ""
        return await self.execute_ddl(f"DROP TABLE IF EXISTS {quote_identifier(table)}{cascade}")

    async def list_indexes(self, table: str) -> list[str]:
        async with execute_with_connection(self.engine, transactional=False) as conn:
            indexes = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_indexes(table, schema=self._schema)
            )
        return [index["name"] for index in indexes if index.get("name")]

    async def drop_index(self, name: str) -> WriteResult:
        return await self.execute_ddl(f"DROP INDEX IF EXISTS {quote_identifier(name)}")

    async def delete_rows(
        self,
        table: str,
        *,
        created_from: str | None = None,
        created_to: str | None = None,
        original_ids: Sequence[str] | None = None,
        written_after: datetime | None = None,
    ) -> int:
        conditions = ["original_id IS NOT NULL"]
        params: dict[str, Any] = {}
        if created_from is not None:
            conditions.append("created_at >= :created_from")
            params["created_from"] = created_from
        if created_to is not None:
            conditions.append("created_at <= :created_to")
            params["created_to"] = created_to
        if written_after is not None:
            conditions.append("sys_created_at > :written_after")
            params["written_after"] = written_after
        statement = text(
            f"DELETE FROM {quote_identifier(table)} WHERE {' AND '.join(conditions)}"  # nosec B608
            + (" AND original_id IN :original_ids" if original_ids else "")
        )
        if original_ids:
            statement = statement.bindparams(bindparam("original_ids", expanding=True))
            params["original_ids"] = list(original_ids)

        with self._tracer.span(
            "docmigrate.target.delete_rows",
            {ATTR_DB_OPERATION: "DELETE", ATTR_TABLE_NAME: table},
        ):
            try:
                async with execute_with_connection(self.engine) as conn:
                    result = await conn.execute(statement, params)
            except SQLAlchemyError as e:
                raise RollbackError(f"Deleting rows from {table} failed: {_error_message(e)}") from e
        return max(result.rowcount or 0, 0)

    async def execute_ddl(self, sql: str, *, autocommit: bool = False) -> WriteResult:
        with self._tracer.span("docmigrate.target.execute_ddl", {ATTR_DB_OPERATION: sql.split(" ", 1)[0]}):
            try:
                async with execute_with_connection(self.engine, autocommit=autocommit) as conn:
                    await conn.execute(text(sql))
            except SQLAlchemyError as e:
                return WriteResult(WriteOutcome.FAILED, 0, _error_message(e))
        return WriteResult.ok()

    async def close(self) -> None:
        await self.engine.dispose()


__all__ = [
    "PostgreSQLTargetStore",
    "Row",
    "TargetStore",
    "WriteOutcome",
    "WriteResult",
    "is_duplicate_key_error",
]
