"""
Connection handling shared by the SQL target store and repositories.

Every SQL component accepts either an AsyncEngine or an AsyncConnection.
With an engine, each call borrows its own pooled connection, so concurrent
collection workers never share a session.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
    *,
    autocommit: bool = False,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database connection or engine.
        transactional: With an engine, wrap the block in a transaction that
            commits on exit and rolls back on error.
        autocommit: With an engine, run each statement outside a transaction.
            Required for ``CREATE INDEX CONCURRENTLY``. Takes precedence over
            ``transactional``.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(insert_query, rows)

    Note:
        A caller-supplied AsyncConnection is yielded as is; the caller owns
        its transaction.
    """
    if isinstance(conn, AsyncEngine):
        if autocommit:
            async with conn.connect() as connection:
                connection = await connection.execution_options(isolation_level="AUTOCOMMIT")
                yield connection
        elif transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def quote_identifier(name: str) -> str:
    """
    Quote a table, column or index name for SQL text.

    Names come from record models and catalogs, never from document content,
    but embedded quotes are still doubled.
    """
    return '"' + name.replace('"', '""') + '"'
