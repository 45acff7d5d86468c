"""
SQL definitions for the migration-tracking tables.

The engine never creates base tables; these two tables are the only schema
objects it owns:

Tables:
    - migration_checkpoints: progress markers and rollback points
    - migration_logs: durable run log used by status lookups and recovery

Supported backends:
    - postgresql (default)
    - sqlite (tests and local experiments)

Usage:
    from docmigrate.schema import get_schema, iter_statements

    for statement in iter_statements(get_schema("checkpoints")):
        await conn.execute(text(statement))
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Literal

SchemaName = Literal["checkpoints", "logs"]

BackendName = Literal["postgresql", "sqlite"]

TRACKING_TABLES: dict[SchemaName, str] = {
    "checkpoints": "migration_checkpoints",
    "logs": "migration_logs",
}

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def _templates_dir(backend: BackendName) -> Path:
    if backend == "postgresql":
        return _TEMPLATES_DIR
    return _TEMPLATES_DIR / backend


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    Load the DDL for a tracking table.

    Args:
        name: ``"checkpoints"`` or ``"logs"``.
        backend: ``"postgresql"`` (default) or ``"sqlite"``.

    Raises:
        FileNotFoundError: If no template exists for the name and backend.

    Example:
        >>> sql = get_schema("checkpoints")
        >>> "migration_checkpoints" in sql
        True
    """
    path = _templates_dir(backend) / f"{name}.sql"
    if not path.exists():
        raise FileNotFoundError(f"Schema template not found: {path}")
    return path.read_text()


def get_drop_statement(name: SchemaName) -> str:
    """DDL dropping a tracking table."""
    return f"DROP TABLE IF EXISTS {TRACKING_TABLES[name]}"


def iter_statements(sql: str) -> Iterator[str]:
    """
    Split a schema script into single statements.

    asyncpg executes one statement per prepared query, so scripts are run
    statement by statement. Comment lines are dropped.
    """
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    for statement in "\n".join(lines).split(";"):
        statement = statement.strip()
        if statement:
            yield statement


def backend_for_dialect(dialect_name: str) -> BackendName:
    """Map a SQLAlchemy dialect name to a schema backend."""
    return "sqlite" if dialect_name == "sqlite" else "postgresql"


__all__ = [
    "BackendName",
    "SchemaName",
    "TRACKING_TABLES",
    "backend_for_dialect",
    "get_drop_statement",
    "get_schema",
    "iter_statements",
]
