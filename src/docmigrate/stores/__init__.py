"""
Store boundaries for the migration engine.

- SourceStore / MongoSourceStore: streaming reads from MongoDB (motor)
- TargetStore / PostgreSQLTargetStore: transactional writes (SQLAlchemy async)
- InMemorySourceStore / InMemoryTargetStore: test doubles
"""

from docmigrate.stores.in_memory import InMemorySourceStore, InMemoryTargetStore
from docmigrate.stores.source import (
    DEFAULT_SORT,
    Document,
    MongoSourceStore,
    SourceStore,
    and_filters,
    build_date_filter,
    build_seek_filter,
    build_source_filter,
    decode_sort_key,
    encode_sort_key,
    is_system_collection,
    sort_key_of,
)
from docmigrate.stores.target import (
    PostgreSQLTargetStore,
    Row,
    TargetStore,
    WriteOutcome,
    WriteResult,
    is_duplicate_key_error,
)

__all__ = [
    "DEFAULT_SORT",
    "Document",
    "InMemorySourceStore",
    "InMemoryTargetStore",
    "MongoSourceStore",
    "PostgreSQLTargetStore",
    "Row",
    "SourceStore",
    "TargetStore",
    "WriteOutcome",
    "WriteResult",
    "and_filters",
    "build_date_filter",
    "build_seek_filter",
    "build_source_filter",
    "decode_sort_key",
    "encode_sort_key",
    "is_duplicate_key_error",
    "is_system_collection",
    "sort_key_of",
]
