"""Serialization utilities for docmigrate."""

from docmigrate.serialization.json import (
    DocumentJSONEncoder,
    json_dumps,
    json_loads,
)

__all__ = [
    "DocumentJSONEncoder",
    "json_dumps",
    "json_loads",
]
