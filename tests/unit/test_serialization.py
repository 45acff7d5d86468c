"""
Unit tests for JSON serialization of source-document values.

Tests cover:
- BSON scalar types (ObjectId, Decimal128, binary)
- UUIDs, datetimes, Decimals and sets
- Rejection of unknown types
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID

import pytest
from bson import ObjectId
from bson.decimal128 import Decimal128

from docmigrate.serialization import json_dumps, json_loads


class TestJsonDumps:
    """Tests for json_dumps with DocumentJSONEncoder."""

    def test_bson_values(self) -> None:
        document = {
            "_id": ObjectId("5f1d7a3e9c1b2a0012345678"),
            "insulin": Decimal128("1.25"),
            "raw": b"\x00\x01",
        }

        assert json_loads(json_dumps(document)) == {
            "_id": "5f1d7a3e9c1b2a0012345678",
            "insulin": 1.25,
            "raw": "AAE=",
        }

    def test_standard_library_values(self) -> None:
        value = {
            "id": UUID("12345678-1234-5678-1234-567812345678"),
            "at": datetime(2024, 1, 1, 8, 30, tzinfo=UTC),
            "day": date(2024, 1, 2),
            "carbs": Decimal("12.5"),
            "tags": {"b", "a"},
        }

        assert json_loads(json_dumps(value)) == {
            "id": "12345678-1234-5678-1234-567812345678",
            "at": "2024-01-01T08:30:00+00:00",
            "day": "2024-01-02",
            "carbs": 12.5,
            "tags": ["a", "b"],
        }

    def test_unknown_types_are_rejected(self) -> None:
        with pytest.raises(TypeError):
            json_dumps({"value": object()})

    def test_loads_accepts_bytes(self) -> None:
        assert json_loads(b'{"sgv": 120}') == {"sgv": 120}
