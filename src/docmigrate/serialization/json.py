"""
JSON serialization for source-document values.

MongoDB documents carry BSON types (ObjectId, Decimal128, datetimes, binary)
that the standard JSON encoder rejects. These helpers are used for JSON
target columns, checkpoint metadata, and backup metadata sidecars.

Example:
    >>> from bson import ObjectId
    >>> json_dumps({"_id": ObjectId("5f1d7a3e9c1b2a0012345678")})
    '{"_id": "5f1d7a3e9c1b2a0012345678"}'
"""

import base64
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from bson import ObjectId
from bson.decimal128 import Decimal128


class DocumentJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for UUIDs, datetimes and BSON scalar types.

    - UUID and ObjectId: string representation
    - datetime and date: ISO 8601 string
    - Decimal128 and Decimal: float
    - bytes: base64 string
    - set and frozenset: sorted list
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (UUID, ObjectId)):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal128):
            return float(obj.to_decimal())
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, bytes):
            return base64.b64encode(obj).decode("ascii")
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize an object to a JSON string using DocumentJSONEncoder."""
    return json.dumps(obj, cls=DocumentJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string.

    UUID and datetime strings are not converted back to their original types.
    """
    return json.loads(s)


__all__ = [
    "DocumentJSONEncoder",
    "json_dumps",
    "json_loads",
]
