"""
Base class and shared helpers for document transformers.

A transformer turns one source document (a plain ordered dict) into one
target record. Transformers are pure with respect to the document; the only
state they carry is their running TransformationStatistics, which is guarded
by a lock so one transformer can serve several collection workers.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from bson import Binary, Decimal128, ObjectId

from docmigrate.exceptions import TransformationError
from docmigrate.models import TransformationOptions
from docmigrate.transformers.records import TargetRecord

logger = logging.getLogger(__name__)

MILLISECONDS_THRESHOLD = 1_000_000_000_000
"""Epoch values above this are milliseconds, at or below are seconds."""

ISO_MS_FORMAT = "%Y-%m-%dT%H:%M:%S"


class ValueKind(Enum):
    """Closed classification of source values."""

    STRING = "string"
    """Text."""

    NUMBER = "number"
    """Integer, float, or decimal."""

    BOOLEAN = "boolean"
    """True or false."""

    DATE = "date"
    """datetime or date."""

    OBJECT = "object"
    """Embedded document."""

    ARRAY = "array"
    """List of values."""

    NULL = "null"
    """Explicit null."""

    OBJECT_ID = "objectId"
    """BSON ObjectId."""

    BINARY = "binary"
    """bytes or BSON Binary."""

    OTHER = "other"
    """Anything else (regex, timestamp, min/max key)."""


def value_kind(value: Any) -> ValueKind:
    """
    Classify a source value.

    Example:
        >>> value_kind(120)
        <ValueKind.NUMBER: 'number'>
        >>> value_kind(True)
        <ValueKind.BOOLEAN: 'boolean'>
    """
    if value is None:
        return ValueKind.NULL
    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float, Decimal, Decimal128)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (datetime, date)):
        return ValueKind.DATE
    if isinstance(value, ObjectId):
        return ValueKind.OBJECT_ID
    if isinstance(value, Mapping):
        return ValueKind.OBJECT
    if isinstance(value, (bytes, bytearray, Binary)):
        return ValueKind.BINARY
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.OTHER


def format_iso_ms(value: datetime) -> str:
    """Render a datetime as UTC ISO text with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return f"{value.strftime(ISO_MS_FORMAT)}.{value.microsecond // 1000:03d}Z"


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


# =============================================================================
# Statistics
# =============================================================================


@dataclass
class FieldStatistics:
    """
    Observations for one source field.

    Attributes:
        field_name: Source field name.
        present: Documents where the field held a non-null value.
        missing: Documents without the field.
        null: Documents where the field was null.
        failed: Documents where converting the field failed.
        kinds: Observed value kinds of present values.
    """

    field_name: str
    present: int = 0
    missing: int = 0
    null: int = 0
    failed: int = 0
    kinds: Counter[ValueKind] = field(default_factory=Counter)

    def most_common_kinds(self, n: int | None = None) -> list[tuple[ValueKind, int]]:
        """Observed kinds ordered by frequency."""
        return self.kinds.most_common(n)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_name": self.field_name,
            "present": self.present,
            "missing": self.missing,
            "null": self.null,
            "failed": self.failed,
            "kinds": {kind.value: count for kind, count in self.kinds.items()},
        }


class TransformationStatistics:
    """
    Running transformation counters for one collection.

    All mutation goes through methods that hold an internal
    ``threading.Lock``; :meth:`to_dict` returns a consistent copy.
    """

    def __init__(self, collection_name: str) -> None:
        self.collection_name = collection_name
        self.total_processed = 0
        self.successful = 0
        self.failed = 0
        self.with_warnings = 0
        self.common_errors: Counter[str] = Counter()
        self.field_stats: dict[str, FieldStatistics] = {}
        self._lock = threading.Lock()

    def _field(self, name: str) -> FieldStatistics:
        stats = self.field_stats.get(name)
        if stats is None:
            stats = self.field_stats[name] = FieldStatistics(name)
        return stats

    def record_field(self, name: str, value: Any, succeeded: bool = True) -> None:
        with self._lock:
            stats = self._field(name)
            if value is None:
                stats.null += 1
            else:
                stats.present += 1
                stats.kinds[value_kind(value)] += 1
            if not succeeded:
                stats.failed += 1

    def record_missing(self, name: str) -> None:
        with self._lock:
            self._field(name).missing += 1

    def record_success(self) -> None:
        with self._lock:
            self.total_processed += 1
            self.successful += 1

    def record_failure(self, error: str) -> None:
        with self._lock:
            self.total_processed += 1
            self.failed += 1
            self.common_errors[error] += 1

    def record_warning(self) -> None:
        with self._lock:
            self.with_warnings += 1

    def most_common_kinds(self, field_name: str, n: int | None = None) -> list[tuple[ValueKind, int]]:
        with self._lock:
            stats = self.field_stats.get(field_name)
            return stats.most_common_kinds(n) if stats else []

    @property
    def success_rate(self) -> float:
        """Percentage of processed documents that transformed, 0 when none were processed."""
        if self.total_processed == 0:
            return 0.0
        return self.successful / self.total_processed * 100

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "collection_name": self.collection_name,
                "total_processed": self.total_processed,
                "successful": self.successful,
                "failed": self.failed,
                "with_warnings": self.with_warnings,
                "common_errors": dict(self.common_errors),
                "field_stats": {name: s.to_dict() for name, s in self.field_stats.items()},
            }


@dataclass(frozen=True)
class TransformationValidationResult:
    """
    Outcome of validating one source document against a transformer.

    Warnings and suggested fixes never make the document invalid.
    """

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    suggested_fixes: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @classmethod
    def from_lists(
        cls,
        errors: Iterable[str] = (),
        warnings: Iterable[str] = (),
        suggested_fixes: Iterable[str] = (),
    ) -> TransformationValidationResult:
        return cls(tuple(errors), tuple(warnings), tuple(suggested_fixes))


# =============================================================================
# Base transformer
# =============================================================================


class BaseDocumentTransformer(ABC):
    """
    Base class for per-collection transformers.

    Subclasses set the class attributes and implement :meth:`_transform` and
    :meth:`_validate`. The public :meth:`transform` wraps conversion errors
    in TransformationError and keeps the statistics.

    Class attributes:
        collection_name: Source collection handled by the transformer.
        table_name: Target table the records are written to.
        record_type: The pydantic record model produced.
    """

    collection_name: ClassVar[str]
    table_name: ClassVar[str]
    record_type: ClassVar[type[TargetRecord]]

    def __init__(self, options: TransformationOptions | None = None) -> None:
        self.options = options or TransformationOptions()
        self.statistics = TransformationStatistics(self.collection_name)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def transform(self, document: Mapping[str, Any]) -> TargetRecord:
        """
        Transform one source document into a target record.

        Raises:
            TransformationError: If the document shape is incompatible.
        """
        document_id = self.source_id(document) if isinstance(document, Mapping) else None
        try:
            if not isinstance(document, Mapping):
                raise TransformationError(
                    f"Expected a document, got {type(document).__name__}",
                    collection=self.collection_name,
                )
            record = self._transform(document)
        except TransformationError as e:
            self.statistics.record_failure(e.message)
            if e.document_id is None:
                e.document_id = document_id
            raise
        except (ValueError, TypeError, ArithmeticError) as e:
            self.statistics.record_failure(str(e))
            logger.debug(
                "Transforming %s document %s failed: %s", self.collection_name, document_id, e
            )
            raise TransformationError(
                f"Failed to transform {self.collection_name} document: {e}",
                collection=self.collection_name,
                document_id=document_id,
            ) from e
        self.statistics.record_success()
        return record

    def validate(self, document: Mapping[str, Any]) -> TransformationValidationResult:
        """Check a source document without transforming it."""
        if not isinstance(document, Mapping):
            return TransformationValidationResult.from_lists(
                errors=[f"Expected a document, got {type(document).__name__}"],
            )
        errors: list[str] = []
        warnings: list[str] = []
        fixes: list[str] = []
        if "_id" not in document:
            errors.append("Document is missing required _id field")
            fixes.append(f"Ensure all {self.collection_name} documents have a valid ObjectId")
        self._validate(document, errors, warnings, fixes)
        return TransformationValidationResult.from_lists(errors, warnings, fixes)

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _transform(self, document: Mapping[str, Any]) -> TargetRecord:
        ...

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        return None

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @staticmethod
    def source_id(document: Mapping[str, Any]) -> str | None:
        """The source ``_id`` as text, truncated to ObjectId length."""
        value = document.get("_id")
        if value is None:
            return None
        return str(value)[:24]

    def record_id(self, original_id: str | None) -> UUID:
        """
        Target primary key for a source id.

        With ``preserve_original_ids`` an ObjectId maps to a UUID made of its
        12 bytes followed by 4 zero bytes, so reruns produce the same key.
        Any other id gets a random UUID.
        """
        if self.options.preserve_original_ids and original_id and ObjectId.is_valid(original_id):
            return UUID(bytes=ObjectId(original_id).binary + b"\x00" * 4)
        return uuid.uuid4()

    # -------------------------------------------------------------------------
    # Conversions
    # -------------------------------------------------------------------------

    @staticmethod
    def to_datetime(value: Any, default: datetime | None = None) -> datetime | None:
        """
        Convert epoch numbers, datetimes and ISO strings to an aware UTC datetime.

        Integers above 1e12 are milliseconds, otherwise seconds. Values that
        cannot be converted return ``default``.
        """
        if value is None or isinstance(value, bool):
            return default
        try:
            if isinstance(value, Decimal128):
                value = value.to_decimal()
            if isinstance(value, (int, float, Decimal)):
                if value <= 0:
                    return default
                seconds = float(value) / 1000 if value > MILLISECONDS_THRESHOLD else float(value)
                return datetime.fromtimestamp(seconds, tz=UTC)
            if isinstance(value, datetime):
                return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day, tzinfo=UTC)
            if isinstance(value, str):
                text = value.strip()
                if text.endswith("Z"):
                    text = text[:-1] + "+00:00"
                parsed = datetime.fromisoformat(text)
                return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)
        except (ValueError, OverflowError, OSError, InvalidOperation):
            return default
        return default

    def to_iso(self, value: Any) -> str | None:
        converted = self.to_datetime(value)
        return format_iso_ms(converted) if converted else None

    @staticmethod
    def to_float(value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, Decimal128):
            return float(value.to_decimal())
        if isinstance(value, (int, float, Decimal)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return None
        return None

    @staticmethod
    def to_int(value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return int(value)
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                return None
        return None

    @staticmethod
    def to_text(value: Any, max_length: int | None = None) -> str | None:
        if value is None:
            return None
        text = format_iso_ms(value) if isinstance(value, datetime) else str(value)
        if max_length is not None and len(text) > max_length:
            text = text[:max_length]
        return text

    def to_plain(self, value: Any, depth: int = 0) -> Any:
        """
        Convert a source value to JSON-compatible data.

        Values nested deeper than ``max_nesting_depth`` are rendered as text.
        """
        if depth > self.options.max_nesting_depth:
            return str(value)
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, Mapping):
            return {str(k): self.to_plain(v, depth + 1) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.to_plain(item, depth + 1) for item in value]
        if isinstance(value, datetime):
            return format_iso_ms(value)
        if isinstance(value, Decimal128):
            return float(value.to_decimal())
        if isinstance(value, Decimal):
            return float(value)
        return str(value)

    def to_json(self, value: Any) -> Any:
        """JSON column value: plain data, or None for a missing value."""
        if value is None:
            return None
        return self.to_plain(value)

    def filter_nulls(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        if self.options.preserve_null_properties:
            return dict(properties)
        return {k: v for k, v in properties.items() if v is not None}

    def additional_properties(
        self,
        document: Mapping[str, Any],
        known_fields: Iterable[str],
    ) -> dict[str, Any] | None:
        """
        Collect fields the transformer does not map into a JSON bag.

        Returns None when nothing is left after null filtering.
        """
        known = set(known_fields)
        extra = {
            name: self.to_plain(value, 1)
            for name, value in document.items()
            if name not in known
        }
        filtered = self.filter_nulls(extra)
        return filtered or None

    # -------------------------------------------------------------------------
    # Statistics helpers
    # -------------------------------------------------------------------------

    def track(self, document: Mapping[str, Any], name: str, succeeded: bool = True) -> Any:
        """Record field statistics and return the raw value (None when missing)."""
        if name not in document:
            self.statistics.record_missing(name)
            return None
        value = document[name]
        self.statistics.record_field(name, value, succeeded)
        return value


__all__ = [
    "BaseDocumentTransformer",
    "FieldStatistics",
    "MILLISECONDS_THRESHOLD",
    "TransformationStatistics",
    "TransformationValidationResult",
    "ValueKind",
    "format_iso_ms",
    "from_millis",
    "to_millis",
    "value_kind",
]
