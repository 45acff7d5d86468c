"""Transformer for glucose readings (``entries``)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from docmigrate.transformers.base import BaseDocumentTransformer, format_iso_ms, from_millis, to_millis
from docmigrate.transformers.records import EntryRecord

MMOL_TO_MGDL = 18.0182

DIRECTION_CODES = {
    1: "TripleUp",
    2: "DoubleUp",
    3: "SingleUp",
    4: "FortyFiveUp",
    5: "Flat",
    6: "FortyFiveDown",
    7: "SingleDown",
    8: "DoubleDown",
    9: "TripleDown",
}

_DIRECTION_ALIASES = {
    "NONE": "NONE",
    "0": "NONE",
    "TRIPLEUP": "TripleUp",
    "TRIPLE UP": "TripleUp",
    "DOUBLEUP": "DoubleUp",
    "DOUBLE UP": "DoubleUp",
    "SINGLEUP": "SingleUp",
    "SINGLE UP": "SingleUp",
    "FORTYFIVEUP": "FortyFiveUp",
    "FORTY FIVE UP": "FortyFiveUp",
    "45UP": "FortyFiveUp",
    "FLAT": "Flat",
    "FORTYFIVEDOWN": "FortyFiveDown",
    "FORTY FIVE DOWN": "FortyFiveDown",
    "45DOWN": "FortyFiveDown",
    "SINGLEDOWN": "SingleDown",
    "SINGLE DOWN": "SingleDown",
    "DOUBLEDOWN": "DoubleDown",
    "DOUBLE DOWN": "DoubleDown",
    "TRIPLEDOWN": "TripleDown",
    "TRIPLE DOWN": "TripleDown",
    "NOT COMPUTABLE": "NOT COMPUTABLE",
    "RATE OUT OF RANGE": "RATE OUT OF RANGE",
    "CGM ERROR": "CGM ERROR",
}

VALID_DIRECTIONS = frozenset(name.upper() for name in _DIRECTION_ALIASES.values())


def normalize_direction(value: Any) -> str:
    """
    Normalize a trend direction.

    Numeric codes 1 to 9 map to TripleUp through TripleDown. Known spellings
    map to their canonical name. Unknown text is kept as is.

    Example:
        >>> normalize_direction(5)
        'Flat'
        >>> normalize_direction("single up")
        'SingleUp'
    """
    if value is None or value == "":
        return "NONE"
    text = str(value).strip()
    try:
        return DIRECTION_CODES.get(int(text), "NONE")
    except ValueError:
        pass
    return _DIRECTION_ALIASES.get(text.upper(), text)


class EntryTransformer(BaseDocumentTransformer):
    """
    Transforms Nightscout ``entries`` documents.

    Timestamp priority is ``mills``, ``date``, ``dateString``, then the
    current time with a warning. Glucose priority is ``sgv``, ``mgdl``, then
    ``mmol`` converted to mg/dL.
    """

    collection_name = "entries"
    table_name = "entries"
    record_type = EntryRecord

    def _transform(self, document: Mapping[str, Any]) -> EntryRecord:
        original_id = self.source_id(document)
        mills = self._timestamp(document)

        date_string = document.get("dateString")
        if isinstance(date_string, str):
            date_string = self.to_text(date_string, 50)
        else:
            date_string = format_iso_ms(from_millis(mills))

        return EntryRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            mills=mills,
            date_string=date_string,
            sgv=self._glucose(document),
            direction=self._direction(document),
            device=self.to_text(document.get("device"), 255),
            type=self.to_text(document.get("type"), 50) or "sgv",
            filtered=self.to_float(document.get("filtered")),
            unfiltered=self.to_float(document.get("unfiltered")),
            rssi=self.to_int(document.get("rssi")),
            noise=self.to_int(document.get("noise")),
            utc_offset=self.to_int(document.get("utcOffset")),
            delta=self.to_float(document.get("delta")),
            created_at=self.to_iso(document.get("created_at")) or format_iso_ms(from_millis(mills)),
        )

    def _timestamp(self, document: Mapping[str, Any]) -> int:
        mills = document.get("mills")
        if isinstance(mills, int) and not isinstance(mills, bool):
            self.statistics.record_field("mills", mills)
            return int(mills)

        for name in ("date", "dateString"):
            value = document.get(name)
            if value is None or (name == "dateString" and not isinstance(value, str)):
                continue
            converted = self.to_datetime(value)
            self.statistics.record_field(name, value, converted is not None)
            if converted is not None:
                return to_millis(converted)

        self.statistics.record_warning()
        return to_millis(datetime.now(UTC))

    def _glucose(self, document: Mapping[str, Any]) -> float | None:
        for name in ("sgv", "mgdl"):
            value = document.get(name)
            if value is not None:
                converted = self.to_float(value)
                self.statistics.record_field(name, value, converted is not None)
                return converted

        mmol = document.get("mmol")
        if mmol is not None:
            converted = self.to_float(mmol)
            self.statistics.record_field("mmol", mmol, converted is not None)
            return converted * MMOL_TO_MGDL if converted is not None else None

        self.statistics.record_missing("glucose_values")
        return None

    def _direction(self, document: Mapping[str, Any]) -> str:
        value = self.track(document, "direction")
        return normalize_direction(value)

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if all(document.get(name) is None for name in ("sgv", "mgdl", "mmol")):
            warnings.append("No glucose value found (sgv, mgdl, or mmol)")
            suggested_fixes.append("Ensure entry documents contain at least one glucose reading")

        if all(document.get(name) is None for name in ("date", "mills", "dateString")):
            errors.append("No valid timestamp found (date, mills, or dateString)")
            suggested_fixes.append("Ensure entry documents contain valid timestamp information")

        direction = document.get("direction")
        if direction is not None and str(direction).upper() not in VALID_DIRECTIONS:
            warnings.append(f"Invalid direction value: {direction}")
            suggested_fixes.append(
                "Use standard Nightscout direction values: Flat, SingleUp, DoubleUp, etc."
            )

        sgv = self.to_float(document.get("sgv"))
        if sgv is not None and not 0 <= sgv <= 1000:
            warnings.append(f"SGV value {sgv} is outside normal range (0-1000 mg/dL)")

        delta = self.to_float(document.get("delta"))
        if delta is not None and abs(delta) > 100:
            warnings.append(f"Delta value {delta} seems unusually large (>100 mg/dL change)")
