"""Transformer for care events (``treatments``)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from docmigrate.transformers.base import BaseDocumentTransformer, format_iso_ms, from_millis, to_millis
from docmigrate.transformers.records import TreatmentRecord

KNOWN_FIELDS = frozenset(
    {
        "_id",
        "eventType",
        "mills",
        "date",
        "created_at",
        "insulin",
        "carbs",
        "duration",
        "glucose",
        "glucoseType",
        "units",
        "enteredBy",
        "notes",
        "profile",
        "boluscalc",
    }
)


class TreatmentTransformer(BaseDocumentTransformer):
    """
    Transforms Nightscout ``treatments`` documents.

    The event time comes from ``mills``, ``date`` or ``created_at``, in that
    order. ``boluscalc`` is kept as JSON, and every unmapped field goes to
    ``additional_properties``.
    """

    collection_name = "treatments"
    table_name = "treatments"
    record_type = TreatmentRecord

    def _transform(self, document: Mapping[str, Any]) -> TreatmentRecord:
        original_id = self.source_id(document)
        mills = self._timestamp(document)
        return TreatmentRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            event_type=self.to_text(self.track(document, "eventType"), 255),
            mills=mills,
            insulin=self.to_float(self.track(document, "insulin")),
            carbs=self.to_float(self.track(document, "carbs")),
            duration=self.to_float(document.get("duration")),
            glucose=self.to_float(document.get("glucose")),
            glucose_type=self.to_text(document.get("glucoseType"), 50),
            units=self.to_text(document.get("units"), 10),
            entered_by=self.to_text(document.get("enteredBy"), 255),
            notes=self.to_text(document.get("notes")),
            profile=self.to_text(document.get("profile"), 255),
            boluscalc=self.to_json(document.get("boluscalc")),
            additional_properties=self.additional_properties(document, KNOWN_FIELDS),
            created_at=self.to_iso(document.get("created_at")) or format_iso_ms(from_millis(mills)),
        )

    def _timestamp(self, document: Mapping[str, Any]) -> int:
        mills = document.get("mills")
        if isinstance(mills, int) and not isinstance(mills, bool):
            return int(mills)
        for name in ("mills", "date", "created_at"):
            converted = self.to_datetime(document.get(name))
            if converted is not None:
                return to_millis(converted)
        self.statistics.record_warning()
        return to_millis(datetime.now(UTC))

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if document.get("eventType") is None:
            warnings.append("Treatment is missing eventType field")
            suggested_fixes.append("Set eventType, e.g. 'Meal Bolus' or 'Correction Bolus'")

        if all(document.get(name) is None for name in ("mills", "date", "created_at")):
            warnings.append("No valid timestamp found (mills, date, or created_at)")

        for name in ("insulin", "carbs"):
            value = document.get(name)
            if value is not None and self.to_float(value) is None:
                errors.append(f"Field '{name}' is not numeric: {value!r}")
                suggested_fixes.append(f"Store {name} as a number")

        insulin = self.to_float(document.get("insulin"))
        if insulin is not None and insulin < 0:
            warnings.append(f"Negative insulin value: {insulin}")
