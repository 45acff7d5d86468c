"""Transformers for the flat collections: devicestatus, settings, food and activity."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from docmigrate.transformers.base import BaseDocumentTransformer
from docmigrate.transformers.records import (
    ActivityRecord,
    DeviceStatusRecord,
    FoodRecord,
    SettingsRecord,
)


class DeviceStatusTransformer(BaseDocumentTransformer):
    """Keeps ``device`` as a column and every other field in ``additional_properties``."""

    collection_name = "devicestatus"
    table_name = "devicestatus"
    record_type = DeviceStatusRecord

    STANDARD_FIELDS = frozenset({"_id", "device", "created_at"})

    def _transform(self, document: Mapping[str, Any]) -> DeviceStatusRecord:
        original_id = self.source_id(document)
        return DeviceStatusRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            device=self.to_text(self.track(document, "device"), 255) or "",
            additional_properties=self.additional_properties(document, self.STANDARD_FIELDS),
            created_at=self.to_iso(document.get("created_at")),
        )

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if document.get("device") is None:
            warnings.append("DeviceStatus is missing device field")


class SettingsTransformer(BaseDocumentTransformer):
    collection_name = "settings"
    table_name = "settings"
    record_type = SettingsRecord

    def _transform(self, document: Mapping[str, Any]) -> SettingsRecord:
        original_id = self.source_id(document)
        return SettingsRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            key=self.to_text(self.track(document, "key"), 255) or "",
            value=self.to_json(document.get("value")),
            created_at=self.to_iso(document.get("created_at")),
        )

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if document.get("key") is None:
            warnings.append("Settings document is missing key field")


class FoodTransformer(BaseDocumentTransformer):
    """Nutrient values default to 0 when missing or not numeric."""

    collection_name = "food"
    table_name = "food"
    record_type = FoodRecord

    def _transform(self, document: Mapping[str, Any]) -> FoodRecord:
        original_id = self.source_id(document)
        return FoodRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            name=self.to_text(self.track(document, "name"), 255) or "",
            category=self.to_text(document.get("category"), 255) or "",
            subcategory=self.to_text(document.get("subcategory"), 255) or "",
            carbs=self._nutrient(document, "carbs"),
            protein=self._nutrient(document, "protein"),
            fat=self._nutrient(document, "fat"),
            energy=self._nutrient(document, "energy"),
            created_at=self.to_iso(document.get("created_at")),
        )

    def _nutrient(self, document: Mapping[str, Any], name: str) -> float:
        value = self.to_float(document.get(name))
        return value if value is not None else 0.0

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if document.get("name") is None:
            warnings.append("Food document is missing name field")


class ActivityTransformer(BaseDocumentTransformer):
    """Maps ``activityType`` to type and ``name`` to description."""

    collection_name = "activity"
    table_name = "activity"
    record_type = ActivityRecord

    def _transform(self, document: Mapping[str, Any]) -> ActivityRecord:
        original_id = self.source_id(document)
        return ActivityRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            type=self.to_text(self.track(document, "activityType"), 100),
            description=self.to_text(document.get("name"), 500),
            duration=self.to_float(document.get("duration")),
            created_at=self.to_iso(document.get("created_at")),
        )
