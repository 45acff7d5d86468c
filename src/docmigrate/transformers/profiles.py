"""Transformer for therapy profiles (``profiles``)."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from docmigrate.exceptions import TransformationError
from docmigrate.transformers.base import BaseDocumentTransformer, format_iso_ms
from docmigrate.transformers.records import ProfileRecord

SCHEDULE_FIELDS = ("basal", "carbratio", "sens", "target_low", "target_high")

REQUIRED_PROFILE_FIELDS = ("dia", "carbratio", "sens", "basal")

VALID_UNITS = frozenset({"mg/dl", "mmol/l", "mmol"})

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def seconds_to_clock(seconds: int) -> str:
    """Render seconds after midnight as ``HH:MM``."""
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}"


def clock_to_seconds(clock: str) -> int | None:
    match = _CLOCK_RE.match(clock.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds or 0)


class ProfileTransformer(BaseDocumentTransformer):
    """
    Transforms Nightscout ``profiles`` documents.

    Every profile in ``store`` is normalized: scalar settings get defaults
    and each time schedule becomes a list of ``{time, value, timeAsSeconds}``
    entries.
    """

    collection_name = "profiles"
    table_name = "profiles"
    record_type = ProfileRecord

    def _transform(self, document: Mapping[str, Any]) -> ProfileRecord:
        original_id = self.source_id(document)
        return ProfileRecord(
            id=self.record_id(original_id),
            original_id=original_id,
            default_profile=self.to_text(document.get("defaultProfile"), 255) or "Default",
            units=self.to_text(document.get("units"), 10) or "mg/dL",
            start_date=self._start_date(document),
            store=self._store(document),
            created_at=self.to_iso(document.get("created_at")),
        )

    def _start_date(self, document: Mapping[str, Any]) -> str:
        for name in ("startDate", "created_at", "mills"):
            value = document.get(name)
            if value is None:
                continue
            converted = self.to_iso(value)
            self.statistics.record_field(name, value, converted is not None)
            if converted is not None:
                return converted
        self.statistics.record_warning()
        return format_iso_ms(datetime.now(UTC))

    def _store(self, document: Mapping[str, Any]) -> dict[str, Any] | None:
        store = self.track(document, "store")
        if store is None:
            return None
        if not isinstance(store, Mapping):
            raise TransformationError(
                f"Profile store must be a document, got {type(store).__name__}",
                collection=self.collection_name,
            )
        return {
            str(name): self._normalize_profile(data) if isinstance(data, Mapping) else self.to_plain(data, 1)
            for name, data in store.items()
        }

    def _normalize_profile(self, profile: Mapping[str, Any]) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        if "dia" in profile:
            dia = self.to_float(profile["dia"])
            normalized["dia"] = dia if dia is not None else 3.0
        if "carbs_hr" in profile:
            carbs_hr = self.to_int(profile["carbs_hr"])
            normalized["carbs_hr"] = carbs_hr if carbs_hr is not None else 20
        if "delay" in profile:
            delay = self.to_int(profile["delay"])
            normalized["delay"] = delay if delay is not None else 20
        if "timezone" in profile:
            normalized["timezone"] = self.to_text(profile["timezone"]) or "UTC"

        for name in SCHEDULE_FIELDS:
            if name in profile:
                normalized[name] = self._normalize_schedule(profile[name])

        for name, value in profile.items():
            if name not in normalized:
                normalized[name] = self.to_plain(value, 2)
        return normalized

    def _normalize_schedule(self, schedule: Any) -> Any:
        if not isinstance(schedule, (list, tuple)):
            return self.to_plain(schedule, 2)
        entries = []
        for item in schedule:
            if not isinstance(item, Mapping):
                continue
            entry: dict[str, Any] = {}
            seconds = self._entry_seconds(item)
            if seconds is not None:
                entry["time"] = seconds_to_clock(seconds)
                entry["timeAsSeconds"] = seconds
            elif "time" in item:
                entry["time"] = self.to_text(item["time"])
            if "value" in item:
                entry["value"] = self.to_float(item["value"])
            for name, value in item.items():
                if name not in ("time", "timeAsSeconds", "value"):
                    entry[name] = self.to_plain(value, 3)
            entries.append(entry)
        return entries

    def _entry_seconds(self, item: Mapping[str, Any]) -> int | None:
        if "timeAsSeconds" in item:
            seconds = self.to_int(item["timeAsSeconds"])
            if seconds is not None:
                return seconds
        time_value = item.get("time")
        if time_value is None:
            return None
        text = str(time_value)
        if text.isdigit():
            return int(text)
        return clock_to_seconds(text)

    def _validate(
        self,
        document: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        store = document.get("store")
        if store is None:
            errors.append("Profile is missing store field")
            suggested_fixes.append("Ensure profile contains a valid store object")
        elif not isinstance(store, Mapping):
            errors.append("Profile store is not a valid document structure")
            suggested_fixes.append("Ensure profile store is properly structured as an object")
        elif not store:
            errors.append("Profile store is empty")
            suggested_fixes.append("Profile store must contain at least one profile")
        else:
            for name, profile in store.items():
                self._validate_profile(str(name), profile, warnings, suggested_fixes)

        if document.get("defaultProfile") is None:
            warnings.append("Profile is missing defaultProfile field")
            suggested_fixes.append("Specify defaultProfile to indicate which profile is active")

        units = document.get("units")
        if units is not None and str(units).lower() not in VALID_UNITS:
            warnings.append(f"Invalid units value: {units}")
            suggested_fixes.append("Use 'mg/dL' or 'mmol/L' for units")

        if all(document.get(name) is None for name in ("startDate", "created_at", "mills")):
            warnings.append("No valid timestamp found")
            suggested_fixes.append("Include startDate or created_at for proper profile timing")

    def _validate_profile(
        self,
        name: str,
        profile: Any,
        warnings: list[str],
        suggested_fixes: list[str],
    ) -> None:
        if not isinstance(profile, Mapping):
            warnings.append(f"Profile '{name}' is not a valid document structure")
            return

        for field_name in REQUIRED_PROFILE_FIELDS:
            if profile.get(field_name) is None:
                warnings.append(f"Profile '{name}' is missing required field: {field_name}")
                suggested_fixes.append(f"Add {field_name} field to profile '{name}'")

        dia = self.to_float(profile.get("dia"))
        if dia is not None and not 1 <= dia <= 10:
            warnings.append(f"Profile '{name}' has unusual DIA value: {dia}")
            suggested_fixes.append("DIA should typically be between 1-10 hours")

        for field_name in ("basal", "carbratio", "sens"):
            schedule = profile.get(field_name)
            if schedule is None:
                continue
            if not isinstance(schedule, (list, tuple)):
                warnings.append(f"Profile '{name}' field '{field_name}' should be an array")
            elif not schedule:
                warnings.append(f"Profile '{name}' field '{field_name}' is empty")
                suggested_fixes.append(f"Add at least one entry to {field_name} array")
