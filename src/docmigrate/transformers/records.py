"""
Target record models.

One frozen pydantic model per target table. Field names are the target
column names, and the field annotations double as the expected column
types for schema validation (see ``docmigrate.schema.expected``).

JSON columns are declared with the :data:`JsonValue` annotation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from functools import cache
from typing import Annotated, Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from docmigrate.serialization import json_dumps


class JsonColumn:
    """Annotation marker for JSON (jsonb) columns."""

    def __repr__(self) -> str:
        return "JsonColumn()"


JsonValue = Annotated[Any, JsonColumn()]
"""A JSON column: any JSON-compatible value, stored as serialized text."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TargetRecord(BaseModel):
    """
    Columns shared by every migrated table.

    Attributes:
        id: Primary key.
        original_id: Source ``_id`` as text. Rollback only touches rows
            that have one.
        created_at: Source creation time as ISO text (ms precision, Z suffix).
        sys_created_at: When the row was written.
        sys_updated_at: When the row was last written.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    table_name: ClassVar[str] = ""

    id: UUID
    original_id: str | None = None
    created_at: str | None = None
    sys_created_at: datetime = Field(default_factory=_utcnow)
    sys_updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def json_columns(cls) -> frozenset[str]:
        return _json_columns(cls)

    def to_row(self) -> dict[str, Any]:
        """
        Render the record as bind parameters.

        UUIDs become text and JSON columns become serialized JSON text.
        """
        json_columns = self.json_columns()
        row: dict[str, Any] = {}
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, UUID):
                value = str(value)
            elif name in json_columns and value is not None:
                value = json_dumps(value)
            row[name] = value
        return row


@cache
def _json_columns(record_type: type[TargetRecord]) -> frozenset[str]:
    return frozenset(
        name
        for name, info in record_type.model_fields.items()
        if any(isinstance(meta, JsonColumn) for meta in info.metadata)
    )


class EntryRecord(TargetRecord):
    """A glucose reading (``entries``)."""

    table_name: ClassVar[str] = "entries"

    mills: int
    date_string: str | None = None
    sgv: float | None = None
    direction: str = "NONE"
    device: str | None = None
    type: str = "sgv"
    filtered: float | None = None
    unfiltered: float | None = None
    rssi: int | None = None
    noise: int | None = None
    utc_offset: int | None = None
    delta: float | None = None


class TreatmentRecord(TargetRecord):
    """A care event (``treatments``)."""

    table_name: ClassVar[str] = "treatments"

    event_type: str | None = None
    mills: int
    insulin: float | None = None
    carbs: float | None = None
    duration: float | None = None
    glucose: float | None = None
    glucose_type: str | None = None
    units: str | None = None
    entered_by: str | None = None
    notes: str | None = None
    profile: str | None = None
    boluscalc: JsonValue = None
    additional_properties: JsonValue = None


class ProfileRecord(TargetRecord):
    """A therapy profile set (``profiles``)."""

    table_name: ClassVar[str] = "profiles"

    default_profile: str = "Default"
    units: str = "mg/dL"
    start_date: str | None = None
    store: JsonValue = None


class DeviceStatusRecord(TargetRecord):
    """A device status report (``devicestatus``)."""

    table_name: ClassVar[str] = "devicestatus"

    device: str = ""
    additional_properties: JsonValue = None


class SettingsRecord(TargetRecord):
    """A key/value setting (``settings``)."""

    table_name: ClassVar[str] = "settings"

    key: str = ""
    value: JsonValue = None


class FoodRecord(TargetRecord):
    """A food database entry (``food``)."""

    table_name: ClassVar[str] = "food"

    name: str = ""
    category: str = ""
    subcategory: str = ""
    carbs: float = 0.0
    protein: float = 0.0
    fat: float = 0.0
    energy: float = 0.0


class ActivityRecord(TargetRecord):
    """A logged activity (``activity``)."""

    table_name: ClassVar[str] = "activity"

    type: str | None = None
    description: str | None = None
    duration: float | None = None


RECORD_TYPES: tuple[type[TargetRecord], ...] = (
    EntryRecord,
    TreatmentRecord,
    ProfileRecord,
    DeviceStatusRecord,
    SettingsRecord,
    FoodRecord,
    ActivityRecord,
)


__all__ = [
    "ActivityRecord",
    "DeviceStatusRecord",
    "EntryRecord",
    "FoodRecord",
    "JsonColumn",
    "JsonValue",
    "ProfileRecord",
    "RECORD_TYPES",
    "SettingsRecord",
    "TargetRecord",
    "TreatmentRecord",
]
