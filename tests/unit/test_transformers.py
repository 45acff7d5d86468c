"""
Unit tests for document transformers and TransformationService.

Tests cover:
- Direction normalization and glucose unit conversion for entries
- Timestamp priority and defaults
- Deterministic record ids derived from ObjectIds
- Unmapped fields kept as additional properties
- Profile schedule normalization
- Registry lookups, batch validation and statistics
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from uuid import UUID

import pytest
from bson import ObjectId

from docmigrate.exceptions import TransformationError, UnsupportedCollectionError
from docmigrate.models import TransformationOptions
from docmigrate.serialization import json_loads
from docmigrate.transformers import (
    EntryTransformer,
    FoodTransformer,
    ProfileTransformer,
    TransformationService,
    TreatmentTransformer,
    ValueKind,
    format_iso_ms,
    normalize_direction,
    value_kind,
)
from docmigrate.transformers.base import BaseDocumentTransformer
from docmigrate.transformers.entries import MMOL_TO_MGDL

EntryFactory = Callable[..., dict[str, Any]]

OID = ObjectId("65920080a1b2c3d4e5f60718")
MILLS = 1_704_067_200_000


class TestHelpers:
    """Tests for value classification and formatting helpers."""

    @pytest.mark.parametrize(
        ("value", "kind"),
        [
            (None, ValueKind.NULL),
            (True, ValueKind.BOOLEAN),
            (120, ValueKind.NUMBER),
            (5.5, ValueKind.NUMBER),
            ("Flat", ValueKind.STRING),
            (OID, ValueKind.OBJECT_ID),
            ({"a": 1}, ValueKind.OBJECT),
            ([1, 2], ValueKind.ARRAY),
            (b"\x00", ValueKind.BINARY),
        ],
    )
    def test_value_kind(self, value: Any, kind: ValueKind) -> None:
        assert value_kind(value) == kind

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (5, "Flat"),
            ("1", "TripleUp"),
            (9, "TripleDown"),
            (0, "NONE"),
            (None, "NONE"),
            ("", "NONE"),
            ("single up", "SingleUp"),
            ("DOUBLEDOWN", "DoubleDown"),
            ("45up", "FortyFiveUp"),
            ("Sideways", "Sideways"),
        ],
    )
    def test_normalize_direction(self, value: Any, expected: str) -> None:
        assert normalize_direction(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (MILLS, MILLS),
            (MILLS // 1000, MILLS),
            ("2024-01-01T00:00:00Z", MILLS),
            ("2024-01-01T01:00:00+01:00", MILLS),
        ],
    )
    def test_to_datetime_accepts_epochs_and_iso_text(self, value: Any, expected: int) -> None:
        """Test that values above 1e12 are milliseconds and smaller ones seconds."""
        converted = BaseDocumentTransformer.to_datetime(value)
        assert converted is not None
        assert int(converted.timestamp() * 1000) == expected

    @pytest.mark.parametrize("value", [None, True, 0, -5, "not a date"])
    def test_to_datetime_returns_default(self, value: Any) -> None:
        assert BaseDocumentTransformer.to_datetime(value) is None

    def test_format_iso_ms(self) -> None:
        converted = BaseDocumentTransformer.to_datetime(MILLS + 123)
        assert converted is not None
        assert format_iso_ms(converted) == "2024-01-01T00:00:00.123Z"


class TestEntryTransformer:
    """Tests for EntryTransformer."""

    def test_basic_entry(self) -> None:
        record = EntryTransformer().transform(
            {"_id": OID, "sgv": 120, "mills": MILLS, "direction": "Flat", "device": "xDrip"}
        )

        assert record.original_id == str(OID)
        assert record.mills == MILLS
        assert record.sgv == 120.0
        assert record.direction == "Flat"
        assert record.type == "sgv"
        assert record.date_string == "2024-01-01T00:00:00.000Z"
        assert record.created_at == "2024-01-01T00:00:00.000Z"

    def test_record_id_is_derived_from_object_id(self) -> None:
        """Test that reruns produce the same primary key."""
        first = EntryTransformer().transform({"_id": OID, "sgv": 100, "mills": MILLS})
        second = EntryTransformer().transform({"_id": OID, "sgv": 101, "mills": MILLS})

        assert first.id == second.id
        assert first.id == UUID(bytes=OID.binary + b"\x00" * 4)

    def test_record_id_is_random_without_preservation(self) -> None:
        transformer = EntryTransformer(TransformationOptions(preserve_original_ids=False))
        first = transformer.transform({"_id": OID, "sgv": 100, "mills": MILLS})
        second = transformer.transform({"_id": OID, "sgv": 100, "mills": MILLS})
        assert first.id != second.id

    def test_non_object_id_gets_random_id(self) -> None:
        record = EntryTransformer().transform({"_id": "custom-id", "sgv": 100, "mills": MILLS})
        assert record.original_id == "custom-id"
        assert record.id != UUID(int=0)

    def test_mmol_is_converted(self) -> None:
        record = EntryTransformer().transform({"_id": OID, "mmol": 5.5, "mills": MILLS})
        assert record.sgv == pytest.approx(5.5 * MMOL_TO_MGDL)

    def test_sgv_wins_over_mgdl(self) -> None:
        record = EntryTransformer().transform({"_id": OID, "sgv": 110, "mgdl": 200, "mills": MILLS})
        assert record.sgv == 110.0

    def test_mills_wins_over_date(self) -> None:
        record = EntryTransformer().transform({"_id": OID, "mills": MILLS, "date": MILLS + 60_000})
        assert record.mills == MILLS

    def test_date_in_seconds(self) -> None:
        record = EntryTransformer().transform({"_id": OID, "date": MILLS // 1000})
        assert record.mills == MILLS

    def test_date_string_fallback(self) -> None:
        record = EntryTransformer().transform({"_id": OID, "dateString": "2024-01-01T00:00:00Z"})
        assert record.mills == MILLS
        assert record.date_string == "2024-01-01T00:00:00Z"

    def test_missing_timestamp_uses_now_with_warning(self) -> None:
        transformer = EntryTransformer()
        record = transformer.transform({"_id": OID, "sgv": 100})
        assert record.mills > MILLS
        assert transformer.statistics.with_warnings == 1

    def test_numeric_direction_code(self, make_entry: EntryFactory) -> None:
        record = EntryTransformer().transform(make_entry(0, direction=3))
        assert record.direction == "SingleUp"

    def test_non_document_raises(self) -> None:
        transformer = EntryTransformer()
        with pytest.raises(TransformationError) as exc_info:
            transformer.transform(["not", "a", "document"])  # type: ignore[arg-type]
        assert exc_info.value.collection == "entries"
        assert transformer.statistics.failed == 1

    def test_statistics(self, make_entry: EntryFactory) -> None:
        transformer = EntryTransformer()
        for i in range(3):
            transformer.transform(make_entry(i))

        stats = transformer.statistics
        assert stats.successful == 3
        assert stats.success_rate == 100.0
        assert stats.most_common_kinds("sgv") == [(ValueKind.NUMBER, 3)]
        assert stats.to_dict()["field_stats"]["direction"]["present"] == 3

    def test_validate(self) -> None:
        result = EntryTransformer().validate({"_id": OID, "direction": "Sideways", "sgv": 1500})
        assert not result.is_valid
        assert result.errors == ("No valid timestamp found (date, mills, or dateString)",)
        assert "Invalid direction value: Sideways" in result.warnings
        assert any("outside normal range" in warning for warning in result.warnings)

    def test_validate_requires_id(self) -> None:
        result = EntryTransformer().validate({"sgv": 100, "mills": MILLS})
        assert "Document is missing required _id field" in result.errors


class TestTreatmentTransformer:
    """Tests for TreatmentTransformer."""

    def test_unmapped_fields_become_additional_properties(self) -> None:
        record = TreatmentTransformer().transform(
            {
                "_id": OID,
                "eventType": "Meal Bolus",
                "created_at": "2024-01-01T00:00:00Z",
                "insulin": "2.5",
                "carbs": 40,
                "boluscalc": {"ratio": 10},
                "pumpId": 42,
                "absorption": None,
            }
        )

        assert record.event_type == "Meal Bolus"
        assert record.mills == MILLS
        assert record.insulin == 2.5
        assert record.carbs == 40.0
        assert record.boluscalc == {"ratio": 10}
        assert record.additional_properties == {"pumpId": 42}

    def test_null_properties_can_be_preserved(self) -> None:
        transformer = TreatmentTransformer(TransformationOptions(preserve_null_properties=True))
        record = transformer.transform({"_id": OID, "mills": MILLS, "absorption": None})
        assert record.additional_properties == {"absorption": None}

    def test_to_row_serializes_json_columns(self) -> None:
        record = TreatmentTransformer().transform({"_id": OID, "mills": MILLS, "boluscalc": {"ratio": 10}})

        row = record.to_row()

        assert row["id"] == str(record.id)
        assert json_loads(row["boluscalc"]) == {"ratio": 10}
        assert row["additional_properties"] is None

    def test_non_numeric_insulin_is_a_validation_error(self) -> None:
        result = TreatmentTransformer().validate({"_id": OID, "eventType": "Bolus", "insulin": "lots"})
        assert result.errors == ("Field 'insulin' is not numeric: 'lots'",)


class TestProfileTransformer:
    """Tests for ProfileTransformer."""

    def test_schedules_are_normalized(self) -> None:
        record = ProfileTransformer().transform(
            {
                "_id": OID,
                "defaultProfile": "Day",
                "startDate": "2024-01-01T00:00:00Z",
                "store": {
                    "Day": {
                        "dia": "4",
                        "basal": [{"time": "01:30", "value": "0.8"}, {"timeAsSeconds": 3600, "value": 1}],
                        "units": "mg/dl",
                    }
                },
            }
        )

        profile = record.store["Day"]
        assert record.default_profile == "Day"
        assert record.start_date == "2024-01-01T00:00:00.000Z"
        assert profile["dia"] == 4.0
        assert profile["basal"] == [
            {"time": "01:30", "timeAsSeconds": 5400, "value": 0.8},
            {"time": "01:00", "timeAsSeconds": 3600, "value": 1.0},
        ]
        assert profile["units"] == "mg/dl"

    def test_defaults(self) -> None:
        record = ProfileTransformer().transform({"_id": OID, "mills": MILLS})
        assert record.default_profile == "Default"
        assert record.units == "mg/dL"
        assert record.store is None

    def test_store_must_be_a_document(self) -> None:
        with pytest.raises(TransformationError):
            ProfileTransformer().transform({"_id": OID, "store": ["Day"]})

    def test_empty_store_is_invalid(self) -> None:
        result = ProfileTransformer().validate({"_id": OID, "store": {}, "defaultProfile": "Day"})
        assert result.errors == ("Profile store is empty",)


class TestFoodTransformer:
    def test_nutrients_default_to_zero(self) -> None:
        record = FoodTransformer().transform({"_id": OID, "name": "Apple", "carbs": "n/a", "fat": 0.3})
        assert record.name == "Apple"
        assert record.carbs == 0.0
        assert record.protein == 0.0
        assert record.fat == 0.3


class TestTransformationService:
    """Tests for TransformationService."""

    def test_supported_collections(self) -> None:
        service = TransformationService()
        assert service.supported_collections() == [
            "activity",
            "devicestatus",
            "entries",
            "food",
            "profiles",
            "settings",
            "treatments",
        ]

    def test_collection_names_are_case_insensitive(self) -> None:
        service = TransformationService()
        assert service.supports("Entries")
        assert service.table_for("TREATMENTS") == "treatments"
        assert service.transform({"_id": OID, "sgv": 100, "mills": MILLS}, "Entries").sgv == 100.0

    def test_unsupported_collection_raises(self) -> None:
        service = TransformationService()
        assert not service.supports("widgets")
        with pytest.raises(UnsupportedCollectionError):
            service.transform({"_id": OID}, "widgets")

    def test_options_reach_every_transformer(self) -> None:
        options = TransformationOptions(preserve_original_ids=False)
        service = TransformationService(options)
        first = service.transform({"_id": OID, "key": "units"}, "settings")
        second = service.transform({"_id": OID, "key": "units"}, "settings")
        assert first.id != second.id

    def test_validate_batch(self, make_entry: EntryFactory) -> None:
        documents = [
            make_entry(0),
            make_entry(1, direction="Sideways"),
            {"_id": OID, "sgv": 100},
        ]

        summary = TransformationService().validate_batch(documents, "entries")

        assert summary.total_documents == 3
        assert summary.valid_documents == 2
        assert summary.invalid_documents == 1
        assert summary.documents_with_warnings == 1
        assert summary.common_warnings["Invalid direction value: Sideways"] == 1
        assert summary.success_rate == pytest.approx(200 / 3)

    def test_reset_statistics(self, make_entry: EntryFactory) -> None:
        service = TransformationService()
        service.transform(make_entry(0), "entries")
        service.transform({"_id": OID, "mills": MILLS}, "treatments")

        service.reset_statistics("entries")

        assert service.get_statistics("entries").total_processed == 0
        assert service.get_statistics("treatments").total_processed == 1
        with pytest.raises(UnsupportedCollectionError):
            service.reset_statistics("widgets")
