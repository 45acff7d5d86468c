"""
Document transformers.

Each supported source collection has one transformer producing one pydantic
record type. TransformationService is the registry used by the engine and
the validator.

Example:
    >>> from docmigrate.transformers import TransformationService
    >>> service = TransformationService()
    >>> service.supported_collections()
    ['activity', 'devicestatus', 'entries', 'food', 'profiles', 'settings', 'treatments']
"""

from docmigrate.transformers.base import (
    BaseDocumentTransformer,
    FieldStatistics,
    TransformationStatistics,
    TransformationValidationResult,
    ValueKind,
    format_iso_ms,
    value_kind,
)
from docmigrate.transformers.entries import EntryTransformer, normalize_direction
from docmigrate.transformers.profiles import ProfileTransformer
from docmigrate.transformers.records import (
    RECORD_TYPES,
    ActivityRecord,
    DeviceStatusRecord,
    EntryRecord,
    FoodRecord,
    JsonValue,
    ProfileRecord,
    SettingsRecord,
    TargetRecord,
    TreatmentRecord,
)
from docmigrate.transformers.service import (
    DEFAULT_TRANSFORMERS,
    BatchValidationSummary,
    TransformationService,
)
from docmigrate.transformers.simple import (
    ActivityTransformer,
    DeviceStatusTransformer,
    FoodTransformer,
    SettingsTransformer,
)
from docmigrate.transformers.treatments import TreatmentTransformer

__all__ = [
    "ActivityRecord",
    "ActivityTransformer",
    "BaseDocumentTransformer",
    "BatchValidationSummary",
    "DEFAULT_TRANSFORMERS",
    "DeviceStatusRecord",
    "DeviceStatusTransformer",
    "EntryRecord",
    "EntryTransformer",
    "FieldStatistics",
    "FoodRecord",
    "FoodTransformer",
    "JsonValue",
    "ProfileRecord",
    "ProfileTransformer",
    "RECORD_TYPES",
    "SettingsRecord",
    "SettingsTransformer",
    "TargetRecord",
    "TransformationService",
    "TransformationStatistics",
    "TransformationValidationResult",
    "TreatmentRecord",
    "TreatmentTransformer",
    "ValueKind",
    "format_iso_ms",
    "normalize_direction",
    "value_kind",
]
