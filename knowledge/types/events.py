"""Tagged ingress events accepted by the document updater."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from knowledge.errors import InvalidEvent
from knowledge.timeutil import LenientTimestamp
from knowledge.types.trend import to_number

logger = logging.getLogger("lckb.events")

VITAL_FIELDS = (
    "systolic",
    "diastolic",
    "heart_rate",
    "respiratory_rate",
    "temperature",
    "spo2",
    "weight",
    "pain_score",
)


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VitalsEvent(_Event):
    """One vital signs reading; malformed numeric fields are dropped."""

    kind: Literal["vitals"] = "vitals"
    timestamp: LenientTimestamp = Field(default=None, validation_alias=AliasChoices("timestamp", "date"))
    systolic: float | None = None
    diastolic: float | None = None
    heart_rate: float | None = Field(default=None, validation_alias=AliasChoices("heart_rate", "heartRate"))
    respiratory_rate: float | None = Field(
        default=None, validation_alias=AliasChoices("respiratory_rate", "respiratoryRate")
    )
    temperature: float | None = None
    spo2: float | None = Field(default=None, validation_alias=AliasChoices("spo2", "spO2", "SpO2"))
    weight: float | None = None
    pain_score: float | None = Field(default=None, validation_alias=AliasChoices("pain_score", "painScore"))
    recorded_by: str | None = Field(default=None, validation_alias=AliasChoices("recorded_by", "recordedBy"))

    @field_validator(*VITAL_FIELDS, mode="before")
    @classmethod
    def _numeric_or_absent(cls, value: Any) -> float | None:
        if value is None or value == "":
            return None
        number = to_number(value)
        if number is None:
            logger.warning("Skipping malformed vital value %r", value)
        return number

    def measurements(self) -> dict[str, float]:
        """Present vital fields in declaration order."""
        return {
            name: getattr(self, name) for name in VITAL_FIELDS if getattr(self, name) is not None
        }


# Stored readings are the validated events themselves.
VitalsReading = VitalsEvent


class LabResult(_Event):
    name: str
    value: float | str | None = None
    unit: str = ""
    flag: str | None = None
    reference_range: str | None = Field(
        default=None, validation_alias=AliasChoices("reference_range", "referenceRange")
    )

    @field_validator("unit", mode="before")
    @classmethod
    def _unit_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("flag", "reference_range", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)


class LabPanelEvent(_Event):
    """A panel of results sharing one collection time."""

    kind: Literal["lab_panel"] = "lab_panel"
    id: str | None = None
    name: str | None = None
    collected: LenientTimestamp = Field(
        default=None, validation_alias=AliasChoices("collected", "collectedDate", "timestamp", "date")
    )
    results: list[LabResult] = Field(default_factory=list)

    @field_validator("results", mode="before")
    @classmethod
    def _drop_malformed_results(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        kept = []
        for item in value:
            if isinstance(item, LabResult):
                kept.append(item)
                continue
            try:
                kept.append(LabResult.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed lab result %r", item)
        return kept


def _scalar_text(value: Any) -> str:
    """Free text from a scalar chart value; anything else is treated as absent."""
    if value is None or isinstance(value, (dict, list)):
        if value is not None:
            logger.warning("Skipping malformed text value %r", value)
        return ""
    return str(value)


class NoteEvent(_Event):
    """Nursing note or other free-text clinical note."""

    kind: Literal["note"] = "note"
    text: str = Field(default="", validation_alias=AliasChoices("text", "content"))
    timestamp: LenientTimestamp = Field(default=None, validation_alias=AliasChoices("timestamp", "date"))
    author: str | None = None
    note_type: str | None = Field(default=None, validation_alias=AliasChoices("note_type", "type"))

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _scalar_text(value)

    @field_validator("author", "note_type", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        return _scalar_text(value) or None


class DictationEvent(_Event):
    kind: Literal["dictation"] = "dictation"
    text: str = ""
    timestamp: LenientTimestamp = None

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _scalar_text(value)


class MedicationChangeEvent(_Event):
    kind: Literal["medication_change"] = "medication_change"
    change_type: Literal["started", "stopped", "adjusted"] = Field(
        default="adjusted", validation_alias=AliasChoices("change_type", "type")
    )
    name: str
    dose: str | None = None
    reason: str | None = None
    timestamp: LenientTimestamp = Field(default=None, validation_alias=AliasChoices("timestamp", "date"))

    @field_validator("change_type", mode="before")
    @classmethod
    def _known_change_type(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"started", "stopped", "adjusted"} else "adjusted"

    @field_validator("dose", "reason", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)


ClinicalEvent = Annotated[
    Union[VitalsEvent, LabPanelEvent, NoteEvent, DictationEvent, MedicationChangeEvent],
    Field(discriminator="kind"),
]
_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ClinicalEvent)


def parse_event(payload: Mapping[str, Any] | BaseModel) -> Any:
    """Validate a loosely shaped record into one of the tagged event models."""
    if isinstance(payload, (VitalsEvent, LabPanelEvent, NoteEvent, DictationEvent, MedicationChangeEvent)):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidEvent(f"Event must be a mapping, got {type(payload).__name__}")
    if "kind" not in payload:
        raise InvalidEvent("Event is missing its 'kind' tag")
    try:
        return _EVENT_ADAPTER.validate_python(dict(payload))
    except ValidationError as exc:
        raise InvalidEvent(f"Invalid {payload.get('kind')!r} event: {exc.errors()[0]['msg']}") from exc
