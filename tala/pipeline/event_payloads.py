"""
Typed event detail payloads.

Each event type has a pydantic model for its well-known fields. All models
allow extra keys, so anything the model returns that we do not know about
survives in the payload (forward compatibility). Validation happens once, at
the extraction boundary; a payload that does not fit its typed model is kept
whole as a GenericPayload rather than dropped.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tala.observability.logging import get_logger
from tala.observability.telemetry import counter
from tala.pipeline.types import EventType

logger = get_logger(__name__)

_UNIT_ALIASES = {
    "ml": "ml",
    "mls": "ml",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "cc": "ml",
    "oz": "oz",
    "ozs": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "fl oz": "oz",
}

Number = int | float


def normalize_volume_unit(value: Any) -> str | None:
    """'ML', 'milliliters' -> 'ml'; 'OZ', 'ounces' -> 'oz'; others pass through lowercased."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    return _UNIT_ALIASES.get(text, text)


def _upper_or_none(value: Any) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip().upper()


class EventPayload(BaseModel):
    """Fields common to every event type, plus the extra-field bucket."""

    model_config = ConfigDict(extra="allow")

    location: str | None = None
    notes: str | None = None
    ai_tags: list[str] = Field(default_factory=list)

    @field_validator("ai_tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if not isinstance(v, (list, tuple, set)):
            return []
        return [str(tag) for tag in v if tag is not None and str(tag).strip()]

    @field_validator("location", "notes", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str | None:
        if v is None:
            return None
        return str(v)

    def to_event_data(self) -> dict[str, Any]:
        """Plain dict (known + extra fields), omitting unset optionals."""
        data = self.model_dump(exclude_none=True)
        if not data.get("ai_tags"):
            data.pop("ai_tags", None)
        return data


class FeedingPayload(EventPayload):
    amount: Number | None = None
    unit: str | None = None
    feeding_type: str | None = None
    food_name: str | None = None
    food_items: list[str] = Field(default_factory=list)
    duration_minutes: Number | None = None

    @field_validator("unit", mode="before")
    @classmethod
    def normalize_unit(cls, v: Any) -> str | None:
        return normalize_volume_unit(v)

    @field_validator("feeding_type", mode="before")
    @classmethod
    def normalize_feeding_type(cls, v: Any) -> str | None:
        return _upper_or_none(v)

    @field_validator("food_items", mode="before")
    @classmethod
    def coerce_food_items(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return [str(item) for item in v]

    def to_event_data(self) -> dict[str, Any]:
        data = super().to_event_data()
        if not data.get("food_items"):
            data.pop("food_items", None)
        return data


class SleepPayload(EventPayload):
    duration_minutes: Number | None = None
    sleep_quality: str | None = None
    sleep_action: str | None = None
    start_time: str | None = None
    end_time: str | None = None

    @field_validator("sleep_quality", mode="before")
    @classmethod
    def normalize_quality(cls, v: Any) -> str | None:
        return _upper_or_none(v)


class DiaperPayload(EventPayload):
    diaper_type: str | None = None

    @field_validator("diaper_type", mode="before")
    @classmethod
    def normalize_diaper_type(cls, v: Any) -> str | None:
        return _upper_or_none(v)


class PumpingPayload(EventPayload):
    amount: Number | None = None
    unit: str | None = None
    side: str | None = None
    duration_minutes: Number | None = None

    @field_validator("unit", mode="before")
    @classmethod
    def normalize_unit(cls, v: Any) -> str | None:
        return normalize_volume_unit(v)


class MilestonePayload(EventPayload):
    milestone_type: str | None = None
    milestone_name: str | None = None


class GrowthMeasurementPayload(EventPayload):
    weight: Number | None = None
    weight_unit: str | None = None
    height: Number | None = None
    height_unit: str | None = None
    head_circumference: Number | None = None


class SicknessPayload(EventPayload):
    symptom_name: str | None = None
    severity: str | None = None
    temperature: Number | None = None
    temperature_unit: str | None = None

    @field_validator("severity", "temperature_unit", mode="before")
    @classmethod
    def normalize_upper(cls, v: Any) -> str | None:
        return _upper_or_none(v)


class MedicinePayload(EventPayload):
    medicine_name: str | None = None
    dosage: Number | str | None = None
    dosage_unit: str | None = None


class MedicalVisitPayload(EventPayload):
    visit_type: str | None = None
    doctor_name: str | None = None
    diagnosis: str | None = None


class VaccinationPayload(EventPayload):
    vaccine_name: str | None = None
    dose_number: int | None = None


class GenericPayload(EventPayload):
    """Fallback for unknown types or payloads that fail typed validation."""


PAYLOAD_MODELS: dict[EventType, type[EventPayload]] = {
    EventType.FEEDING: FeedingPayload,
    EventType.SLEEP: SleepPayload,
    EventType.DIAPER: DiaperPayload,
    EventType.PUMPING: PumpingPayload,
    EventType.MILESTONE: MilestonePayload,
    EventType.GROWTH_MEASUREMENT: GrowthMeasurementPayload,
    EventType.SICKNESS: SicknessPayload,
    EventType.MEDICINE: MedicinePayload,
    EventType.MEDICAL_VISIT: MedicalVisitPayload,
    EventType.VACCINATION: VaccinationPayload,
}


def parse_event_data(event_type: EventType | str | None, data: Any) -> EventPayload:
    """
    Validate a raw event_data dict against the model for its type.

    Never raises: unknown types and invalid payloads fall back to
    GenericPayload so no field is lost.
    """
    if not isinstance(data, dict):
        data = {}

    model: type[EventPayload] = GenericPayload
    if event_type is not None:
        try:
            model = PAYLOAD_MODELS.get(EventType(str(event_type).upper()), GenericPayload)
        except ValueError:
            model = GenericPayload

    try:
        return model.model_validate(data)
    except ValidationError as e:
        counter("pipeline.payload.validation_fallback")
        logger.warning(
            "Event payload for %s failed typed validation, keeping as generic: %s",
            event_type,
            e.errors()[0].get("msg") if e.errors() else e,
        )
        return GenericPayload.model_validate(data)
