"""
Extraction type strings -> closed downstream enumerations.

Explicit tables only. Mapping never raises: anything unrecognized is logged
and becomes NOTES.
"""

from __future__ import annotations

from tala.events.models import NarrativeEventType, TimelineEventType
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter

logger = get_logger(__name__)

NARRATIVE_TYPE_MAP: dict[str, NarrativeEventType] = {
    "FEEDING": NarrativeEventType.FEEDING,
    "FEED": NarrativeEventType.FEEDING,
    "BOTTLE": NarrativeEventType.FEEDING,
    "MEAL": NarrativeEventType.FEEDING,
    "NURSING": NarrativeEventType.FEEDING,
    "SLEEP": NarrativeEventType.SLEEP,
    "NAP": NarrativeEventType.SLEEP,
    "DIAPER": NarrativeEventType.DIAPER,
    "DIAPER_CHANGE": NarrativeEventType.DIAPER,
    "PUMPING": NarrativeEventType.PUMPING,
    "MILESTONE": NarrativeEventType.MILESTONE,
    "GROWTH_MEASUREMENT": NarrativeEventType.GROWTH_MEASUREMENT,
    "GROWTH": NarrativeEventType.GROWTH_MEASUREMENT,
    "SICKNESS": NarrativeEventType.SICKNESS,
    "ILLNESS": NarrativeEventType.SICKNESS,
    "SYMPTOM": NarrativeEventType.SICKNESS,
    "MEDICINE": NarrativeEventType.MEDICINE,
    "MEDICATION": NarrativeEventType.MEDICINE,
    "MEDICAL_VISIT": NarrativeEventType.MEDICAL_VISIT,
    "DOCTOR_VISIT": NarrativeEventType.MEDICAL_VISIT,
    "VACCINATION": NarrativeEventType.VACCINATION,
    "VACCINE": NarrativeEventType.VACCINATION,
    "NOTES": NarrativeEventType.NOTES,
    "NOTE": NarrativeEventType.NOTES,
}

TIMELINE_TYPE_MAP: dict[str, TimelineEventType] = {
    "FEEDING": TimelineEventType.FEEDING,
    "FEED": TimelineEventType.FEEDING,
    "BOTTLE": TimelineEventType.FEEDING,
    "MEAL": TimelineEventType.FEEDING,
    "NURSING": TimelineEventType.FEEDING,
    "SLEEP": TimelineEventType.SLEEP,
    "NAP": TimelineEventType.SLEEP,
    "DIAPER": TimelineEventType.DIAPER_CHANGE,
    "DIAPER_CHANGE": TimelineEventType.DIAPER_CHANGE,
    "PUMPING": TimelineEventType.PUMPING,
    "MILESTONE": TimelineEventType.MILESTONE,
    "GROWTH_MEASUREMENT": TimelineEventType.GROWTH_MEASUREMENT,
    "GROWTH": TimelineEventType.GROWTH_MEASUREMENT,
    "SICKNESS": TimelineEventType.SICKNESS,
    "ILLNESS": TimelineEventType.SICKNESS,
    "SYMPTOM": TimelineEventType.SICKNESS,
    "MEDICINE": TimelineEventType.MEDICINE,
    "MEDICATION": TimelineEventType.MEDICINE,
    "MEDICAL_VISIT": TimelineEventType.MEDICAL_VISIT,
    "DOCTOR_VISIT": TimelineEventType.MEDICAL_VISIT,
    "VACCINATION": TimelineEventType.VACCINATION,
    "VACCINE": TimelineEventType.VACCINATION,
    "NOTES": TimelineEventType.NOTES,
    "NOTE": TimelineEventType.NOTES,
}


def _normalize(event_type: object) -> str:
    if event_type is None:
        return ""
    return str(event_type).strip().upper().replace(" ", "_").replace("-", "_")


def to_narrative_type(event_type: object) -> NarrativeEventType:
    key = _normalize(event_type)
    mapped = NARRATIVE_TYPE_MAP.get(key)
    if mapped is None:
        counter("events.type_mapping.narrative_fallback")
        logger.warning("Unknown narrative event type %r, defaulting to NOTES", event_type)
        return NarrativeEventType.NOTES
    return mapped


def to_timeline_type(event_type: object) -> TimelineEventType:
    key = _normalize(event_type)
    mapped = TIMELINE_TYPE_MAP.get(key)
    if mapped is None:
        counter("events.type_mapping.timeline_fallback")
        logger.warning("Unknown timeline event type %r, defaulting to NOTES", event_type)
        return TimelineEventType.NOTES
    return mapped
