"""
Event-sourcing domain models.

OriginEvent is the append-only root: one per inbound interpretation, raw
payload frozen at creation, only the processed flag/time ever change.
NarrativeEvent (one per OriginEvent) and TimelineEntry (one per extracted
candidate) are projections rebuilt from it. AttachmentRef is computed on
demand and never stored.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tala.pipeline.event_payloads import parse_event_data
from tala.pipeline.timestamps import parse_timestamp
from tala.pipeline.types import (
    AttachmentInterpretation,
    DataSourceType,
    ExtractionResult,
    InteractionClassification,
    parse_data_source,
)


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _local_iso(value: datetime) -> str:
    """Local wall-clock times are stored to the second."""
    return value.isoformat(timespec="seconds")


class NarrativeEventType(str, Enum):
    FEEDING = "FEEDING"
    SLEEP = "SLEEP"
    DIAPER = "DIAPER"
    PUMPING = "PUMPING"
    MILESTONE = "MILESTONE"
    GROWTH_MEASUREMENT = "GROWTH_MEASUREMENT"
    SICKNESS = "SICKNESS"
    MEDICINE = "MEDICINE"
    MEDICAL_VISIT = "MEDICAL_VISIT"
    VACCINATION = "VACCINATION"
    NOTES = "NOTES"


class TimelineEventType(str, Enum):
    FEEDING = "FEEDING"
    SLEEP = "SLEEP"
    DIAPER_CHANGE = "DIAPER_CHANGE"
    PUMPING = "PUMPING"
    MILESTONE = "MILESTONE"
    GROWTH_MEASUREMENT = "GROWTH_MEASUREMENT"
    SICKNESS = "SICKNESS"
    MEDICINE = "MEDICINE"
    MEDICAL_VISIT = "MEDICAL_VISIT"
    VACCINATION = "VACCINATION"
    NOTES = "NOTES"


# ============================================================================
# Intake payload (what gets frozen into OriginEvent.raw_payload)
# ============================================================================


class CandidateEvent(BaseModel):
    """One extracted event as received at the Origin Log boundary."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    event_category: str | None = None
    event_type: str | None = None
    timestamp: datetime | None = None
    summary: str = ""
    event_data: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def lenient_timestamp(cls, v: Any) -> datetime | None:
        # Unparseable timestamps fall back to the origin event time downstream
        return parse_timestamp(v)

    @field_validator("event_data", mode="before")
    @classmethod
    def dict_or_empty(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @field_validator("summary", mode="before")
    @classmethod
    def text_or_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @model_validator(mode="after")
    def validate_payload(self) -> CandidateEvent:
        """Typed validation of event_data, keeping unknown keys."""
        self.event_data = parse_event_data(self.event_type, self.event_data).to_event_data()
        return self

    def to_payload_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        if self.timestamp is not None:
            data["timestamp"] = _local_iso(self.timestamp)
        return data


class ChatEventPayload(BaseModel):
    """
    Event intake request: the pipeline's interpretation of one message.

    Accepts snake_case or camelCase keys. `original_text`/`reply_text` are
    also accepted as `user_message`/`ai_message`.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    profile_id: int = Field(..., gt=0)
    user_id: int | None = None
    original_text: str = ""
    reply_text: str = ""
    events: list[CandidateEvent] = Field(default_factory=list)
    attachment_ids: list[str] = Field(default_factory=list)
    data_source_type: str | None = None
    source_event_id: str | None = None
    intent: str | None = None
    intent_understanding: str | None = None
    confidence: float | None = None
    clarification_needed: list[str] = Field(default_factory=list)
    ai_model_version: str | None = None
    classification: dict[str, Any] | None = None
    attachment_interpretation: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, current in (
            ("userMessage", "original_text"),
            ("user_message", "original_text"),
            ("aiMessage", "reply_text"),
            ("ai_message", "reply_text"),
            ("candidateEvents", "events"),
            ("candidate_events", "events"),
            ("attachmentFileIds", "attachment_ids"),
        ):
            if legacy in data and current not in data and to_camel(current) not in data:
                data[current] = data.pop(legacy)
        return data

    @field_validator("attachment_ids", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> list[str]:
        return [str(item) for item in v or []]

    @property
    def source_type(self) -> DataSourceType:
        return parse_data_source(self.data_source_type, DataSourceType.AI_CHAT)

    @property
    def event_time(self) -> datetime | None:
        """First candidate's timestamp (None when there is none)."""
        for event in self.events:
            if event.timestamp is not None:
                return event.timestamp
        return None

    @classmethod
    def from_extraction(
        cls,
        profile_id: int,
        user_id: int | None,
        original_text: str,
        extraction: ExtractionResult,
        attachment_ids: list[str],
        source_event_id: str | None,
        ai_model_version: str | None = None,
        classification: InteractionClassification | None = None,
        attachment: AttachmentInterpretation | None = None,
    ) -> ChatEventPayload:
        """Capture the whole pipeline result: why the message was logged as well as what."""
        return cls(
            profile_id=profile_id,
            user_id=user_id,
            original_text=original_text,
            reply_text=extraction.ai_message,
            events=[CandidateEvent.model_validate(e.to_dict()) for e in extraction.events],
            attachment_ids=attachment_ids,
            data_source_type=extraction.data_source_type.value,
            source_event_id=source_event_id,
            intent_understanding=extraction.intent_understanding,
            confidence=extraction.confidence,
            clarification_needed=extraction.clarification_needed,
            ai_model_version=ai_model_version,
            intent=classification.interaction_type.value if classification else None,
            classification=classification.to_dict() if classification else None,
            attachment_interpretation=attachment.to_dict() if attachment else None,
        )

    def to_raw_payload(self) -> dict[str, Any]:
        """The verbatim payload frozen into the Origin Log (snake_case)."""
        payload = self.model_dump(mode="json", exclude={"events"})
        payload["events"] = [event.to_payload_dict() for event in self.events]
        return payload


# ============================================================================
# Origin Log
# ============================================================================


class OriginEvent(BaseModel):
    """Append-only record of one interpretation."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    profile_id: int
    source_type: DataSourceType
    source_event_id: str | None = None
    event_time: datetime
    raw_payload: dict[str, Any]
    attachment_ids: list[str] = Field(default_factory=list)
    processed: bool = False
    processed_at: datetime | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def payload(self) -> ChatEventPayload:
        return ChatEventPayload.model_validate(self.raw_payload)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "profile_id": self.profile_id,
            "source_type": self.source_type,
            "source_event_id": self.source_event_id,
            "event_time": _local_iso(self.event_time),
            "raw_payload": json.dumps(self.raw_payload),
            "attachment_file_ids": json.dumps(self.attachment_ids),
            "ai_processed": 1 if self.processed else 0,
            "ai_processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> OriginEvent:
        return cls(
            id=row["id"],
            profile_id=row["profile_id"],
            source_type=DataSourceType(row["source_type"]),
            source_event_id=row.get("source_event_id"),
            event_time=datetime.fromisoformat(row["event_time"]),
            raw_payload=json.loads(row["raw_payload"]),
            attachment_ids=json.loads(row["attachment_file_ids"]) if row["attachment_file_ids"] else [],
            processed=bool(row["ai_processed"]),
            processed_at=_parse_dt(row.get("ai_processed_at")),
            notes=row.get("notes"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# ============================================================================
# Projections
# ============================================================================


class AttachmentRef(BaseModel):
    """Presentation reference for one attachment (never persisted)."""

    source: str = "FILE_SERVICE"
    resource_id: str
    url: str
    thumbnail_url: str | None = None
    mime_type: str | None = None
    file_name: str | None = None
    size: int | None = None


class NarrativeEvent(BaseModel):
    """Consolidated human-readable record of one origin event."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    origin_event_id: str
    profile_id: int
    event_type: NarrativeEventType
    event_time: datetime
    title: str
    description: str | None = None
    details: list[dict[str, Any]] = Field(default_factory=list)
    location: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin_event_id": self.origin_event_id,
            "profile_id": self.profile_id,
            "event_type": self.event_type,
            "event_time": _local_iso(self.event_time),
            "title": self.title,
            "description": self.description,
            "details": json.dumps(self.details),
            "location": self.location,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> NarrativeEvent:
        return cls(
            id=row["id"],
            origin_event_id=row["origin_event_id"],
            profile_id=row["profile_id"],
            event_type=NarrativeEventType(row["event_type"]),
            event_time=datetime.fromisoformat(row["event_time"]),
            title=row["title"],
            description=row.get("description"),
            details=json.loads(row["details"]) if row["details"] else [],
            location=row.get("location"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class TimelineEntry(BaseModel):
    """Display projection of one extracted candidate."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    origin_event_id: str
    narrative_event_id: str
    profile_id: int
    position: int = 0
    timeline_type: TimelineEventType
    data_source: DataSourceType
    record_time: datetime
    title: str
    ai_summary: str | None = None
    ai_tags: list[str] = Field(default_factory=list)
    location: str | None = None
    ai_model_version: str | None = None
    original_user_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    # Resolved on read, not stored
    attachments: list[AttachmentRef] = Field(default_factory=list)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin_event_id": self.origin_event_id,
            "narrative_event_id": self.narrative_event_id,
            "profile_id": self.profile_id,
            "position": self.position,
            "timeline_type": self.timeline_type,
            "data_source": self.data_source,
            "record_time": _local_iso(self.record_time),
            "title": self.title,
            "ai_summary": self.ai_summary,
            "ai_tags": json.dumps(self.ai_tags),
            "location": self.location,
            "ai_model_version": self.ai_model_version,
            "original_user_message": self.original_user_message,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> TimelineEntry:
        return cls(
            id=row["id"],
            origin_event_id=row["origin_event_id"],
            narrative_event_id=row["narrative_event_id"],
            profile_id=row["profile_id"],
            position=row.get("position", 0),
            timeline_type=TimelineEventType(row["timeline_type"]),
            data_source=DataSourceType(row["data_source"]),
            record_time=datetime.fromisoformat(row["record_time"]),
            title=row["title"],
            ai_summary=row.get("ai_summary"),
            ai_tags=json.loads(row["ai_tags"]) if row["ai_tags"] else [],
            location=row.get("location"),
            ai_model_version=row.get("ai_model_version"),
            original_user_message=row.get("original_user_message"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
