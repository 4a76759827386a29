"""
Module: types
Purpose: Shared domain types for the ingestion pipeline.
Dependencies: tala.config, tala.ports.files (FileMetadata only)

Stable import boundary: these types are used by the three stages, the
orchestrator, the chat ingress and the event intake. Keeping them in a leaf
module prevents circular imports between stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tala.config import PIPELINE_ATTACHMENT_TEXT_TRUNCATION
from tala.ports.files import FileMetadata

# ---------------------------------------------------------------------------
# Closed enumerations
# ---------------------------------------------------------------------------


class InteractionType(str, Enum):
    """What the parent is trying to do with a message."""

    DATA_RECORDING = "DATA_RECORDING"
    CURRICULUM_UPLOAD = "CURRICULUM_UPLOAD"
    QUESTION_ANSWERING = "QUESTION_ANSWERING"
    GENERAL_CHAT = "GENERAL_CHAT"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"


class AttachmentType(str, Enum):
    """Detected document type of an attachment (or of a set of them)."""

    DAYCARE_REPORT = "DAYCARE_REPORT"
    MEDICAL_RECORD = "MEDICAL_RECORD"
    PHOTO = "PHOTO"
    DOCUMENT = "DOCUMENT"
    MIXED = "MIXED"
    OTHER = "OTHER"


# Report-like documents push an ambiguous message toward data recording
STRUCTURED_REPORT_TYPES = frozenset({AttachmentType.DAYCARE_REPORT, AttachmentType.MEDICAL_RECORD})


class EventCategory(str, Enum):
    JOURNAL = "JOURNAL"
    HEALTH = "HEALTH"


class EventType(str, Enum):
    """Extraction-stage event types."""

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


CATEGORY_EVENT_TYPES: dict[EventCategory, frozenset[EventType]] = {
    EventCategory.JOURNAL: frozenset(
        {
            EventType.FEEDING,
            EventType.SLEEP,
            EventType.DIAPER,
            EventType.PUMPING,
            EventType.MILESTONE,
            EventType.GROWTH_MEASUREMENT,
        }
    ),
    EventCategory.HEALTH: frozenset(
        {
            EventType.SICKNESS,
            EventType.MEDICINE,
            EventType.MEDICAL_VISIT,
            EventType.VACCINATION,
        }
    ),
}


def category_for(event_type: EventType) -> EventCategory:
    """Category that owns an event type."""
    for category, types in CATEGORY_EVENT_TYPES.items():
        if event_type in types:
            return category
    raise ValueError(f"No category for event type {event_type}")


class DataSourceType(str, Enum):
    """Where an origin event came from."""

    DAY_CARE_REPORT = "DAY_CARE_REPORT"
    INCIDENT_REPORT = "INCIDENT_REPORT"
    HEALTH_REPORT = "HEALTH_REPORT"
    HOME_EVENT = "HOME_EVENT"
    AI_CHAT = "AI_CHAT"
    WEEKLY_CURRICULUM = "WEEKLY_CURRICULUM"
    DAILY_CURRICULUM = "DAILY_CURRICULUM"


# Curriculum documents are stored but never projected to the timeline
PROJECTABLE_SOURCES = frozenset(
    {
        DataSourceType.DAY_CARE_REPORT,
        DataSourceType.INCIDENT_REPORT,
        DataSourceType.HEALTH_REPORT,
        DataSourceType.HOME_EVENT,
        DataSourceType.AI_CHAT,
    }
)


def parse_data_source(value: str | None, default: DataSourceType = DataSourceType.AI_CHAT) -> DataSourceType:
    """Lenient DataSourceType parse (case-insensitive, unknown -> default)."""
    if not value:
        return default
    try:
        return DataSourceType(str(value).strip().upper())
    except ValueError:
        return default


class PipelineStage(str, Enum):
    """Stage names reported on the progress channel."""

    INITIALIZATION = "initialization"
    CONTEXT_ENRICHMENT = "context_enrichment"
    ATTACHMENT_PARSING = "attachment_parsing"
    CLASSIFICATION = "classification"
    AI_PROCESSING = "ai_processing"
    STORING_EVENTS = "storing_events"
    MEMORY_STORAGE = "memory_storage"


# ---------------------------------------------------------------------------
# Stage 1 result (attachment_interpreter.py)
# ---------------------------------------------------------------------------


@dataclass
class AttachmentSummary:
    """Interpretation of one attached file."""

    file_id: str
    file_name: str
    content_summary: str
    extracted_text: str = ""
    key_findings: list[str] = field(default_factory=list)
    detected_type: AttachmentType = AttachmentType.OTHER
    confidence: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "content_summary": self.content_summary,
            "extracted_text": self.extracted_text,
            "key_findings": list(self.key_findings),
            "detected_type": self.detected_type.value,
            "confidence": self.confidence,
        }


@dataclass
class AttachmentInterpretation:
    """Aggregate of all per-file summaries, including which files failed."""

    files: list[AttachmentSummary]
    overall_summary: str
    attachment_type: AttachmentType
    failed_file_ids: list[str] = field(default_factory=list)
    failure_note: str | None = None

    @property
    def has_structured_report(self) -> bool:
        return any(f.detected_type in STRUCTURED_REPORT_TYPES for f in self.files)

    def to_context(self, truncate_at: int = PIPELINE_ATTACHMENT_TEXT_TRUNCATION) -> str:
        """
        Render the interpretation as a context block for stages 2 and 3.

        Extracted text is truncated per file so one long document cannot
        crowd out the message itself.
        """
        lines = [
            "Attachment Summary:",
            f"Type: {self.attachment_type.value}",
            f"Overall: {self.overall_summary}",
            "",
        ]
        for summary in self.files:
            lines.append(f"File: {summary.file_name}")
            lines.append(f"Summary: {summary.content_summary}")
            if summary.extracted_text:
                text = summary.extracted_text
                if len(text) > truncate_at:
                    text = text[:truncate_at] + "..."
                lines.append(f"Content: {text}")
            if summary.key_findings:
                lines.append("Key Findings:")
                lines.extend(f"  - {finding}" for finding in summary.key_findings)
            lines.append("")
        if self.failure_note:
            lines.append(f"Note: {self.failure_note}")
        return "\n".join(lines).rstrip() + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "attachment_type": self.attachment_type.value,
            "overall_summary": self.overall_summary,
            "files": [f.to_dict() for f in self.files],
            "failed_file_ids": list(self.failed_file_ids),
            "failure_note": self.failure_note,
        }


# ---------------------------------------------------------------------------
# Stage 2 result (classifier.py)
# ---------------------------------------------------------------------------


@dataclass
class InteractionClassification:
    """Result of interaction classification."""

    interaction_type: InteractionType
    confidence: float
    reason: str
    thinking: str | None = None

    @property
    def is_data_recording(self) -> bool:
        return self.interaction_type == InteractionType.DATA_RECORDING

    @classmethod
    def empty_input(cls) -> InteractionClassification:
        """Factory for a message with no text and no attachments."""
        return cls(
            interaction_type=InteractionType.OUT_OF_SCOPE,
            confidence=1.0,
            reason="Empty input",
        )

    @classmethod
    def fallback(cls, error: str) -> InteractionClassification:
        """Factory for upstream or parse failure: low-confidence question."""
        return cls(
            interaction_type=InteractionType.QUESTION_ANSWERING,
            confidence=0.3,
            reason=f"Classification failed, defaulting to Q&A: {error[:100]}",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "interaction_type": self.interaction_type.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "ai_think_process": self.thinking,
        }


# ---------------------------------------------------------------------------
# Stage 3 result (event_extractor.py)
# ---------------------------------------------------------------------------


@dataclass
class ExtractedEventCandidate:
    """One structured fact extracted from a message."""

    category: EventCategory
    event_type: EventType
    timestamp: datetime
    summary: str
    confidence: float
    event_data: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the shape stored in the Origin Log raw payload."""
        data = dict(self.event_data)
        if self.tags:
            data["ai_tags"] = list(self.tags)
        return {
            "event_category": self.category.value,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "summary": self.summary,
            "event_data": data,
            "confidence": self.confidence,
        }


@dataclass
class ExtractionResult:
    """Candidates plus the reply shown to the parent."""

    ai_message: str
    confidence: float
    events: list[ExtractedEventCandidate] = field(default_factory=list)
    clarification_needed: list[str] = field(default_factory=list)
    intent_understanding: str = ""
    data_source_type: DataSourceType = DataSourceType.AI_CHAT
    thinking: str | None = None

    @classmethod
    def empty_message(cls) -> ExtractionResult:
        return cls(
            ai_message="I didn't receive any message. Could you please tell me what you'd like to record?",
            confidence=0.0,
            intent_understanding="Empty message",
        )

    @classmethod
    def failure(cls, error: str) -> ExtractionResult:
        """Factory for irrecoverable model or parse failure: zero events plus apology."""
        return cls(
            ai_message="I'm having trouble understanding. Could you rephrase that?",
            confidence=0.0,
            intent_understanding=f"Extraction failed: {error[:100]}",
        )

    @classmethod
    def canned(cls, reply: str, interaction_type: InteractionType) -> ExtractionResult:
        """Factory for non-recording intents: a reply and no events."""
        return cls(
            ai_message=reply,
            confidence=1.0,
            intent_understanding=f"Non-recording interaction: {interaction_type.value}",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ai_message": self.ai_message,
            "intent_understanding": self.intent_understanding,
            "confidence": self.confidence,
            "data_source_type": self.data_source_type.value,
            "events": [e.to_dict() for e in self.events],
            "clarification_needed": list(self.clarification_needed),
            "ai_think_process": self.thinking,
        }


# ---------------------------------------------------------------------------
# Orchestrator input/output (orchestrator.py)
# ---------------------------------------------------------------------------


@dataclass
class PipelineContext:
    """Context gathered from collaborators before the AI stages run."""

    profile_context: str = ""
    chat_history: str = ""
    memory_context: str = ""
    attachments: list[FileMetadata] = field(default_factory=list)
    unresolved_attachment_ids: list[str] = field(default_factory=list)
    pending_clarifications: list[str] = field(default_factory=list)


@dataclass
class PipelineRequest:
    """One unit of work for the orchestrator."""

    profile_id: int
    user_id: int
    text: str
    now: datetime
    attachment_ids: list[str] = field(default_factory=list)
    context: PipelineContext = field(default_factory=PipelineContext)


@dataclass
class PipelineResult:
    """Outcome of one pipeline run. Always carries a reply."""

    classification: InteractionClassification
    extraction: ExtractionResult
    attachment_interpretation: AttachmentInterpretation | None = None
    degraded_stages: list[str] = field(default_factory=list)

    @property
    def reply(self) -> str:
        return self.extraction.ai_message

    @property
    def events(self) -> list[ExtractedEventCandidate]:
        return self.extraction.events

    def thinking_process(self) -> dict[str, Any]:
        """Per-stage reasoning, stored with the assistant message."""
        thinking: dict[str, Any] = {"classification": self.classification.to_dict()}
        if self.attachment_interpretation is not None:
            thinking["attachment_parsing"] = self.attachment_interpretation.to_dict()
        if self.extraction.thinking:
            thinking["extraction"] = self.extraction.thinking
        if self.degraded_stages:
            thinking["degraded_stages"] = list(self.degraded_stages)
        return thinking

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.to_dict(),
            "attachment_interpretation": (
                self.attachment_interpretation.to_dict() if self.attachment_interpretation else None
            ),
            "extraction": self.extraction.to_dict(),
            "degraded_stages": list(self.degraded_stages),
        }


@dataclass
class ProgressEvent:
    """A named progress notification (maps 1:1 to an SSE event)."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def thinking(cls, stage: PipelineStage, message: str) -> ProgressEvent:
        return cls(name="thinking", data={"stage": stage.value, "message": message})
