"""
Event Extractor - stage 3 of the ingestion pipeline.

Turns a data-recording message (plus attachment summaries, profile and
memory context) into zero or more ExtractedEventCandidates, a reply for the
parent, and any clarification questions.

The model does the reading; this module makes the result safe to persist:

1. Defensive parse (fences, brace span, trailing commas); irrecoverable
   replies become zero events plus an apology
2. Per-candidate validation: unknown types are dropped with a clarification,
   category is derived from type, payloads are validated against their typed
   model, timestamps are resolved by precedence (attachment date, model
   timestamp, relative phrase, bare date, now)
3. Grouping: candidates with the same category and type within the grouping
   window are merged into one, supporting detail nested in the payload
4. Low confidence without questions gets a generic clarification
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

from tala.config import PIPELINE_CLARIFICATION_THRESHOLD, PIPELINE_GROUPING_WINDOW_MINUTES
from tala.errors import ParseError
from tala.llm.json_extraction import extract_json_object
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.event_payloads import parse_event_data
from tala.pipeline.sanitize import sanitize
from tala.pipeline.timestamps import attachment_date, resolve_event_time, segment_for
from tala.pipeline.types import (
    AttachmentInterpretation,
    DataSourceType,
    EventType,
    ExtractedEventCandidate,
    ExtractionResult,
    category_for,
    parse_data_source,
)
from tala.ports.model import ModelGateway, ModelPrompt

logger = get_logger(__name__)

STAGE = "event_extractor"

DEFAULT_REPLY = "Got it! I've processed your request."
GENERIC_CLARIFICATION = "Could you share a bit more detail (what happened and when) so I can record it accurately?"
NOTHING_FOUND_CLARIFICATION = "I couldn't find anything to record. What would you like me to log?"

# Event type spellings the model sometimes uses
_TYPE_ALIASES = {
    "FEED": EventType.FEEDING,
    "BOTTLE": EventType.FEEDING,
    "MEAL": EventType.FEEDING,
    "NURSING": EventType.FEEDING,
    "BREASTFEEDING": EventType.FEEDING,
    "NAP": EventType.SLEEP,
    "DIAPER_CHANGE": EventType.DIAPER,
    "GROWTH": EventType.GROWTH_MEASUREMENT,
    "MEASUREMENT": EventType.GROWTH_MEASUREMENT,
    "ILLNESS": EventType.SICKNESS,
    "SYMPTOM": EventType.SICKNESS,
    "MEDICATION": EventType.MEDICINE,
    "DOCTOR_VISIT": EventType.MEDICAL_VISIT,
    "VACCINE": EventType.VACCINATION,
    "IMMUNIZATION": EventType.VACCINATION,
}

# Words that tie a clause of the message to an event type
_TYPE_WORDS = {
    EventType.FEEDING: {
        "feeding", "fed", "ate", "eat", "drank", "bottle", "formula", "nursed",
        "meal", "breakfast", "lunch", "dinner", "snack",
    },
    EventType.SLEEP: {"sleep", "slept", "nap", "napped", "bed", "bedtime", "woke"},
    EventType.DIAPER: {"diaper", "poop", "pee", "wet", "dirty"},
    EventType.PUMPING: {"pump", "pumped", "pumping"},
    EventType.MILESTONE: {"milestone", "first", "crawled", "walked", "rolled"},
    EventType.GROWTH_MEASUREMENT: {"weight", "weighed", "height", "length", "measured"},
    EventType.SICKNESS: {"fever", "sick", "cough", "vomited", "rash", "temperature"},
    EventType.MEDICINE: {"medicine", "medication", "gave", "dose", "tylenol", "ibuprofen"},
    EventType.MEDICAL_VISIT: {"doctor", "pediatrician", "appointment", "checkup", "visit"},
    EventType.VACCINATION: {"vaccine", "vaccination", "shot", "shots"},
}


def parse_event_type(value: Any) -> EventType | None:
    if value is None:
        return None
    key = str(value).strip().upper().replace(" ", "_")
    try:
        return EventType(key)
    except ValueError:
        return _TYPE_ALIASES.get(key)


def _float(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _merge_unique(first: list[Any], second: list[Any]) -> list[Any]:
    merged = list(first)
    for item in second:
        if item not in merged:
            merged.append(item)
    return merged


def group_candidates(
    candidates: list[ExtractedEventCandidate],
    window: timedelta = timedelta(minutes=PIPELINE_GROUPING_WINDOW_MINUTES),
) -> list[ExtractedEventCandidate]:
    """
    Merge candidates describing the same real-world moment.

    Two candidates merge when they share category and type and their
    timestamps are within `window` of the group's first member. The merged
    candidate keeps the first member's timestamp and payload; the others'
    payloads are nested under event_data["items"], food_items and tags are
    unioned, and confidence is the minimum of the members. Input order is
    preserved.
    """
    groups: list[list[ExtractedEventCandidate]] = []
    for candidate in candidates:
        for group in groups:
            head = group[0]
            if (
                head.category == candidate.category
                and head.event_type == candidate.event_type
                and abs(head.timestamp - candidate.timestamp) <= window
            ):
                group.append(candidate)
                break
        else:
            groups.append([candidate])

    merged = []
    for group in groups:
        if len(group) == 1:
            merged.append(group[0])
            continue

        counter("pipeline.extractor.merged_candidates", len(group) - 1)
        head = group[0]
        event_data = dict(head.event_data)
        items = [dict(head.event_data)] + [dict(c.event_data) for c in group[1:]]
        event_data["items"] = items

        food_items: list[Any] = list(event_data.get("food_items") or [])
        for member in group[1:]:
            food_items = _merge_unique(food_items, list(member.event_data.get("food_items") or []))
            if name := member.event_data.get("food_name"):
                food_items = _merge_unique(food_items, [name])
        if head.event_data.get("food_name"):
            food_items = _merge_unique([head.event_data["food_name"]], food_items)
        if food_items:
            event_data["food_items"] = food_items

        tags: list[str] = []
        for member in group:
            tags = _merge_unique(tags, member.tags)

        summaries: list[str] = []
        for member in group:
            summaries = _merge_unique(summaries, [member.summary])

        merged.append(
            ExtractedEventCandidate(
                category=head.category,
                event_type=head.event_type,
                timestamp=head.timestamp,
                summary="; ".join(summaries),
                confidence=min(member.confidence for member in group),
                event_data=event_data,
                tags=tags,
            )
        )
    return merged


class EventExtractor:
    """Model-backed event extraction with deterministic post-processing."""

    def __init__(self, model: ModelGateway, system_instruction: str):
        self.model = model
        self.system_instruction = system_instruction

    def extract(
        self,
        text: str,
        now: datetime,
        attachment: AttachmentInterpretation | None = None,
        profile_context: str = "",
        memory_context: str = "",
        chat_history: str = "",
    ) -> ExtractionResult:
        """
        Extract event candidates. Never raises.

        Args:
            text: The parent's message
            now: Caller's local time (anchor for relative phrases)
            attachment: Stage 1 output, if any
            profile_context: Profile block for the model
            memory_context: Relevant memories, if any
            chat_history: Recent conversation, oldest first

        Side Effects:
            - Calls the model gateway once (unless the input is empty)
            - Increments telemetry counters
        """
        message = (text or "").strip()
        if not message and attachment is None:
            counter("pipeline.extractor.empty_message")
            return ExtractionResult.empty_message()

        prompt = ModelPrompt(
            stage=STAGE,
            system_instruction=self.system_instruction,
            context=self._build_context(now, attachment, profile_context, memory_context, chat_history),
            user_text=sanitize(message) or "(attachments only, no message)",
        )

        try:
            raw = self.model.generate(prompt)
        except Exception as e:
            counter("pipeline.extractor.upstream_error")
            logger.error("Extraction model call failed: %s", e)
            log_event("pipeline.extractor.error", error=str(e)[:200])
            return ExtractionResult.failure(str(e))

        try:
            data = extract_json_object(raw)
        except ParseError as e:
            counter("pipeline.extractor.parse_error")
            logger.warning("Extraction reply unparseable, returning zero events: %s", e)
            return ExtractionResult.failure(str(e))

        result = self._build_result(data, message, now, attachment)
        counter("pipeline.extractor.success")
        logger.info(
            "EXTRACTOR RESULT: events=%d, confidence=%.2f, clarifications=%d",
            len(result.events),
            result.confidence,
            len(result.clarification_needed),
        )
        log_event(
            "pipeline.extractor.result",
            events=len(result.events),
            confidence=result.confidence,
            clarifications=len(result.clarification_needed),
        )
        return result

    def _build_context(
        self,
        now: datetime,
        attachment: AttachmentInterpretation | None,
        profile_context: str,
        memory_context: str,
        chat_history: str,
    ) -> str:
        parts = [
            "⏰ CURRENT SYSTEM TIME: "
            + now.strftime("%Y-%m-%dT%H:%M:%S")
            + f" ({now.strftime('%A')})"
        ]
        if profile_context:
            parts.append("=== BABY PROFILE ===\n" + profile_context.rstrip())
        if attachment is not None:
            parts.append("=== ATTACHMENT CONTENT ===\n" + attachment.to_context().rstrip())
        if memory_context:
            parts.append("=== RELEVANT MEMORIES ===\n" + memory_context.rstrip())
        if chat_history:
            parts.append("=== RECENT CHAT HISTORY ===\n" + chat_history.rstrip())
        return "\n\n".join(parts)

    def _build_result(
        self,
        data: dict[str, Any],
        message: str,
        now: datetime,
        attachment: AttachmentInterpretation | None,
    ) -> ExtractionResult:
        raw_questions = data.get("clarification_needed") or []
        if isinstance(raw_questions, str):
            raw_questions = [raw_questions]
        clarifications = [str(q) for q in raw_questions if q] if isinstance(raw_questions, list) else []

        attachment_day = attachment_date(attachment)
        raw_events = data.get("events") or []
        if not isinstance(raw_events, list):
            raw_events = []

        candidates = []
        for index, raw_event in enumerate(raw_events):
            candidate = self._build_candidate(raw_event, index, message, now, attachment_day, clarifications)
            if candidate is not None:
                candidates.append(candidate)

        candidates = group_candidates(candidates)
        confidence = _float(data.get("confidence"), 0.5)

        if confidence < PIPELINE_CLARIFICATION_THRESHOLD and not clarifications:
            clarifications.append(GENERIC_CLARIFICATION)
        if not candidates and not clarifications:
            clarifications.append(NOTHING_FOUND_CLARIFICATION)

        source = parse_data_source(data.get("data_source_type"), DataSourceType.AI_CHAT)
        thinking = data.get("ai_think_process")

        return ExtractionResult(
            ai_message=str(data.get("ai_message") or DEFAULT_REPLY),
            confidence=confidence,
            events=candidates,
            clarification_needed=clarifications,
            intent_understanding=str(data.get("intent_understanding") or ""),
            data_source_type=source,
            thinking=str(thinking) if thinking is not None else None,
        )

    def _build_candidate(
        self,
        raw_event: Any,
        index: int,
        message: str,
        now: datetime,
        attachment_day: date | None,
        clarifications: list[str],
    ) -> ExtractedEventCandidate | None:
        """Validate one raw event; None (plus a clarification) if unusable."""
        if not isinstance(raw_event, dict):
            counter("pipeline.extractor.candidate_dropped")
            return None

        event_type = parse_event_type(raw_event.get("event_type"))
        if event_type is None:
            counter("pipeline.extractor.candidate_dropped")
            label = raw_event.get("event_type") or raw_event.get("summary") or "one of the events"
            logger.warning("Dropping candidate with unknown event type: %r", raw_event.get("event_type"))
            clarifications.append(f"I wasn't sure what kind of event '{label}' was. Could you describe it again?")
            return None

        payload = parse_event_data(event_type, raw_event.get("event_data"))
        event_data = payload.to_event_data()
        tags = event_data.pop("ai_tags", [])

        summary = str(raw_event.get("summary") or "").strip()
        if not summary:
            summary = f"{event_type.value.replace('_', ' ').title()} recorded"

        keywords = set(summary.lower().split()) | _TYPE_WORDS.get(event_type, set())
        clause = segment_for(message, keywords, index)
        timestamp = resolve_event_time(
            now,
            model_value=raw_event.get("timestamp"),
            texts=(summary, clause, message) if clause else (summary, message),
            attachment_day=attachment_day,
        )

        return ExtractedEventCandidate(
            category=category_for(event_type),
            event_type=event_type,
            timestamp=timestamp,
            summary=summary,
            confidence=_float(raw_event.get("confidence"), 0.5),
            event_data=event_data,
            tags=tags,
        )
