"""
Event intake - append a pipeline interpretation to the Origin Log, then
project it.

The Origin Log write is the durability boundary. Projection runs right
after it but a projection failure does not fail the request: the origin
event stays UNPROCESSED and the sweep picks it up later.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pydantic

from tala.errors import ValidationError
from tala.events.models import ChatEventPayload
from tala.events.origin_log import OriginLogRepository
from tala.events.projector import EventProjector
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event

logger = get_logger(__name__)

STORED_MESSAGE = "Chat event stored successfully"


@dataclass
class IntakeResult:
    success: bool
    origin_event_id: str
    timeline_entries_created: int
    events_count: int
    created: bool = True
    projected: bool = True
    message: str = STORED_MESSAGE


def parse_payload(data: ChatEventPayload | dict[str, Any]) -> ChatEventPayload:
    """Validate a raw intake body; caller errors become ValidationError."""
    if isinstance(data, ChatEventPayload):
        return data
    if not isinstance(data, dict) or not data.get("profile_id", data.get("profileId")):
        raise ValidationError("profile_id is required", field="profile_id")
    try:
        return ChatEventPayload.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid chat event: {location} {first.get('msg', '')}".strip(), field=location) from e


class EventIntakeService:
    """Origin Log append followed by synchronous projection."""

    def __init__(self, projector: EventProjector | None = None):
        self.projector = projector or EventProjector()

    def record(self, data: ChatEventPayload | dict[str, Any]) -> IntakeResult:
        """
        Store one interpretation and project it.

        Raises:
            ValidationError: Missing profile id or malformed payload
            PersistenceError: The Origin Log write failed
        """
        payload = parse_payload(data)

        origin, created = OriginLogRepository.create(payload)
        logger.info(
            "Chat event stored: origin_event_id=%s, profile_id=%s, events=%d",
            origin.id,
            payload.profile_id,
            len(payload.events),
        )

        entries_created = 0
        projected = True
        try:
            projection = self.projector.project(origin.id)
            entries_created = projection.timeline_entries_created
        except Exception as e:
            projected = False
            counter("events.intake.projection_deferred")
            logger.error(
                "Projection failed, origin event %s kept for reprocessing: %s", origin.id, e
            )

        log_event(
            "events.intake.recorded",
            origin_event_id=origin.id,
            profile_id=payload.profile_id,
            created=created,
            events=len(payload.events),
            timeline_entries=entries_created,
            projected=projected,
        )
        return IntakeResult(
            success=True,
            origin_event_id=origin.id,
            timeline_entries_created=entries_created,
            events_count=len(payload.events),
            created=created,
            projected=projected,
        )
