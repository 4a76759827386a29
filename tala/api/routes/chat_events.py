"""
Event intake endpoints.

- POST /api/v1/chat-events - append to the Origin Log and project
- POST /api/v1/chat-events/reprocess - sweep unprocessed origin events
- GET /api/v1/chat-events/{origin_event_id} - origin event with its projections
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tala.api.dependencies import ServiceContainer, get_container
from tala.config import SWEEP_BATCH_SIZE
from tala.events.origin_log import OriginLogRepository
from tala.events.projection_repository import ProjectionRepository
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter

router = APIRouter(prefix="/api/v1/chat-events", tags=["chat-events"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class ChatEventResponse(BaseModel):
    """Intake result, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    origin_event_id: str
    timeline_entries_created: int
    events_count: int
    message: str


class ReprocessResponse(BaseModel):
    attempted: int
    projected: int
    failed: int
    failed_ids: list[str]


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", response_model=ChatEventResponse, response_model_by_alias=True)
def create_chat_event(
    body: dict[str, Any] = Body(...),
    container: ServiceContainer = Depends(get_container),
) -> ChatEventResponse:
    """
    Store one pipeline interpretation.

    Accepts {profileId, originalText, replyText, events[], attachmentIds[]}
    (snake_case or camelCase). Projection failures do not fail the request.
    """
    logger.info(
        "POST /api/v1/chat-events - profile_id=%s, events=%d",
        body.get("profile_id", body.get("profileId")),
        len(body.get("events") or body.get("candidateEvents") or []),
    )
    counter("api.chat_events.create")
    result = container.intake.record(body)
    return ChatEventResponse(
        success=result.success,
        origin_event_id=result.origin_event_id,
        timeline_entries_created=result.timeline_entries_created,
        events_count=result.events_count,
        message=result.message,
    )


@router.post("/reprocess", response_model=ReprocessResponse)
def reprocess(
    limit: int = Query(SWEEP_BATCH_SIZE, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> ReprocessResponse:
    """Project every UNPROCESSED origin event (oldest first)."""
    result = container.projector.sweep(limit=limit)
    return ReprocessResponse(**result.to_dict())


@router.get("/{origin_event_id}")
def get_chat_event(
    origin_event_id: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Origin event, its narrative and its timeline entries."""
    origin = OriginLogRepository.get(origin_event_id)
    if origin is None:
        raise HTTPException(status_code=404, detail="Origin event not found")

    narrative = ProjectionRepository.get_narrative(origin.id)
    return {
        "origin_event": origin.model_dump(mode="json"),
        "narrative_event": narrative.model_dump(mode="json") if narrative else None,
        "timeline_entries": [
            entry.model_dump(mode="json") for entry in container.timeline.list_for_origin(origin.id)
        ],
    }
