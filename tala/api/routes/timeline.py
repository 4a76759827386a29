"""Timeline read endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from tala.api.dependencies import ServiceContainer, get_container
from tala.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from tala.events.models import TimelineEntry, TimelineEventType

router = APIRouter(prefix="/api/v1/timeline", tags=["timeline"])


class TimelineEntryResponse(BaseModel):
    id: str
    origin_event_id: str
    narrative_event_id: str
    profile_id: int
    timeline_type: str
    data_source: str
    record_time: str
    title: str
    ai_summary: str | None
    ai_tags: list[str]
    location: str | None
    ai_model_version: str | None
    attachments: list[dict[str, Any]]
    created_at: str

    @classmethod
    def from_entry(cls, entry: TimelineEntry) -> TimelineEntryResponse:
        return cls(
            id=entry.id,
            origin_event_id=entry.origin_event_id,
            narrative_event_id=entry.narrative_event_id,
            profile_id=entry.profile_id,
            timeline_type=entry.timeline_type,
            data_source=entry.data_source,
            record_time=entry.record_time.isoformat(timespec="seconds"),
            title=entry.title,
            ai_summary=entry.ai_summary,
            ai_tags=entry.ai_tags,
            location=entry.location,
            ai_model_version=entry.ai_model_version,
            attachments=[ref.model_dump() for ref in entry.attachments],
            created_at=entry.created_at.isoformat(),
        )


class TimelineResponse(BaseModel):
    entries: list[TimelineEntryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


@router.get("", response_model=TimelineResponse)
def get_timeline(
    profile_id: int = Query(..., gt=0),
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
    timeline_type: str | None = Query(None, description="e.g. FEEDING, SLEEP, DIAPER_CHANGE"),
    container: ServiceContainer = Depends(get_container),
) -> TimelineResponse:
    """Timeline for a profile, newest first, with resolved attachments."""
    type_filter = None
    if timeline_type:
        try:
            type_filter = TimelineEventType(timeline_type.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown timeline_type: {timeline_type}") from None

    page = container.timeline.list_for_profile(
        profile_id, limit=limit, offset=offset, timeline_type=type_filter
    )
    return TimelineResponse(
        entries=[TimelineEntryResponse.from_entry(e) for e in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )
