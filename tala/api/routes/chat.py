"""
Chat ingress endpoints.

- POST /api/v1/chat/stream - Server-Sent Events progress + final reply
- POST /api/v1/chat - synchronous final result
- GET /api/v1/chat/history - paginated history
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tala.api.dependencies import ServiceContainer, get_container
from tala.chat.models import ChatMessage
from tala.chat.service import ChatTurn, ProgressChannel
from tala.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter
from tala.pipeline.types import ProgressEvent

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class ChatRequest(BaseModel):
    """Inbound message. Accepts camelCase keys (profileId, attachmentIds)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    profile_id: int | None = None
    user_id: int | None = None
    message: str = ""
    attachment_ids: list[str] = Field(default_factory=list)

    @field_validator("attachment_ids", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> list[str]:
        return [str(item) for item in v or []]

    @field_validator("message", mode="before")
    @classmethod
    def text_or_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def to_turn(self) -> ChatTurn:
        return ChatTurn(
            profile_id=self.profile_id,
            user_id=self.user_id,
            message=self.message,
            attachment_ids=self.attachment_ids,
        )


class ChatResponse(BaseModel):
    reply: str
    interaction_type: str
    confidence: float
    events: list[dict[str, Any]]
    events_count: int
    clarification_needed: list[str]
    user_message_id: str | None
    assistant_message_id: str | None
    origin_event_id: str | None
    timeline_entries_created: int
    storage_error: str | None
    degraded_stages: list[str]


class ChatMessageResponse(BaseModel):
    id: str
    profile_id: int
    user_id: int
    role: str
    content: str
    message_type: str
    attachment_ids: list[str]
    interaction_type: str | None
    confidence: float | None
    extracted_records: list[dict[str, Any]] | None
    clarification_needed: list[str]
    created_at: str

    @classmethod
    def from_message(cls, message: ChatMessage) -> ChatMessageResponse:
        return cls(
            id=message.id,
            profile_id=message.profile_id,
            user_id=message.user_id,
            role=message.role,
            content=message.content,
            message_type=message.message_type,
            attachment_ids=message.attachment_ids,
            interaction_type=message.interaction_type,
            confidence=message.confidence,
            extracted_records=message.extracted_records,
            clarification_needed=message.clarification_questions,
            created_at=message.created_at.isoformat(),
        )


class ChatHistoryResponse(BaseModel):
    messages: list[ChatMessageResponse]
    page: int
    size: int
    total: int
    has_more: bool


def format_sse(event: ProgressEvent) -> str:
    return f"event: {event.name}\ndata: {json.dumps(event.data, default=str)}\n\n"


def _drain(channel: ProgressChannel) -> Iterator[str]:
    try:
        for event in channel:
            yield format_sse(event)
    finally:
        # Client gone or stream over; the worker keeps persisting either way
        channel.close()


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/stream")
def stream_chat(
    request: ChatRequest,
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """
    Chat with live progress.

    Named events: thinking, classification, extraction, event, storage,
    then complete or error.
    """
    logger.info(
        "POST /api/v1/chat/stream - profile_id=%s, attachments=%d",
        request.profile_id,
        len(request.attachment_ids),
    )
    counter("api.chat.stream")
    channel = container.chat.stream(request.to_turn())
    return StreamingResponse(
        _drain(channel),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    container: ServiceContainer = Depends(get_container),
) -> ChatResponse:
    """Chat without progress events; returns the final result."""
    logger.info(
        "POST /api/v1/chat - profile_id=%s, attachments=%d",
        request.profile_id,
        len(request.attachment_ids),
    )
    counter("api.chat.sync")
    outcome = container.chat.handle(request.to_turn())
    return ChatResponse(**outcome.to_dict())


@router.get("/history", response_model=ChatHistoryResponse)
def chat_history(
    profile_id: int = Query(..., gt=0),
    page: int = Query(0, ge=0),
    size: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    container: ServiceContainer = Depends(get_container),
) -> ChatHistoryResponse:
    """History for a profile: newest page first, oldest first within a page."""
    history = container.chat.history(profile_id, page=page, size=size)
    return ChatHistoryResponse(
        messages=[ChatMessageResponse.from_message(m) for m in history.messages],
        page=history.page,
        size=history.size,
        total=history.total,
        has_more=history.has_more,
    )
