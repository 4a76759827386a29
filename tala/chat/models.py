"""
Chat message domain models.

A ChatMessage is the RawMessage of the ingestion pipeline: created once by
ingress, never mutated afterwards.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageType(str, Enum):
    TEXT = "text"  # Plain conversation
    EVENT = "event"  # Assistant reply that recorded events
    SUGGESTION = "suggestion"


class ChatMessage(BaseModel):
    """One stored chat message (user or assistant)."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Unique identifier (UUID)")
    profile_id: int = Field(..., gt=0)
    user_id: int
    role: MessageRole
    content: str
    message_type: MessageType = MessageType.TEXT
    attachment_ids: list[str] = Field(default_factory=list)

    # Assistant-only AI metadata
    interaction_type: str | None = None
    confidence: float | None = None
    extracted_records: list[dict[str, Any]] | None = None
    thinking_process: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("attachment_ids", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> list[str]:
        return [str(item) for item in v or []]

    @property
    def clarification_questions(self) -> list[str]:
        """Questions this (assistant) message left open for the parent."""
        if not self.metadata:
            return []
        questions = self.metadata.get("clarification_needed") or []
        return [str(q) for q in questions if q]

    def history_line(self) -> str:
        """Render as one line of AI context history."""
        speaker = "User" if self.role == MessageRole.USER.value else "Assistant"
        line = f"{speaker}: {self.content}"
        if self.attachment_ids:
            line += f" [{len(self.attachment_ids)} attachment(s)]"
        return line

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""

        def dump(value: Any) -> str | None:
            return json.dumps(value) if value is not None else None

        return {
            "id": self.id,
            "profile_id": self.profile_id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "message_type": self.message_type,
            "attachment_ids": json.dumps(self.attachment_ids),
            "interaction_type": self.interaction_type,
            "confidence": self.confidence,
            "extracted_records_json": dump(self.extracted_records),
            "thinking_process": dump(self.thinking_process),
            "metadata": dump(self.metadata),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ChatMessage:
        """Create ChatMessage from database row."""

        def load(value: str | None) -> Any:
            return json.loads(value) if value else None

        return cls(
            id=row["id"],
            profile_id=row["profile_id"],
            user_id=row["user_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            message_type=MessageType(row["message_type"]),
            attachment_ids=json.loads(row["attachment_ids"]) if row["attachment_ids"] else [],
            interaction_type=row.get("interaction_type"),
            confidence=row.get("confidence"),
            extracted_records=load(row.get("extracted_records_json")),
            thinking_process=load(row.get("thinking_process")),
            metadata=load(row.get("metadata")),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


def format_history(messages: list[ChatMessage]) -> str:
    """Render messages (oldest first) as the recent-history context block."""
    return "\n".join(message.history_line() for message in messages)


class ChatHistoryPage(BaseModel):
    """One page of history: newest page first, oldest-first within the page."""

    messages: list[ChatMessage]
    page: int
    size: int
    total: int

    @property
    def has_more(self) -> bool:
        return (self.page + 1) * self.size < self.total
