"""
Chat Message Repository - insert and page through chat_messages.

Messages are immutable: there is no update path.
"""

from __future__ import annotations

import uuid
from typing import Any

from tala.chat.models import ChatHistoryPage, ChatMessage, MessageRole, MessageType, utc_now
from tala.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from tala.observability.logging import get_logger

logger = get_logger(__name__)


class ChatMessageRepository:
    """Repository for chat messages (RawMessage store)."""

    @staticmethod
    @retry_on_db_lock()
    def create(
        profile_id: int,
        user_id: int,
        role: MessageRole,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachment_ids: list[str] | None = None,
        interaction_type: str | None = None,
        confidence: float | None = None,
        extracted_records: list[dict[str, Any]] | None = None,
        thinking_process: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """
        Store a new chat message.

        Side Effects:
            - Inserts row into chat_messages
            - Commits transaction
        """
        message = ChatMessage(
            id=str(uuid.uuid4()),
            profile_id=profile_id,
            user_id=user_id,
            role=role,
            content=content,
            message_type=message_type,
            attachment_ids=attachment_ids or [],
            interaction_type=interaction_type,
            confidence=confidence,
            extracted_records=extracted_records,
            thinking_process=thinking_process,
            metadata=metadata,
            created_at=utc_now(),
        )

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO chat_messages (
                    id, profile_id, user_id, role, content, message_type,
                    attachment_ids, interaction_type, confidence,
                    extracted_records_json, thinking_process, metadata, created_at
                ) VALUES (
                    :id, :profile_id, :user_id, :role, :content, :message_type,
                    :attachment_ids, :interaction_type, :confidence,
                    :extracted_records_json, :thinking_process, :metadata, :created_at
                )
                """,
                message.to_db_dict(),
            )

        logger.info(
            "Stored %s message %s for profile %s", message.role, message.id, profile_id
        )
        return message

    @staticmethod
    def get_by_id(message_id: str) -> ChatMessage | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM chat_messages WHERE id = ?", (message_id,)
            ).fetchone()

        if not row:
            return None
        return ChatMessage.from_db_row(dict(row))

    @staticmethod
    def list_recent(profile_id: int, limit: int = 10) -> list[ChatMessage]:
        """
        Most recent messages for a profile, returned oldest first.

        Used to build the recent-history context for the AI stages.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chat_messages
                WHERE profile_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (profile_id, limit),
            ).fetchall()

        messages = [ChatMessage.from_db_row(dict(row)) for row in rows]
        messages.reverse()
        return messages

    @staticmethod
    def get_history_page(profile_id: int, page: int = 0, size: int = 20) -> ChatHistoryPage:
        """
        Paginated history.

        Page 0 holds the newest `size` messages; messages inside a page are
        ordered oldest first so a client can render them top to bottom.
        """
        with get_db_connection() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM chat_messages WHERE profile_id = ?", (profile_id,)
            ).fetchone()[0]
            rows = conn.execute(
                """
                SELECT * FROM chat_messages
                WHERE profile_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (profile_id, size, page * size),
            ).fetchall()

        messages = [ChatMessage.from_db_row(dict(row)) for row in rows]
        messages.reverse()
        return ChatHistoryPage(messages=messages, page=page, size=size, total=total)

