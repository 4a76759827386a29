"""
Conversational Memory port.

Best-effort by contract: append, recent_history and search_relevant may fail,
and the pipeline proceeds without memory context when they do. Adapters
raise UpstreamUnavailable; the context assembler and the chat service
decide to degrade.

Production adapter: recent history comes from the chat message store, and
semantic memories live in a Mem0-compatible HTTP service (POST /add,
POST /search) keyed by "profile-{id}".
"""

from __future__ import annotations

from typing import Any, Protocol

from tala.chat.models import ChatMessage
from tala.chat.repository import ChatMessageRepository
from tala.errors import UpstreamUnavailable
from tala.observability.logging import get_logger
from tala.ports.http import post_json

logger = get_logger(__name__)


class ConversationalMemory(Protocol):
    """Protocol for conversation memory."""

    def append(self, message: ChatMessage) -> None: ...

    def recent_history(self, profile_id: int, limit: int) -> list[ChatMessage]:
        """Most recent messages, oldest first."""
        ...

    def search_relevant(self, profile_id: int, query: str, limit: int) -> list[str]:
        """Memories relevant to the query, most relevant first."""
        ...


def memory_user_key(profile_id: int) -> str:
    return f"profile-{profile_id}"


class Mem0Memory:
    """
    Production adapter.

    When disabled (MEM0_ENABLED=false or no base URL), append is a no-op and
    search returns nothing; history still comes from the local store.
    """

    def __init__(self, base_url: str | None, api_key: str | None = None, enabled: bool = True):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.enabled = enabled and bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Token {self.api_key}"}

    def append(self, message: ChatMessage) -> None:
        if not self.enabled:
            logger.debug("Mem0 disabled, skipping append for message %s", message.id)
            return

        metadata: dict[str, Any] = {"profile_id": message.profile_id, "user_id": message.user_id}
        post_json(
            "memory",
            f"{self.base_url}/add",
            json_body={
                "user_id": memory_user_key(message.profile_id),
                "messages": [{"role": message.role, "content": message.content}],
                "metadata": metadata,
            },
            headers=self._headers(),
        )

    def recent_history(self, profile_id: int, limit: int) -> list[ChatMessage]:
        try:
            return ChatMessageRepository.list_recent(profile_id, limit)
        except Exception as e:
            raise UpstreamUnavailable(f"Chat history unavailable: {e}", "memory") from e

    def search_relevant(self, profile_id: int, query: str, limit: int) -> list[str]:
        if not self.enabled or not query.strip():
            return []

        data = post_json(
            "memory",
            f"{self.base_url}/search",
            json_body={"user_id": memory_user_key(profile_id), "query": query, "limit": limit},
            headers=self._headers(),
        )
        results = data.get("results", []) if isinstance(data, dict) else data or []
        memories = [r["memory"] for r in results if isinstance(r, dict) and r.get("memory")]
        return memories[:limit]


class InMemoryMemory:
    """
    Fake adapter.

    Search is a naive word-overlap ranking over appended message contents.
    Set `unavailable` to simulate an outage.
    """

    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise UpstreamUnavailable("Memory store unavailable", "memory")

    def append(self, message: ChatMessage) -> None:
        self._check()
        self.messages.append(message)

    def recent_history(self, profile_id: int, limit: int) -> list[ChatMessage]:
        self._check()
        mine = [m for m in self.messages if m.profile_id == profile_id]
        return mine[-limit:] if limit > 0 else []

    def search_relevant(self, profile_id: int, query: str, limit: int) -> list[str]:
        self._check()
        words = {w for w in query.lower().split() if len(w) > 2}
        if not words:
            return []
        scored = []
        for message in self.messages:
            if message.profile_id != profile_id:
                continue
            overlap = len(words & set(message.content.lower().split()))
            if overlap:
                scored.append((overlap, message.content))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [content for _, content in scored[:limit]]
