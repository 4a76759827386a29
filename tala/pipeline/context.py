"""
Context assembly for one unit of work.

Profile, recent history, relevant memories and attachment metadata are
independent lookups against collaborators, so they are issued in parallel
and joined before the AI stages run. Every lookup is time-bounded and
best-effort: a failure or timeout degrades to an empty (or placeholder)
context and never blocks the others.
"""

from __future__ import annotations

import concurrent.futures
import time
from datetime import date
from typing import TypeVar

from tala.chat.models import ChatMessage, MessageRole, format_history
from tala.config import (
    COLLABORATOR_TIMEOUT_SECONDS,
    CONTEXT_LOOKUP_WORKERS,
    PIPELINE_HISTORY_WINDOW,
    PIPELINE_MEMORY_SEARCH_LIMIT,
)
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.types import PipelineContext
from tala.ports.files import FileDirectory, FileMetadata
from tala.ports.memory import ConversationalMemory
from tala.ports.profiles import Profile, ProfileDirectory

logger = get_logger(__name__)

T = TypeVar("T")


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


def describe_age(birth_date: date | None, today: date) -> str:
    """Human age: "1 year 2 months", "3 months 2 weeks", "5 days", "Newborn"."""
    if birth_date is None:
        return "Unknown"

    years = today.year - birth_date.year
    months = today.month - birth_date.month
    days = today.day - birth_date.day
    if days < 0:
        months -= 1
        # Borrow the length of the month before `today`
        previous_month_end = today.replace(day=1).toordinal() - 1
        days += date.fromordinal(previous_month_end).day
    if months < 0:
        years -= 1
        months += 12

    if years < 0:
        return "Unknown"
    if years > 0:
        if months > 0:
            return f"{_plural(years, 'year')} {_plural(months, 'month')}"
        return _plural(years, "year")
    if months > 0:
        if days > 7:
            return f"{_plural(months, 'month')} {_plural(days // 7, 'week')}"
        return _plural(months, "month")
    if days >= 7:
        return _plural(days // 7, "week")
    if days > 0:
        return _plural(days, "day")
    return "Newborn"


def format_profile_context(profile: Profile, today: date) -> str:
    lines = [
        f"Baby Profile ID: {profile.profile_id}",
        f"Name: {profile.name}",
        f"Age: {describe_age(profile.birth_date, today)}",
        f"Birth Date: {profile.birth_date.isoformat() if profile.birth_date else 'Unknown'}",
    ]
    if profile.gender:
        lines.append(f"Gender: {profile.gender}")
    if profile.guardian_name:
        guardian = f"Parent: {profile.guardian_name}"
        if profile.guardian_role:
            guardian += f" ({profile.guardian_role})"
        lines.append(guardian)
    if profile.daycare_name:
        lines.append(f"Daycare: {profile.daycare_name}")
    if profile.concerns:
        lines.append(f"Parent Concerns: {profile.concerns}")
    return "\n".join(lines) + "\n"


def placeholder_profile_context(profile_id: int) -> str:
    return f"Baby Profile ID: {profile_id}\n(Profile data temporarily unavailable)\n"


def format_memories(memories: list[str]) -> str:
    return "\n".join(f"{i}. {memory}" for i, memory in enumerate(memories, start=1))


class ContextAssembler:
    """Gathers collaborator context in parallel with per-lookup deadlines."""

    def __init__(
        self,
        profiles: ProfileDirectory,
        memory: ConversationalMemory,
        files: FileDirectory,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
        max_workers: int = CONTEXT_LOOKUP_WORKERS,
        history_window: int = PIPELINE_HISTORY_WINDOW,
        memory_limit: int = PIPELINE_MEMORY_SEARCH_LIMIT,
    ):
        self.profiles = profiles
        self.memory = memory
        self.files = files
        self.timeout = timeout
        self.history_window = history_window
        self.memory_limit = memory_limit
        # A hung lookup holds a worker, never the caller
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tala-context"
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def assemble(
        self,
        profile_id: int,
        text: str,
        attachment_ids: list[str],
        today: date,
        exclude_message_id: str | None = None,
    ) -> PipelineContext:
        """
        Build the PipelineContext for one message. Never raises.

        Args:
            profile_id: Child profile
            text: The message (memory search query)
            attachment_ids: Attachment ids to resolve
            today: Caller's local date (for age)
            exclude_message_id: The message being processed, if it is already stored
        """
        profile_future = self._executor.submit(self.profiles.get_profile, profile_id)
        history_future = self._executor.submit(
            self.memory.recent_history, profile_id, self.history_window + 1
        )
        memory_future = self._executor.submit(
            self.memory.search_relevant, profile_id, text, self.memory_limit
        )
        file_futures = [
            (file_id, self._executor.submit(self.files.resolve_metadata, file_id))
            for file_id in attachment_ids
        ]
        deadline = time.monotonic() + self.timeout

        profile = self._await("profile", profile_future, deadline)
        history: list[ChatMessage] = self._await("history", history_future, deadline) or []
        memories: list[str] = self._await("memory_search", memory_future, deadline) or []

        attachments: list[FileMetadata] = []
        unresolved: list[str] = []
        for file_id, future in file_futures:
            metadata = self._await("file_metadata", future, deadline)
            if metadata is None:
                unresolved.append(file_id)
            else:
                attachments.append(metadata)

        history = [m for m in history if m.id != exclude_message_id][-self.history_window :]

        pending: list[str] = []
        if history and history[-1].role == MessageRole.ASSISTANT.value:
            pending = history[-1].clarification_questions

        profile_context = (
            format_profile_context(profile, today)
            if profile is not None
            else placeholder_profile_context(profile_id)
        )

        log_event(
            "pipeline.context.assembled",
            profile_id=profile_id,
            profile=profile is not None,
            history=len(history),
            memories=len(memories),
            attachments=len(attachments),
            unresolved=len(unresolved),
        )
        return PipelineContext(
            profile_context=profile_context,
            chat_history=format_history(history),
            memory_context=format_memories(memories),
            attachments=attachments,
            unresolved_attachment_ids=unresolved,
            pending_clarifications=pending,
        )

    def _await(self, lookup: str, future: concurrent.futures.Future[T], deadline: float) -> T | None:
        # One deadline for all lookups of a unit of work
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except concurrent.futures.TimeoutError:
            future.cancel()
            counter(f"pipeline.context.{lookup}.timeout")
            logger.warning("Context lookup '%s' timed out after %.1fs", lookup, self.timeout)
            return None
        except Exception as e:
            counter(f"pipeline.context.{lookup}.error")
            logger.warning("Context lookup '%s' failed, continuing without it: %s", lookup, e)
            return None
