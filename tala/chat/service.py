"""
Chat ingress - one unit of work per inbound message.

Order of work for a message:
1. Validate (caller errors never reach the pipeline)
2. Store the user message
3. Assemble context (profile, history, memories, attachment metadata)
4. Run the pipeline (stages 1-3)
5. Hand extracted events to event intake (Origin Log + projection)
6. Store the assistant reply
7. Append both messages to conversational memory (best-effort)

Streaming runs the same work on a worker pool and publishes progress to a
ProgressChannel. The transport reads the channel; if it stops reading, the
worker keeps going and every write still happens.
"""

from __future__ import annotations

import concurrent.futures
import queue
import sqlite3
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tala.chat.models import ChatHistoryPage, ChatMessage, MessageRole, MessageType
from tala.chat.repository import ChatMessageRepository
from tala.config import (
    API_ATTACHMENTS_MAX,
    API_MESSAGE_MAX_CHARS,
    GEMINI_MODEL,
    INGRESS_MAX_WORKERS,
    STREAM_TIMEOUT_SECONDS,
)
from tala.errors import ValidationError
from tala.events.intake import EventIntakeService
from tala.events.models import ChatEventPayload
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.context import ContextAssembler
from tala.pipeline.orchestrator import PipelineOrchestrator, ProgressCallback, SafeEmitter
from tala.pipeline.types import PipelineRequest, PipelineResult, PipelineStage, ProgressEvent
from tala.ports.memory import ConversationalMemory

logger = get_logger(__name__)


def chat_source_event_id(user_message_id: str) -> str:
    """External id tying an origin event to the user message that produced it."""
    return f"chat-message:{user_message_id}"


@dataclass
class ChatTurn:
    """One inbound message."""

    profile_id: int | None
    user_id: int | None
    message: str
    attachment_ids: list[str] = field(default_factory=list)
    now: datetime | None = None


@dataclass
class ChatOutcome:
    """What the parent gets back for one message."""

    reply: str
    interaction_type: str
    confidence: float
    events: list[dict[str, Any]] = field(default_factory=list)
    clarification_needed: list[str] = field(default_factory=list)
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    origin_event_id: str | None = None
    timeline_entries_created: int = 0
    storage_error: str | None = None
    degraded_stages: list[str] = field(default_factory=list)

    @property
    def events_count(self) -> int:
        return len(self.events)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "interaction_type": self.interaction_type,
            "confidence": self.confidence,
            "events": self.events,
            "events_count": self.events_count,
            "clarification_needed": self.clarification_needed,
            "user_message_id": self.user_message_id,
            "assistant_message_id": self.assistant_message_id,
            "origin_event_id": self.origin_event_id,
            "timeline_entries_created": self.timeline_entries_created,
            "storage_error": self.storage_error,
            "degraded_stages": self.degraded_stages,
        }


class ChannelClosed(RuntimeError):
    """The consumer of a ProgressChannel went away."""


class ProgressChannel:
    """
    Ordered progress events from a worker to one consumer.

    Iteration ends after finish(), or with an error event if nothing arrives
    before the stream deadline.
    """

    _DONE = object()

    def __init__(self, timeout: float = STREAM_TIMEOUT_SECONDS):
        self.timeout = timeout
        self.closed = False
        self._queue: queue.Queue[object] = queue.Queue()

    def publish(self, event: ProgressEvent) -> None:
        if self.closed:
            raise ChannelClosed("progress consumer disconnected")
        self._queue.put(event)

    def finish(self) -> None:
        self._queue.put(self._DONE)

    def close(self) -> None:
        """Called by the transport when the client disconnects."""
        self.closed = True

    def __iter__(self) -> Iterator[ProgressEvent]:
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                item = self._queue.get(timeout=max(0.0, remaining))
            except queue.Empty:
                counter("chat.stream.timeout")
                yield ProgressEvent(name="error", data={"message": "Processing timed out"})
                return
            if item is self._DONE:
                return
            assert isinstance(item, ProgressEvent)
            yield item


class ChatService:
    """Chat ingress: sync, streaming and history."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        assembler: ContextAssembler,
        memory: ConversationalMemory,
        intake: EventIntakeService,
        max_workers: int = INGRESS_MAX_WORKERS,
        model_version: str = GEMINI_MODEL,
    ):
        self.orchestrator = orchestrator
        self.assembler = assembler
        self.memory = memory
        self.intake = intake
        self.model_version = model_version
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tala-ingress"
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.assembler.shutdown()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate(turn: ChatTurn) -> None:
        """
        Raises:
            ValidationError: Missing profile/user id, oversized message, or
                too many attachments
        """
        if not turn.profile_id or turn.profile_id <= 0:
            raise ValidationError("profile_id is required", field="profile_id")
        if turn.user_id is None:
            raise ValidationError("user_id is required", field="user_id")
        if len(turn.message) > API_MESSAGE_MAX_CHARS:
            raise ValidationError(
                f"message exceeds {API_MESSAGE_MAX_CHARS} characters", field="message"
            )
        if len(turn.attachment_ids) > API_ATTACHMENTS_MAX:
            raise ValidationError(
                f"at most {API_ATTACHMENTS_MAX} attachments per message", field="attachment_ids"
            )

    # ------------------------------------------------------------------
    # Synchronous ingress
    # ------------------------------------------------------------------

    def handle(self, turn: ChatTurn, on_progress: ProgressCallback | None = None) -> ChatOutcome:
        """
        Process one message end to end.

        The reply is always produced; storage problems after the pipeline
        are reported on the outcome instead of raised.

        Raises:
            ValidationError: The request is invalid
        """
        self.validate(turn)
        assert turn.profile_id is not None and turn.user_id is not None
        emit = SafeEmitter(on_progress)
        now = (turn.now or datetime.now()).replace(microsecond=0)
        attachment_ids = [str(a) for a in turn.attachment_ids]

        user_message = self._store_message(
            turn.profile_id,
            turn.user_id,
            MessageRole.USER,
            turn.message,
            attachment_ids=attachment_ids,
        )

        emit(ProgressEvent.thinking(PipelineStage.CONTEXT_ENRICHMENT, "Loading conversation history..."))
        context = self.assembler.assemble(
            turn.profile_id,
            turn.message,
            attachment_ids,
            today=now.date(),
            exclude_message_id=user_message.id if user_message else None,
        )

        result = self.orchestrator.process(
            PipelineRequest(
                profile_id=turn.profile_id,
                user_id=turn.user_id,
                text=turn.message,
                now=now,
                attachment_ids=attachment_ids,
                context=context,
            ),
            on_progress=emit,
        )

        outcome = ChatOutcome(
            reply=result.reply,
            interaction_type=result.classification.interaction_type.value,
            confidence=result.extraction.confidence,
            events=[candidate.to_dict() for candidate in result.events],
            clarification_needed=list(result.extraction.clarification_needed),
            user_message_id=user_message.id if user_message else None,
            degraded_stages=list(result.degraded_stages),
        )

        if result.events:
            self._record_events(turn, attachment_ids, user_message, result, outcome, emit)

        assistant_message = self._store_message(
            turn.profile_id,
            turn.user_id,
            MessageRole.ASSISTANT,
            result.reply,
            message_type=MessageType.EVENT if result.events else MessageType.TEXT,
            interaction_type=outcome.interaction_type,
            confidence=outcome.confidence,
            extracted_records=outcome.events or None,
            thinking_process=result.thinking_process(),
            metadata={
                "intent_understanding": result.extraction.intent_understanding,
                "confidence": result.extraction.confidence,
                "clarification_needed": outcome.clarification_needed,
                "origin_event_id": outcome.origin_event_id,
            },
        )
        outcome.assistant_message_id = assistant_message.id if assistant_message else None

        emit(ProgressEvent.thinking(PipelineStage.MEMORY_STORAGE, "Updating conversation memory..."))
        for message in (user_message, assistant_message):
            if message is not None:
                self._remember(message)

        emit(
            ProgressEvent(
                name="complete",
                data={
                    "success": True,
                    "message": outcome.reply,
                    "events_count": outcome.events_count,
                    "user_message_id": outcome.user_message_id,
                    "assistant_message_id": outcome.assistant_message_id,
                    "origin_event_id": outcome.origin_event_id,
                },
            )
        )
        log_event(
            "chat.turn.completed",
            profile_id=turn.profile_id,
            interaction_type=outcome.interaction_type,
            events=outcome.events_count,
            origin_event_id=outcome.origin_event_id,
            degraded=",".join(outcome.degraded_stages) or None,
        )
        return outcome

    def _record_events(
        self,
        turn: ChatTurn,
        attachment_ids: list[str],
        user_message: ChatMessage | None,
        result: PipelineResult,
        outcome: ChatOutcome,
        emit: SafeEmitter,
    ) -> None:
        assert turn.profile_id is not None
        emit(ProgressEvent.thinking(PipelineStage.STORING_EVENTS, "Saving events..."))
        payload = ChatEventPayload.from_extraction(
            profile_id=turn.profile_id,
            user_id=turn.user_id,
            original_text=turn.message,
            extraction=result.extraction,
            attachment_ids=attachment_ids,
            source_event_id=chat_source_event_id(user_message.id) if user_message else None,
            ai_model_version=self.model_version,
            classification=result.classification,
            attachment=result.attachment_interpretation,
        )
        try:
            recorded = self.intake.record(payload)
        except Exception as e:
            counter("chat.turn.storage_failed")
            logger.error("Failed to store events for profile %s: %s", turn.profile_id, e)
            outcome.storage_error = "Events could not be saved"
            emit(ProgressEvent(name="storage", data={"success": False, "error": outcome.storage_error}))
            return

        outcome.origin_event_id = recorded.origin_event_id
        outcome.timeline_entries_created = recorded.timeline_entries_created
        emit(
            ProgressEvent(
                name="storage",
                data={
                    "success": True,
                    "message": "Events stored successfully",
                    "events_count": recorded.events_count,
                    "origin_event_id": recorded.origin_event_id,
                    "timeline_entries_created": recorded.timeline_entries_created,
                },
            )
        )

    def _store_message(
        self, profile_id: int, user_id: int, role: MessageRole, content: str, **fields: Any
    ) -> ChatMessage | None:
        try:
            return ChatMessageRepository.create(profile_id, user_id, role, content, **fields)
        except sqlite3.Error as e:
            counter(f"chat.message.{role.value}.store_failed")
            logger.error("Failed to store %s message for profile %s: %s", role.value, profile_id, e)
            return None

    def _remember(self, message: ChatMessage) -> None:
        try:
            self.memory.append(message)
        except Exception as e:
            counter("chat.memory.append_failed")
            logger.warning("Memory append failed for message %s: %s", message.id, e)

    # ------------------------------------------------------------------
    # Streaming ingress
    # ------------------------------------------------------------------

    def stream(self, turn: ChatTurn, timeout: float = STREAM_TIMEOUT_SECONDS) -> ProgressChannel:
        """
        Validate, then process on the ingress pool.

        Returns the channel the transport should drain. The worker owns the
        unit of work; closing the channel only stops progress delivery.

        Raises:
            ValidationError: The request is invalid (nothing is started)
        """
        self.validate(turn)
        channel = ProgressChannel(timeout=timeout)
        self._executor.submit(self._stream_worker, turn, channel)
        counter("chat.stream.started")
        return channel

    def _stream_worker(self, turn: ChatTurn, channel: ProgressChannel) -> None:
        try:
            self.handle(turn, on_progress=channel.publish)
        except Exception:
            counter("chat.stream.error")
            logger.exception("Streaming chat failed for profile %s", turn.profile_id)
            SafeEmitter(channel.publish)(
                ProgressEvent(name="error", data={"message": "Failed to process chat"})
            )
        finally:
            channel.finish()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def history(profile_id: int, page: int = 0, size: int = 20) -> ChatHistoryPage:
        if profile_id <= 0:
            raise ValidationError("profile_id is required", field="profile_id")
        return ChatMessageRepository.get_history_page(profile_id, page=page, size=size)
