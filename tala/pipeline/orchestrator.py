"""
Pipeline Orchestrator - sequences the three AI stages.

Stage 1 (attachments) -> stage 2 (classification) -> stage 3 (extraction,
only for data recording). Non-recording intents get a canned reply and no
events. Every stage boundary degrades instead of failing, and process()
never raises: the parent always gets a reply.

Progress is reported through an optional callback. The callback belongs to
the transport; if it fails (client gone), the pipeline keeps going.
"""

from __future__ import annotations

from collections.abc import Callable

from tala.llm.prompts import PromptSet
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event, time_block
from tala.pipeline.attachment_interpreter import AttachmentInterpreter
from tala.pipeline.classifier import InteractionClassifier
from tala.pipeline.event_extractor import EventExtractor
from tala.pipeline.types import (
    AttachmentInterpretation,
    ExtractionResult,
    InteractionClassification,
    InteractionType,
    PipelineRequest,
    PipelineResult,
    PipelineStage,
    ProgressEvent,
)
from tala.ports.model import ModelGateway

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

CANNED_REPLIES: dict[InteractionType, str] = {
    InteractionType.QUESTION_ANSWERING: (
        "I'd be happy to help answer your question! However, I need more context "
        "about your baby's data to provide a helpful response."
    ),
    InteractionType.GENERAL_CHAT: (
        "Thank you for chatting with me! How can I help you with your baby's care today?"
    ),
    InteractionType.OUT_OF_SCOPE: (
        "I'm here to help with baby tracking and parenting support. "
        "Could you ask me something related to your baby's care?"
    ),
}
DEFAULT_CANNED_REPLY = "I'm not sure how to help with that. Could you rephrase your request?"


def canned_reply(interaction_type: InteractionType) -> str:
    return CANNED_REPLIES.get(interaction_type, DEFAULT_CANNED_REPLY)


class PipelineOrchestrator:
    """Runs stages 1-3 for one message."""

    def __init__(
        self,
        interpreter: AttachmentInterpreter,
        classifier: InteractionClassifier,
        extractor: EventExtractor,
    ):
        self.interpreter = interpreter
        self.classifier = classifier
        self.extractor = extractor

    @classmethod
    def from_prompts(cls, model: ModelGateway, prompts: PromptSet) -> PipelineOrchestrator:
        """Wire all three stages to one model gateway."""
        return cls(
            interpreter=AttachmentInterpreter(model, prompts.attachment_interpreter),
            classifier=InteractionClassifier(model, prompts.interaction_classifier),
            extractor=EventExtractor(model, prompts.event_extractor),
        )

    def process(self, request: PipelineRequest, on_progress: ProgressCallback | None = None) -> PipelineResult:
        """
        Run the pipeline. Never raises.

        Args:
            request: Message, caller's local time, and assembled context
            on_progress: Optional progress callback (errors in it are ignored)

        Returns:
            PipelineResult with classification, extraction (or canned reply)
            and the attachment interpretation if there were attachments
        """
        emit = SafeEmitter(on_progress)
        degraded: list[str] = []

        try:
            with time_block("pipeline.process"):
                return self._run(request, emit, degraded)
        except Exception as e:
            counter("pipeline.orchestrator.unexpected_error")
            logger.exception("Pipeline failed unexpectedly for profile %s", request.profile_id)
            log_event("pipeline.orchestrator.error", profile_id=request.profile_id, error=str(e)[:200])
            degraded.append("orchestrator")
            return PipelineResult(
                classification=InteractionClassification.fallback(str(e)),
                extraction=ExtractionResult.failure(str(e)),
                degraded_stages=degraded,
            )

    def _run(self, request: PipelineRequest, emit: SafeEmitter, degraded: list[str]) -> PipelineResult:
        context = request.context
        emit(ProgressEvent.thinking(PipelineStage.INITIALIZATION, "Reading your message..."))

        # Stage 1: attachments
        interpretation: AttachmentInterpretation | None = None
        if context.attachments or context.unresolved_attachment_ids:
            emit(ProgressEvent.thinking(PipelineStage.ATTACHMENT_PARSING, "Looking at your attachments..."))
            interpretation = self.interpreter.interpret(
                context.attachments,
                user_text=request.text,
                unresolved_ids=context.unresolved_attachment_ids,
            )
            if interpretation is not None and interpretation.failed_file_ids:
                degraded.append("attachment_interpreter")

        # Stage 2: classification
        emit(ProgressEvent.thinking(PipelineStage.CLASSIFICATION, "Understanding what you need..."))
        classification = self.classifier.classify(
            request.text,
            attachment=interpretation,
            chat_history=context.chat_history,
            pending_clarifications=context.pending_clarifications,
        )
        if classification.reason.startswith("Classification failed"):
            degraded.append("interaction_classifier")
        emit(
            ProgressEvent(
                name="classification",
                data={
                    "interaction_type": classification.interaction_type.value,
                    "confidence": classification.confidence,
                    "reason": classification.reason,
                },
            )
        )

        # Stage 3: extraction, only for data recording
        if classification.is_data_recording:
            emit(ProgressEvent.thinking(PipelineStage.AI_PROCESSING, "Extracting events..."))
            extraction = self.extractor.extract(
                request.text,
                now=request.now,
                attachment=interpretation,
                profile_context=context.profile_context,
                memory_context=context.memory_context,
                chat_history=context.chat_history,
            )
            if extraction.confidence == 0.0 and not extraction.events:
                degraded.append("event_extractor")
            emit(
                ProgressEvent(
                    name="extraction",
                    data={
                        "events_count": len(extraction.events),
                        "confidence": extraction.confidence,
                        "clarification_needed": list(extraction.clarification_needed),
                    },
                )
            )
            for candidate in extraction.events:
                emit(ProgressEvent(name="event", data=candidate.to_dict()))
        else:
            counter(f"pipeline.orchestrator.canned.{classification.interaction_type.value.lower()}")
            extraction = ExtractionResult.canned(
                canned_reply(classification.interaction_type), classification.interaction_type
            )

        log_event(
            "pipeline.orchestrator.result",
            profile_id=request.profile_id,
            interaction_type=classification.interaction_type.value,
            events=len(extraction.events),
            degraded=",".join(degraded) or None,
        )
        return PipelineResult(
            classification=classification,
            extraction=extraction,
            attachment_interpretation=interpretation,
            degraded_stages=degraded,
        )


class SafeEmitter:
    """Wraps the transport callback so a dead consumer cannot stop the pipeline."""

    def __init__(self, callback: ProgressCallback | None):
        self.callback = callback
        self.failed = False

    def __call__(self, event: ProgressEvent) -> None:
        if self.callback is None or self.failed:
            return
        try:
            self.callback(event)
        except Exception as e:
            self.failed = True
            counter("pipeline.progress.consumer_error")
            logger.info("Progress consumer failed, continuing without it: %s", e)
