"""
Interaction Classifier - stage 2 of the ingestion pipeline.

Labels a message as data recording, curriculum upload, question, general
chat, or out of scope. The model proposes a label; deterministic rules then
settle the cases where wording and context pull in different directions:

- A trailing "?" means a question, unless the message is a short factual
  answer (such as a time or a yes/no) to a clarification we asked for
- Such an answer to an open clarification is data recording; short chat
  like "ok thanks!" and real questions keep their label
- A report-like attachment (daycare report, medical record) turns chat or
  out-of-scope into data recording

On model or parse failure the result is a low-confidence question: no events
are fabricated and the parent still gets a reply.
"""

from __future__ import annotations

import re

from tala.config import PIPELINE_SHORT_ANSWER_MAX_WORDS
from tala.llm.json_extraction import extract_json_object
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.sanitize import sanitize
from tala.pipeline.types import (
    AttachmentInterpretation,
    InteractionClassification,
    InteractionType,
)
from tala.ports.model import ModelGateway, ModelPrompt

logger = get_logger(__name__)

STAGE = "interaction_classifier"

_QUESTION_START = re.compile(
    r"^(how|what|when|where|why|who|which|is|are|was|were|does|do|did|can|could|should|will|would)\b",
    re.IGNORECASE,
)
_FACTUAL_ANSWER = re.compile(
    r"\d|\b(yes|yeah|yep|no|nope|nah|none|once|twice|half|one|two|three|four|five|six|seven|eight|nine|ten|"
    r"eleven|twelve|noon|midnight|morning|afternoon|evening|night|ago|now|earlier)\b",
    re.IGNORECASE,
)


def is_short_answer(text: str, max_words: int = PIPELINE_SHORT_ANSWER_MAX_WORDS) -> bool:
    return 0 < len(text.split()) <= max_words


def is_factual_answer(text: str) -> bool:
    """Short reply that carries a fact (time, amount or yes/no) and is not itself a question."""
    message = text.strip()
    if not is_short_answer(message) or _QUESTION_START.match(message):
        return False
    return bool(_FACTUAL_ANSWER.search(message))


def build_classifier_context(
    attachment: AttachmentInterpretation | None,
    chat_history: str,
    pending_clarifications: list[str],
) -> str:
    parts = []
    if attachment is not None:
        parts.append("=== ATTACHMENT CONTEXT ===\n" + attachment.to_context())
    if chat_history:
        parts.append("=== RECENT CHAT HISTORY ===\n" + chat_history)
    if pending_clarifications:
        parts.append(
            "=== OPEN CLARIFICATION QUESTIONS ===\n"
            + "\n".join(f"- {q}" for q in pending_clarifications)
        )
    return "\n\n".join(parts)


class InteractionClassifier:
    """Model-backed classifier with deterministic tie-breaks."""

    def __init__(self, model: ModelGateway, system_instruction: str):
        self.model = model
        self.system_instruction = system_instruction

    def classify(
        self,
        text: str,
        attachment: AttachmentInterpretation | None = None,
        chat_history: str = "",
        pending_clarifications: list[str] | None = None,
    ) -> InteractionClassification:
        """
        Classify one message. Never raises.

        Side Effects:
            - Calls the model gateway once (unless the input is empty)
            - Increments telemetry counters
        """
        pending_clarifications = pending_clarifications or []
        message = (text or "").strip()

        if not message and attachment is None:
            counter("pipeline.classifier.empty_input")
            return InteractionClassification.empty_input()

        prompt = ModelPrompt(
            stage=STAGE,
            system_instruction=self.system_instruction,
            context=build_classifier_context(attachment, chat_history, pending_clarifications),
            user_text=sanitize(message) or "(attachments only, no message)",
        )

        try:
            raw = self.model.generate(prompt)
            result = self._parse_response(raw)
            counter("pipeline.classifier.success")
        except Exception as e:
            counter("pipeline.classifier.fallback")
            logger.warning("Classification failed, defaulting to question: %s", e)
            log_event("pipeline.classifier.fallback", error=str(e)[:200])
            return InteractionClassification.fallback(str(e))

        result = self._apply_tie_breaks(result, message, attachment, pending_clarifications)
        logger.info(
            "CLASSIFIER RESULT: type=%s, confidence=%.2f, reason='%s'",
            result.interaction_type.value,
            result.confidence,
            result.reason[:80],
        )
        log_event(
            "pipeline.classifier.result",
            interaction_type=result.interaction_type.value,
            confidence=result.confidence,
        )
        return result

    def _parse_response(self, raw: str) -> InteractionClassification:
        """
        Raises:
            ParseError: No JSON object in the reply
            ValueError: Unknown interaction type
        """
        data = extract_json_object(raw)
        interaction_type = InteractionType(str(data.get("interaction_type", "")).strip().upper())

        try:
            confidence = float(data.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8

        return InteractionClassification(
            interaction_type=interaction_type,
            confidence=max(0.0, min(1.0, confidence)),
            reason=str(data.get("reason") or ""),
            thinking=data.get("ai_think_process"),
        )

    def _apply_tie_breaks(
        self,
        result: InteractionClassification,
        message: str,
        attachment: AttachmentInterpretation | None,
        pending_clarifications: list[str],
    ) -> InteractionClassification:
        answering_clarification = bool(pending_clarifications) and is_factual_answer(message)
        label = result.interaction_type

        if message.endswith("?") and not answering_clarification:
            if label in (InteractionType.DATA_RECORDING, InteractionType.CURRICULUM_UPLOAD):
                counter("pipeline.classifier.tiebreak.question_mark")
                return self._override(result, InteractionType.QUESTION_ANSWERING, "trailing question mark")
            return result

        if answering_clarification and label != InteractionType.DATA_RECORDING:
            counter("pipeline.classifier.tiebreak.clarification_answer")
            return self._override(result, InteractionType.DATA_RECORDING, "answer to clarification")

        if (
            attachment is not None
            and attachment.has_structured_report
            and label in (InteractionType.GENERAL_CHAT, InteractionType.OUT_OF_SCOPE)
        ):
            counter("pipeline.classifier.tiebreak.report_attachment")
            return self._override(result, InteractionType.DATA_RECORDING, "report attachment")

        return result

    @staticmethod
    def _override(
        result: InteractionClassification, label: InteractionType, rule: str
    ) -> InteractionClassification:
        logger.info(
            "Classifier tie-break (%s): %s -> %s",
            rule,
            result.interaction_type.value,
            label.value,
        )
        return InteractionClassification(
            interaction_type=label,
            confidence=result.confidence,
            reason=f"{result.reason} [tie-break: {rule}]".strip(),
            thinking=result.thinking,
        )
