"""
End-to-end pipeline runs against the scripted model gateway.

Each test scripts every stage's reply and checks what the parent would get
back: the reply text, the classification and the extracted events.
"""

from datetime import datetime

import pytest

from tala.errors import UpstreamUnavailable
from tala.pipeline.attachment_interpreter import STAGE as ATTACHMENT_STAGE
from tala.pipeline.classifier import STAGE as CLASSIFIER_STAGE
from tala.pipeline.event_extractor import STAGE as EXTRACTOR_STAGE
from tala.pipeline.orchestrator import CANNED_REPLIES, PipelineOrchestrator, SafeEmitter
from tala.pipeline.types import (
    EventType,
    InteractionType,
    PipelineContext,
    PipelineRequest,
    ProgressEvent,
)
from tala.ports.files import FileMetadata

NOW = datetime(2025, 11, 14, 15, 0, 0)

PHOTO = FileMetadata(file_id="101", url="https://files.example/101.jpg", mime_type="image/jpeg", file_name="lunch.jpg")


def _request(text, context=None, attachment_ids=None):
    return PipelineRequest(
        profile_id=7,
        user_id=42,
        text=text,
        now=NOW,
        attachment_ids=attachment_ids or [],
        context=context or PipelineContext(profile_context="Name: Mia\nAge: 8 months\n"),
    )


class TestOrchestrator:
    """Tests for PipelineOrchestrator.process"""

    def test_feeding_is_recorded(self, orchestrator, model, classification_reply, extraction_reply):
        """Should classify as data recording and extract one 120ml feeding at 14:00."""
        model.script(CLASSIFIER_STAGE, classification_reply("DATA_RECORDING", 0.95))
        model.script(
            EXTRACTOR_STAGE,
            extraction_reply(
                [
                    {
                        "event_type": "FEEDING",
                        "timestamp": "2025-11-14T14:00:00",
                        "summary": "Drank 120ml formula",
                        "event_data": {"amount": 120, "unit": "ml", "feeding_type": "formula"},
                    }
                ],
                ai_message="Recorded 120ml of formula at 2:00 PM.",
            ),
        )
        progress = []

        result = orchestrator.process(_request("Baby drank 120ml formula at 2pm"), on_progress=progress.append)

        assert result.classification.interaction_type == InteractionType.DATA_RECORDING
        assert result.reply == "Recorded 120ml of formula at 2:00 PM."
        assert len(result.events) == 1
        assert result.events[0].event_type == EventType.FEEDING
        assert result.events[0].timestamp == datetime(2025, 11, 14, 14, 0)
        assert result.degraded_stages == []
        names = [event.name for event in progress]
        assert names[0] == "thinking"
        assert "classification" in names
        assert "extraction" in names
        assert "event" in names
        assert model.calls_for(ATTACHMENT_STAGE) == []

    def test_question_gets_canned_reply(self, orchestrator, model, classification_reply):
        """Should answer a question with zero events and no extraction call."""
        model.script(CLASSIFIER_STAGE, classification_reply("QUESTION_ANSWERING"))

        result = orchestrator.process(_request("How much did baby eat today?"))

        assert result.classification.interaction_type == InteractionType.QUESTION_ANSWERING
        assert result.events == []
        assert result.reply == CANNED_REPLIES[InteractionType.QUESTION_ANSWERING]
        assert result.extraction.confidence == 1.0
        assert model.calls_for(EXTRACTOR_STAGE) == []

    @pytest.mark.parametrize("label", ["GENERAL_CHAT", "OUT_OF_SCOPE"])
    def test_other_intents_never_extract(self, orchestrator, model, classification_reply, label):
        """Should never call extraction for non-recording intents."""
        model.script(CLASSIFIER_STAGE, classification_reply(label))

        result = orchestrator.process(_request("hello!"))

        assert result.events == []
        assert result.reply == CANNED_REPLIES[InteractionType(label)]
        assert model.calls_for(EXTRACTOR_STAGE) == []

    def test_total_model_outage_still_replies(self, orchestrator, model):
        """Should produce a reply and no events when every model call fails."""
        model.script(CLASSIFIER_STAGE, UpstreamUnavailable("deadline exceeded", "model"))
        model.script(EXTRACTOR_STAGE, UpstreamUnavailable("deadline exceeded", "model"))

        result = orchestrator.process(_request("Baby drank 120ml formula at 2pm"))

        assert result.reply
        assert result.events == []
        assert "interaction_classifier" in result.degraded_stages

    def test_extractor_outage_apologizes(self, orchestrator, model, classification_reply):
        """Should apologize when classification works but extraction does not."""
        model.script(CLASSIFIER_STAGE, classification_reply("DATA_RECORDING"))
        model.script(EXTRACTOR_STAGE, UpstreamUnavailable("deadline exceeded", "model"))

        result = orchestrator.process(_request("she napped from 1 to 2"))

        assert result.events == []
        assert "rephrase" in result.reply
        assert result.degraded_stages == ["event_extractor"]

    def test_attachment_context_reaches_extraction(
        self, orchestrator, model, classification_reply, extraction_reply, attachment_reply
    ):
        """Should interpret attachments first and hand the summary to the later stages."""
        model.script(ATTACHMENT_STAGE, attachment_reply("Bowl of rice and peas", "PHOTO"))
        model.script(CLASSIFIER_STAGE, classification_reply("DATA_RECORDING"))
        model.script(
            EXTRACTOR_STAGE,
            extraction_reply([{"event_type": "FEEDING", "summary": "Rice and peas", "timestamp": "2025-11-14T12:00:00"}]),
        )
        context = PipelineContext(attachments=[PHOTO])

        result = orchestrator.process(_request("lunch", context=context, attachment_ids=["101"]))

        assert result.attachment_interpretation.overall_summary == "Bowl of rice and peas"
        assert "Bowl of rice and peas" in model.calls_for(CLASSIFIER_STAGE)[0].context
        assert "Bowl of rice and peas" in model.calls_for(EXTRACTOR_STAGE)[0].context
        assert len(result.events) == 1

    def test_unreadable_attachment_degrades(self, orchestrator, model, classification_reply):
        """Should carry on when an attachment cannot be read."""
        model.script(CLASSIFIER_STAGE, classification_reply("GENERAL_CHAT"))

        result = orchestrator.process(
            _request("look", context=PipelineContext(unresolved_attachment_ids=["404"]), attachment_ids=["404"])
        )

        assert result.reply
        assert "attachment_interpreter" in result.degraded_stages

    def test_unexpected_stage_error_never_raises(self, orchestrator, model, monkeypatch):
        """Should convert an unexpected exception into a fallback result."""

        def explode(*args, **kwargs):
            raise KeyError("bug")

        monkeypatch.setattr(orchestrator.classifier, "classify", explode)

        result = orchestrator.process(_request("anything"))

        assert result.reply
        assert result.events == []
        assert result.degraded_stages == ["orchestrator"]

    def test_progress_consumer_failure_is_ignored(
        self, orchestrator, model, classification_reply, extraction_reply
    ):
        """Should finish the pipeline when the progress callback raises."""
        model.script(CLASSIFIER_STAGE, classification_reply("DATA_RECORDING"))
        model.script(EXTRACTOR_STAGE, extraction_reply([{"event_type": "DIAPER", "summary": "Wet diaper"}]))
        calls = []

        def consumer(event):
            calls.append(event)
            raise ConnectionError("client went away")

        result = orchestrator.process(_request("wet diaper just now"), on_progress=consumer)

        assert len(result.events) == 1
        assert len(calls) == 1


def test_from_prompts_wires_stages(model, prompts):
    orchestrator = PipelineOrchestrator.from_prompts(model, prompts)

    assert orchestrator.classifier.system_instruction == prompts.interaction_classifier
    assert orchestrator.extractor.system_instruction == prompts.event_extractor


def test_safe_emitter_without_callback():
    emitter = SafeEmitter(None)
    emitter(ProgressEvent(name="thinking"))

    assert emitter.failed is False
