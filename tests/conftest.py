"""
Pytest configuration shared across unit and integration tests

Every test runs against its own SQLite file (TALA_DB_PATH) with fresh
telemetry. Collaborators are the in-memory fake adapters and the model
gateway replays scripted replies, so nothing here touches the network.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

import pytest

from tala.chat.service import ChatService
from tala.events.intake import EventIntakeService
from tala.events.projector import EventProjector
from tala.infrastructure.database import init_database, reset_pool
from tala.llm.prompts import PromptSet
from tala.observability.telemetry import reset_counters, reset_latencies
from tala.pipeline.context import ContextAssembler
from tala.pipeline.orchestrator import PipelineOrchestrator
from tala.ports.files import FileMetadata, InMemoryFileDirectory
from tala.ports.memory import InMemoryMemory
from tala.ports.model import ScriptedModelGateway
from tala.ports.profiles import InMemoryProfileDirectory, Profile

PROFILE_ID = 7
USER_ID = 42

# Friday afternoon; relative phrases in tests resolve against this
NOW = datetime(2025, 11, 14, 15, 0, 0)


@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    """Point the pool at a fresh database file for each test"""
    db_path = tmp_path / "tala.db"
    monkeypatch.setenv("TALA_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    reset_counters()
    reset_latencies()
    yield db_path
    reset_pool()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def prompts():
    return PromptSet(
        version="test",
        attachment_interpreter="Describe the attached file as JSON.",
        interaction_classifier="Classify the message as JSON.",
        event_extractor="Extract baby events as JSON.",
    )


@pytest.fixture
def model():
    return ScriptedModelGateway()


@pytest.fixture
def profiles():
    return InMemoryProfileDirectory(
        [
            Profile(
                profile_id=PROFILE_ID,
                name="Mia",
                birth_date=date(2025, 3, 1),
                gender="female",
                guardian_name="Sam",
                guardian_role="parent",
            )
        ]
    )


@pytest.fixture
def files():
    return InMemoryFileDirectory(
        [
            FileMetadata(
                file_id="101",
                url="https://files.example/101.jpg",
                mime_type="image/jpeg",
                file_name="lunch.jpg",
                thumbnail_url="https://files.example/101-thumb.jpg",
                size=2048,
            ),
            FileMetadata(
                file_id="102",
                url="https://files.example/102.pdf",
                mime_type="application/pdf",
                file_name="daycare-report.pdf",
                size=40960,
            ),
        ]
    )


@pytest.fixture
def memory():
    return InMemoryMemory()


@pytest.fixture
def orchestrator(model, prompts):
    return PipelineOrchestrator.from_prompts(model, prompts)


@pytest.fixture
def assembler(profiles, memory, files):
    assembler = ContextAssembler(profiles, memory, files, timeout=2.0, max_workers=4)
    yield assembler
    assembler.shutdown()


@pytest.fixture
def intake():
    return EventIntakeService(EventProjector(default_model_version="test-model"))


@pytest.fixture
def chat_service(orchestrator, assembler, memory, intake):
    service = ChatService(
        orchestrator=orchestrator,
        assembler=assembler,
        memory=memory,
        intake=intake,
        max_workers=2,
        model_version="test-model",
    )
    yield service
    service.shutdown(wait=True)


# ============================================================================
# Scripted model reply builders
# ============================================================================


def _classification_json(interaction_type: str, confidence: float = 0.9, reason: str = "test") -> str:
    return json.dumps(
        {"interaction_type": interaction_type, "confidence": confidence, "reason": reason}
    )


def _extraction_json(
    events: list[dict[str, Any]],
    ai_message: str = "Got it, recorded!",
    confidence: float = 0.9,
    clarification_needed: list[str] | None = None,
    **extra: Any,
) -> str:
    body = {
        "ai_message": ai_message,
        "intent_understanding": "Parent is logging an event",
        "confidence": confidence,
        "events": events,
        "clarification_needed": clarification_needed or [],
    }
    body.update(extra)
    return json.dumps(body)


def _attachment_json(
    summary: str,
    detected_type: str = "PHOTO",
    extracted_text: str = "",
    key_findings: list[str] | None = None,
) -> str:
    return json.dumps(
        {
            "content_summary": summary,
            "extracted_text": extracted_text,
            "key_findings": key_findings or [],
            "detected_type": detected_type,
            "confidence": 0.9,
        }
    )


@pytest.fixture
def classification_reply():
    """Factory: classifier reply JSON"""
    return _classification_json


@pytest.fixture
def extraction_reply():
    """Factory: extractor reply JSON"""
    return _extraction_json


@pytest.fixture
def attachment_reply():
    """Factory: attachment interpreter reply JSON"""
    return _attachment_json


@pytest.fixture
def chat_event_body():
    """Factory: event intake request body (camelCase, as the API receives it)"""

    def build(events: list[dict[str, Any]] | None = None, **overrides: Any) -> dict[str, Any]:
        body: dict[str, Any] = {
            "profileId": PROFILE_ID,
            "userId": USER_ID,
            "originalText": "Baby drank 120ml formula at 2pm",
            "replyText": "Recorded a 120ml formula feeding at 2:00 PM.",
            "events": events
            if events is not None
            else [
                {
                    "event_category": "JOURNAL",
                    "event_type": "FEEDING",
                    "timestamp": "2025-11-14T14:00:00",
                    "summary": "Drank 120ml formula",
                    "event_data": {"amount": 120, "unit": "ml", "feeding_type": "formula"},
                    "confidence": 0.95,
                }
            ],
            "attachmentIds": [],
        }
        body.update(overrides)
        return body

    return build
