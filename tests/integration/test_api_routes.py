"""
API tests through FastAPI's TestClient.

The production container is replaced via dependency_overrides with one
built from the fake adapters and the scripted model gateway.
"""

import json

import pytest
from fastapi.testclient import TestClient

from tala.api.dependencies import build_container, get_container
from tala.errors import PersistenceError
from tala.events.origin_log import OriginLogRepository
from tala.pipeline.classifier import STAGE as CLASSIFIER_STAGE
from tala.pipeline.event_extractor import STAGE as EXTRACTOR_STAGE

FEEDING = {
    "event_type": "FEEDING",
    "timestamp": "2025-11-14T14:00:00",
    "summary": "Drank 120ml formula",
    "event_data": {"amount": 120, "unit": "ml", "feeding_type": "formula"},
}


@pytest.fixture
def container(model, profiles, memory, files, prompts):
    container = build_container(model, profiles, memory, files, prompts=prompts, max_workers=2)
    yield container
    container.chat.shutdown(wait=True)


@pytest.fixture
def client(container):
    # Imported here so schema setup at import time sees this test's database
    from tala.api.app import app

    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def recording(model, classification_reply, extraction_reply):
    model.script(CLASSIFIER_STAGE, classification_reply("DATA_RECORDING", 0.95))
    model.script(EXTRACTOR_STAGE, extraction_reply([FEEDING], ai_message="Recorded 120ml of formula at 2:00 PM."))
    return model


def _parse_sse(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestHealth:
    """Tests for service metadata endpoints"""

    def test_health(self, client):
        """Should report healthy."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "Tala API"

    def test_database_health(self, client):
        """Should report pool stats."""
        response = client.get("/health/db")

        assert response.status_code == 200
        assert response.json()["pool"]["closed"] is False

    def test_root_lists_endpoints(self, client):
        """Should list the public endpoints."""
        endpoints = client.get("/").json()["endpoints"]

        assert endpoints["chat_events"] == "/api/v1/chat-events"
        assert endpoints["timeline"] == "/api/v1/timeline"


class TestChatEvents:
    """Tests for /api/v1/chat-events"""

    def test_create(self, client, chat_event_body):
        """Should store and project, answering in camelCase."""
        response = client.post("/api/v1/chat-events", json=chat_event_body())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["timelineEntriesCreated"] == 1
        assert data["eventsCount"] == 1
        assert data["message"] == "Chat event stored successfully"
        assert data["originEventId"]

    def test_missing_profile_id(self, client, chat_event_body):
        """Should answer 400 naming the field."""
        body = chat_event_body()
        del body["profileId"]

        response = client.post("/api/v1/chat-events", json=body)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["field"] == "profile_id"

    def test_persistence_failure(self, client, chat_event_body, monkeypatch):
        """Should answer 500 without leaking details."""

        def broken(payload, event_time=None, notes=None):
            raise PersistenceError("disk full at /var/lib/tala.db")

        monkeypatch.setattr(OriginLogRepository, "create", staticmethod(broken))

        response = client.post("/api/v1/chat-events", json=chat_event_body())

        assert response.status_code == 500
        assert "disk full" not in response.text

    def test_get_with_projections(self, client, chat_event_body):
        """Should return the origin event, its narrative and entries with attachments."""
        created = client.post("/api/v1/chat-events", json=chat_event_body(attachmentIds=["101"])).json()

        response = client.get(f"/api/v1/chat-events/{created['originEventId']}")

        assert response.status_code == 200
        data = response.json()
        assert data["origin_event"]["processed"] is True
        assert data["narrative_event"]["event_type"] == "FEEDING"
        assert data["timeline_entries"][0]["attachments"][0]["resource_id"] == "101"

    def test_get_unknown(self, client):
        """Should answer 404 for an unknown id."""
        assert client.get("/api/v1/chat-events/missing").status_code == 404

    def test_reprocess(self, client, chat_event_body):
        """Should report an empty sweep when everything is projected."""
        client.post("/api/v1/chat-events", json=chat_event_body())

        response = client.post("/api/v1/chat-events/reprocess?limit=10")

        assert response.status_code == 200
        assert response.json() == {"attempted": 0, "projected": 0, "failed": 0, "failed_ids": []}


class TestChat:
    """Tests for /api/v1/chat"""

    def test_sync_chat(self, client, recording):
        """Should return the reply and the recorded event."""
        response = client.post(
            "/api/v1/chat",
            json={"profileId": 7, "userId": 42, "message": "Baby drank 120ml formula at 2pm"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == "Recorded 120ml of formula at 2:00 PM."
        assert data["events_count"] == 1
        assert data["timeline_entries_created"] == 1
        assert data["origin_event_id"]

    def test_sync_chat_missing_profile(self, client, model):
        """Should answer 400 without calling the model."""
        response = client.post("/api/v1/chat", json={"userId": 42, "message": "hi"})

        assert response.status_code == 400
        assert model.prompts == []

    def test_malformed_body_is_sanitized(self, client):
        """Should answer 422 with field names only."""
        response = client.post("/api/v1/chat", json={"profileId": "seven", "message": "hi"})

        assert response.status_code == 422
        data = response.json()
        assert data["invalid_fields"] == ["profileId"]
        assert "seven" not in response.text

    def test_stream(self, client, recording):
        """Should stream named SSE events ending with complete."""
        response = client.post(
            "/api/v1/chat/stream",
            json={"profileId": 7, "userId": 42, "message": "Baby drank 120ml formula at 2pm"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "thinking"
        assert "storage" in names
        assert names[-1] == "complete"
        assert events[-1][1]["events_count"] == 1

    def test_history(self, client, model, classification_reply):
        """Should page history newest first."""
        model.script(CLASSIFIER_STAGE, classification_reply("GENERAL_CHAT"))
        for text in ("hi", "thanks"):
            client.post("/api/v1/chat", json={"profileId": 7, "userId": 42, "message": text})

        response = client.get("/api/v1/chat/history", params={"profile_id": 7, "size": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 4
        assert data["has_more"] is True
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert data["messages"][0]["content"] == "thanks"


class TestTimeline:
    """Tests for /api/v1/timeline"""

    def test_timeline(self, client, chat_event_body):
        """Should list entries newest first with paging fields."""
        client.post("/api/v1/chat-events", json=chat_event_body())

        response = client.get("/api/v1/timeline", params={"profile_id": 7})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["has_more"] is False
        assert data["entries"][0]["timeline_type"] == "FEEDING"
        assert data["entries"][0]["record_time"] == "2025-11-14T14:00:00"

    def test_unknown_type(self, client):
        """Should answer 400 for an unknown timeline type."""
        response = client.get("/api/v1/timeline", params={"profile_id": 7, "timeline_type": "BATH"})

        assert response.status_code == 400

    def test_type_filter(self, client, chat_event_body):
        """Should filter case-insensitively by type."""
        client.post("/api/v1/chat-events", json=chat_event_body())

        response = client.get("/api/v1/timeline", params={"profile_id": 7, "timeline_type": "sleep"})

        assert response.json()["total"] == 0
