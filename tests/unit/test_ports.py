"""Unit tests for the collaborator ports: HTTP adapters and fakes."""

import json
from datetime import date

import pytest
import requests

from tala.errors import UpstreamUnavailable
from tala.observability.telemetry import get_counter
from tala.ports import http as http_module
from tala.ports.files import FileMetadata, HttpFileDirectory
from tala.ports.memory import InMemoryMemory, Mem0Memory
from tala.ports.model import ModelPrompt, ScriptedModelGateway
from tala.ports.profiles import HttpProfileDirectory, Profile


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.content = json.dumps(payload).encode() if payload is not None else b""
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def fake_http(monkeypatch):
    """Replace requests.request; returns the list of recorded calls."""
    calls = []
    responses = []

    def fake_request(method, url, **kwargs):
        calls.append((method, url, kwargs))
        reply = responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(http_module.requests, "request", fake_request)
    return calls, responses


def test_profile_from_api():
    profile = Profile.from_api(
        7,
        {
            "id": 7,
            "babyName": "Mia",
            "birthDate": "2025-03-01T00:00:00Z",
            "parentName": "Sam",
            "parentRole": "dad",
            "hasDaycare": False,
            "daycareName": "Little Oaks",
            "favoriteToy": "giraffe",
        },
    )

    assert profile.name == "Mia"
    assert profile.birth_date == date(2025, 3, 1)
    assert profile.daycare_name is None
    assert profile.extra == {"favoriteToy": "giraffe"}


def test_file_metadata_from_api():
    metadata = FileMetadata.from_api(
        "101",
        {"publicUrl": "https://files.example/101.jpg", "mimeType": "image/jpeg", "fileSize": "2048"},
    )

    assert metadata.url == "https://files.example/101.jpg"
    assert metadata.size == 2048
    assert metadata.display_name == "file-101"


def test_file_metadata_without_url():
    with pytest.raises(ValueError):
        FileMetadata.from_api("101", {"mimeType": "image/jpeg"})


class TestHttpAdapters:
    """Tests for the requests-backed adapters"""

    def test_profile_lookup(self, fake_http):
        """Should GET the profile and map it."""
        calls, responses = fake_http
        responses.append(FakeResponse(200, {"id": 7, "babyName": "Mia"}))

        profile = HttpProfileDirectory("https://profiles.example/").get_profile(7)

        assert profile.name == "Mia"
        assert calls[0][0] == "GET"
        assert calls[0][1] == "https://profiles.example/api/v1/profiles/7"
        assert calls[0][2]["timeout"] > 0

    def test_http_error_is_upstream_unavailable(self, fake_http):
        """Should turn a 404 into UpstreamUnavailable with the status code."""
        _, responses = fake_http
        responses.append(FakeResponse(404, {"error": "missing"}))

        with pytest.raises(UpstreamUnavailable) as exc_info:
            HttpFileDirectory("https://files.example").resolve_metadata("404")

        assert exc_info.value.status_code == 404
        assert exc_info.value.collaborator == "file_directory"
        assert get_counter("collaborator.file_directory.http_404") == 1

    def test_timeout_is_upstream_unavailable(self, fake_http):
        """Should turn a transport timeout into UpstreamUnavailable."""
        _, responses = fake_http
        responses.append(requests.exceptions.Timeout("slow"))

        with pytest.raises(UpstreamUnavailable):
            HttpProfileDirectory("https://profiles.example").get_profile(7)

        assert get_counter("collaborator.profile_directory.timeout") == 1

    def test_file_without_url_is_upstream_unavailable(self, fake_http):
        """Should reject metadata that cannot be used."""
        _, responses = fake_http
        responses.append(FakeResponse(200, {"id": 101}))

        with pytest.raises(UpstreamUnavailable):
            HttpFileDirectory("https://files.example").resolve_metadata("101")

    def test_memory_search(self, fake_http):
        """Should post the query and return memory strings."""
        calls, responses = fake_http
        responses.append(FakeResponse(200, {"results": [{"memory": "Mia naps at 1pm"}, {"id": "x"}]}))

        memories = Mem0Memory("https://mem0.example", api_key="k").search_relevant(7, "nap", 5)

        assert memories == ["Mia naps at 1pm"]
        assert calls[0][2]["json"]["user_id"] == "profile-7"
        assert calls[0][2]["headers"] == {"Authorization": "Token k"}

    def test_disabled_memory_makes_no_calls(self, fake_http):
        """Should skip the network when memory is disabled."""
        calls, _ = fake_http

        memory = Mem0Memory(None)

        assert memory.enabled is False
        assert memory.search_relevant(7, "nap", 5) == []
        assert calls == []


class TestScriptedModelGateway:
    """Tests for the scripted model fake"""

    def _prompt(self, stage="event_extractor"):
        return ModelPrompt(stage=stage, system_instruction="sys", user_text="hi")

    def test_replies_in_order_last_repeats(self):
        """Should pop replies in order and repeat the last one."""
        model = ScriptedModelGateway().script("event_extractor", "one", "two")

        assert [model.generate(self._prompt()) for _ in range(3)] == ["one", "two", "two"]

    def test_unscripted_stage_is_unavailable(self):
        """Should raise UpstreamUnavailable for a stage with no replies."""
        with pytest.raises(UpstreamUnavailable):
            ScriptedModelGateway().generate(self._prompt("interaction_classifier"))

    def test_callable_and_exception_replies(self):
        """Should call callables with the prompt and raise scripted exceptions."""
        model = ScriptedModelGateway().script(
            "event_extractor", lambda prompt: prompt.user_text.upper(), RuntimeError("down")
        )

        assert model.generate(self._prompt()) == "HI"
        with pytest.raises(RuntimeError):
            model.generate(self._prompt())
        assert len(model.calls_for("event_extractor")) == 2


def test_in_memory_memory_outage():
    memory = InMemoryMemory()
    memory.unavailable = True

    with pytest.raises(UpstreamUnavailable):
        memory.recent_history(7, 10)


def test_render_text_with_context():
    prompt = ModelPrompt(stage="s", system_instruction="sys", user_text="hello", context="CTX\n")

    assert prompt.render_text() == "CTX\n\n=== USER MESSAGE ===\nhello"
