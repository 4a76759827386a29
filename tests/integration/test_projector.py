"""
Integration tests for the Event Projector.

Covers the 1 + N shape of a projection, per-candidate failure isolation,
idempotent reprocessing and the sweep.
"""

import sqlite3
from datetime import datetime

import pytest

from tala.errors import PersistenceError, ValidationError
from tala.events import projector as projector_module
from tala.events.models import ChatEventPayload
from tala.events.origin_log import OriginLogRepository
from tala.events.projection_repository import ProjectionRepository
from tala.events.projector import EventProjector, main
from tala.observability.telemetry import get_counter

MEAL = {
    "event_category": "JOURNAL",
    "event_type": "FEEDING",
    "timestamp": "2025-11-14T08:00:00",
    "summary": "Oatmeal and banana",
    "event_data": {"food_items": ["oatmeal", "banana"]},
}
NAP = {
    "event_category": "JOURNAL",
    "event_type": "NAP",
    "timestamp": "2025-11-14T10:00:00",
    "summary": "Nap for an hour",
    "event_data": {"duration": 60, "location": "Crib", "ai_tags": ["nap"]},
}
DIAPER = {
    "event_category": "JOURNAL",
    "event_type": "DIAPER",
    "timestamp": "2025-11-14T11:00:00",
    "summary": "",
    "event_data": {"diaper_type": "wet"},
}


@pytest.fixture
def projector():
    return EventProjector(default_model_version="test-model")


@pytest.fixture
def origin(chat_event_body):
    """Factory: append an origin event and return its id"""

    def create(events=None, **overrides):
        payload = ChatEventPayload.model_validate(chat_event_body(events, **overrides))
        event, _ = OriginLogRepository.create(payload)
        return event.id

    return create


class TestProject:
    """Tests for EventProjector.project"""

    def test_single_event(self, projector, origin):
        """Should create one narrative and one entry for one candidate."""
        origin_id = origin()

        result = projector.project(origin_id)

        assert result.narrative.event_type == "FEEDING"
        assert result.narrative.title == "Drank 120ml formula"
        assert result.narrative.location == "Home"
        assert result.narrative.description == "Recorded a 120ml formula feeding at 2:00 PM."
        assert result.timeline_entries_created == 1
        entry = result.entries[0]
        assert entry.timeline_type == "FEEDING"
        assert entry.data_source == "AI_CHAT"
        assert entry.record_time == datetime(2025, 11, 14, 14, 0)
        assert entry.ai_model_version == "test-model"
        assert entry.original_user_message == "Baby drank 120ml formula at 2pm"
        assert entry.narrative_event_id == result.narrative.id
        assert OriginLogRepository.get(origin_id).processed is True

    def test_several_events(self, projector, origin):
        """Should create a NOTES narrative and one entry per candidate, in order."""
        origin_id = origin([MEAL, NAP, DIAPER])

        result = projector.project(origin_id)

        assert result.narrative.event_type == "NOTES"
        assert result.narrative.title == "3 events recorded"
        assert len(result.narrative.details) == 3
        assert [e.timeline_type for e in result.entries] == ["FEEDING", "SLEEP", "DIAPER_CHANGE"]
        assert [e.position for e in result.entries] == [0, 1, 2]
        assert result.entries[1].location == "Crib"
        assert result.entries[1].ai_tags == ["nap"]
        assert result.entries[2].title == "Diaper recorded"
        assert ProjectionRepository.dangling_timeline_entries() == 0

    def test_unknown_type_becomes_notes(self, projector, origin):
        """Should map an unrecognized type to NOTES instead of failing."""
        origin_id = origin([dict(MEAL, event_type="BATH", summary="Bath time")])

        result = projector.project(origin_id)

        assert result.narrative.event_type == "NOTES"
        assert result.entries[0].timeline_type == "NOTES"

    def test_missing_origin(self, projector):
        """Should raise ValidationError for an unknown origin event."""
        with pytest.raises(ValidationError):
            projector.project("missing")

    def test_one_candidate_fails_siblings_commit(self, projector, origin, monkeypatch):
        """Should skip a failing candidate and keep the others."""
        original_insert = ProjectionRepository.insert_timeline_entry

        def flaky_insert(conn, entry):
            if entry.position == 1:
                raise ValueError("bad candidate")
            original_insert(conn, entry)

        monkeypatch.setattr(ProjectionRepository, "insert_timeline_entry", staticmethod(flaky_insert))
        origin_id = origin([MEAL, NAP, DIAPER])

        result = projector.project(origin_id)

        assert result.skipped_positions == [1]
        assert [e.position for e in ProjectionRepository.list_for_origin(origin_id)] == [0, 2]
        assert get_counter("events.projector.candidate_skipped") == 1
        assert OriginLogRepository.get(origin_id).processed is True
        assert ProjectionRepository.dangling_timeline_entries() == 0

    def test_transaction_failure_leaves_origin_unprocessed(self, projector, origin, monkeypatch):
        """Should roll everything back and keep the origin event unprocessed."""

        def broken_insert(conn, narrative):
            raise sqlite3.DatabaseError("disk I/O error")

        monkeypatch.setattr(ProjectionRepository, "insert_narrative", staticmethod(broken_insert))
        origin_id = origin()

        with pytest.raises(PersistenceError):
            projector.project(origin_id)

        assert OriginLogRepository.get(origin_id).processed is False
        assert ProjectionRepository.list_for_origin(origin_id) == []

    def test_zero_events_marked_processed(self, projector, origin):
        """Should project nothing but still mark the origin processed."""
        origin_id = origin([])

        result = projector.project(origin_id)

        assert result.narrative is None
        assert result.entries == []
        assert OriginLogRepository.get(origin_id).processed is True

    def test_curriculum_not_projected(self, projector, origin):
        """Should store curriculum documents without timeline rows."""
        origin_id = origin(dataSourceType="WEEKLY_CURRICULUM")

        result = projector.project(origin_id)

        assert result.narrative is None
        assert ProjectionRepository.list_for_origin(origin_id) == []
        assert get_counter("events.projector.unsupported_source") == 1
        assert OriginLogRepository.get(origin_id).processed is True


class TestReprocess:
    """Reprocessing converges to the same end state"""

    def test_already_processed_returns_stored(self, projector, origin):
        """Should not rebuild a processed event without force."""
        origin_id = origin([MEAL, NAP])
        first = projector.project(origin_id)

        second = projector.project(origin_id)

        assert second.already_processed is True
        assert second.narrative.id == first.narrative.id
        assert [e.id for e in second.entries] == [e.id for e in first.entries]

    def test_force_replaces_projections(self, projector, origin):
        """Should replace, not duplicate, projections on a forced rebuild."""
        origin_id = origin([MEAL, NAP])
        first = projector.project(origin_id)

        second = projector.project(origin_id, force=True)

        stored = ProjectionRepository.list_for_origin(origin_id)
        assert len(stored) == 2
        assert {e.id for e in stored} == {e.id for e in second.entries}
        assert not {e.id for e in stored} & {e.id for e in first.entries}
        assert [e.title for e in stored] == [e.title for e in first.entries]
        assert ProjectionRepository.get_narrative(origin_id).id == second.narrative.id
        assert ProjectionRepository.count_for_profile(7) == 2


class TestSweep:
    """Tests for EventProjector.sweep and the tala-sweep entry point"""

    def test_sweep_projects_pending(self, projector, origin):
        """Should project every unprocessed event and skip processed ones."""
        done = origin()
        projector.project(done)
        pending = [origin([MEAL]), origin([NAP])]

        result = projector.sweep()

        assert result.attempted == 2
        assert result.projected == 2
        assert result.failed_ids == []
        assert all(OriginLogRepository.get(i).processed for i in pending)
        assert OriginLogRepository.list_unprocessed() == []

    def test_sweep_continues_past_failure(self, projector, origin, monkeypatch):
        """Should record one failure and still project the rest."""
        bad = origin([MEAL])
        good = origin([NAP])
        original = EventProjector._project_in_transaction

        def maybe_fail(self, event):
            if event.id == bad:
                raise PersistenceError("boom")
            return original(self, event)

        monkeypatch.setattr(EventProjector, "_project_in_transaction", maybe_fail)

        result = projector.sweep()

        assert result.failed_ids == [bad]
        assert result.projected == 1
        assert OriginLogRepository.get(good).processed is True
        assert OriginLogRepository.get(bad).processed is False

    def test_stuck_event_does_not_starve_newer_ones(self, projector, origin, monkeypatch):
        """Should move a failing event behind never-failed ones on the next sweep."""
        stuck = origin([MEAL])
        fresh = origin([NAP])
        original = EventProjector._project_in_transaction

        def fail_stuck(self, event):
            if event.id == stuck:
                raise PersistenceError("boom")
            return original(self, event)

        monkeypatch.setattr(EventProjector, "_project_in_transaction", fail_stuck)

        first = projector.sweep(limit=1)
        second = projector.sweep(limit=1)

        assert first.failed_ids == [stuck]
        assert second.projected == 1
        assert OriginLogRepository.get(fresh).processed is True
        assert [e.id for e in OriginLogRepository.list_unprocessed()] == [stuck]

    def test_main_reports_success(self, origin, capsys):
        """Should project pending events and exit 0."""
        origin()

        assert main(["--limit", "10"]) == 0
        assert "Projected 1/1 origin events (0 failed)" in capsys.readouterr().out

    def test_main_reports_failure(self, origin, monkeypatch, capsys):
        """Should exit 1 when any event fails."""
        failed_id = origin()

        def always_fail(self, event):
            raise PersistenceError("boom")

        monkeypatch.setattr(projector_module.EventProjector, "_project_in_transaction", always_fail)

        assert main([]) == 1
        assert f"failed: {failed_id}" in capsys.readouterr().out
