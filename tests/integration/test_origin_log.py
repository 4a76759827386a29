"""
Integration tests for the Origin Log: idempotent append and immutability.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from tala.events.models import ChatEventPayload
from tala.events.origin_log import OriginLogRepository
from tala.infrastructure.database import db_transaction, get_db_connection
from tala.observability.telemetry import get_counter
from tala.pipeline.types import (
    AttachmentInterpretation,
    AttachmentSummary,
    AttachmentType,
    DataSourceType,
    EventCategory,
    EventType,
    ExtractedEventCandidate,
    ExtractionResult,
    InteractionClassification,
    InteractionType,
)


def _count_rows():
    with get_db_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM origin_events").fetchone()[0]


@pytest.fixture
def payload(chat_event_body):
    def build(**overrides):
        return ChatEventPayload.model_validate(chat_event_body(**overrides))

    return build


class TestCreate:
    """Tests for OriginLogRepository.create"""

    def test_create_freezes_payload(self, payload):
        """Should store the payload verbatim and start unprocessed."""
        event, created = OriginLogRepository.create(payload(attachmentIds=["101"]))

        assert created is True
        stored = OriginLogRepository.get(event.id)
        assert stored.processed is False
        assert stored.source_type == DataSourceType.AI_CHAT.value
        assert stored.attachment_ids == ["101"]
        assert stored.raw_payload["original_text"] == "Baby drank 120ml formula at 2pm"
        assert stored.raw_payload["events"][0]["timestamp"] == "2025-11-14T14:00:00"
        assert stored.event_time.isoformat() == "2025-11-14T14:00:00"

    def test_same_external_id_is_idempotent(self, payload):
        """Should return the existing row for a retried external id."""
        first, created_first = OriginLogRepository.create(payload(sourceEventId="msg-1"))
        second, created_second = OriginLogRepository.create(
            payload(sourceEventId="msg-1", originalText="something else")
        )

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert second.raw_payload["original_text"] == "Baby drank 120ml formula at 2pm"
        assert _count_rows() == 1
        assert get_counter("events.origin_log.idempotent_hit") == 1

    def test_same_external_id_different_source(self, payload):
        """Should scope idempotence to the source type."""
        OriginLogRepository.create(payload(sourceEventId="r-1"))
        _, created = OriginLogRepository.create(payload(sourceEventId="r-1", dataSourceType="DAY_CARE_REPORT"))

        assert created is True
        assert _count_rows() == 2

    def test_no_external_id_always_appends(self, payload):
        """Should append a new row each time without an external id."""
        OriginLogRepository.create(payload())
        OriginLogRepository.create(payload())

        assert _count_rows() == 2

    def test_concurrent_creates_resolve_to_one_row(self, payload):
        """Should settle concurrent creates with one external id on a single row."""
        body = payload(sourceEventId="race-1")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: OriginLogRepository.create(body), range(4)))

        ids = {event.id for event, _ in results}
        assert len(ids) == 1
        assert sum(1 for _, created in results if created) == 1
        assert _count_rows() == 1

    def test_event_time_defaults_to_now_without_candidates(self, payload):
        """Should fall back to the current time when no candidate has a timestamp."""
        event, _ = OriginLogRepository.create(payload(events=[]))

        assert event.event_time is not None
        assert event.raw_payload["events"] == []


class TestImmutability:
    """The stored row cannot change except for the processed flag"""

    def test_payload_cannot_change(self, payload):
        """Should reject an UPDATE of the raw payload."""
        event, _ = OriginLogRepository.create(payload())

        with pytest.raises(sqlite3.IntegrityError):
            with db_transaction() as conn:
                conn.execute("UPDATE origin_events SET raw_payload = '{}' WHERE id = ?", (event.id,))

        assert OriginLogRepository.get(event.id).raw_payload == event.raw_payload

    def test_row_cannot_be_deleted(self, payload):
        """Should reject a DELETE."""
        event, _ = OriginLogRepository.create(payload())

        with pytest.raises(sqlite3.IntegrityError):
            with db_transaction() as conn:
                conn.execute("DELETE FROM origin_events WHERE id = ?", (event.id,))

        assert OriginLogRepository.get(event.id) is not None

    def test_mark_processed(self, payload):
        """Should flip the processed flag and record the time."""
        event, _ = OriginLogRepository.create(payload())

        with db_transaction() as conn:
            OriginLogRepository.mark_processed(conn, event.id)

        stored = OriginLogRepository.get(event.id)
        assert stored.processed is True
        assert stored.processed_at is not None


class TestQueries:
    """Tests for the read side"""

    def test_list_unprocessed_oldest_first(self, payload, chat_event_body):
        """Should list unprocessed events in event-time order."""
        late = [dict(chat_event_body()["events"][0], timestamp="2025-11-14T18:00:00")]
        early = [dict(chat_event_body()["events"][0], timestamp="2025-11-14T06:00:00")]
        late_event, _ = OriginLogRepository.create(payload(events=late))
        early_event, _ = OriginLogRepository.create(payload(events=early))

        pending = OriginLogRepository.list_unprocessed()

        assert [e.id for e in pending] == [early_event.id, late_event.id]

    def test_failed_attempts_go_last(self, payload, chat_event_body):
        """Should list events that already failed after ones that never did."""
        late = [dict(chat_event_body()["events"][0], timestamp="2025-11-14T18:00:00")]
        early = [dict(chat_event_body()["events"][0], timestamp="2025-11-14T06:00:00")]
        late_event, _ = OriginLogRepository.create(payload(events=late))
        early_event, _ = OriginLogRepository.create(payload(events=early))

        assert OriginLogRepository.record_failed_attempt(early_event.id, "boom") == 1
        assert OriginLogRepository.record_failed_attempt(early_event.id, "boom again") == 2

        pending = OriginLogRepository.list_unprocessed()
        assert [e.id for e in pending] == [late_event.id, early_event.id]
        assert [e.id for e in OriginLogRepository.list_unprocessed(limit=1)] == [late_event.id]

    def test_list_by_profile_filters(self, payload):
        """Should filter by profile and source type."""
        OriginLogRepository.create(payload())
        OriginLogRepository.create(payload(dataSourceType="DAY_CARE_REPORT"))
        OriginLogRepository.create(payload(profileId=8))

        assert len(OriginLogRepository.list_by_profile(7)) == 2
        reports = OriginLogRepository.list_by_profile(7, source_type=DataSourceType.DAY_CARE_REPORT)
        assert len(reports) == 1

    def test_get_unknown(self):
        """Should return None for an unknown id."""
        assert OriginLogRepository.get("missing") is None


class TestPipelineCapture:
    """The raw payload keeps the whole pipeline result"""

    def test_classification_and_attachment_are_frozen(self):
        """Should store intent, classification and attachment interpretation with the events."""
        extraction = ExtractionResult(
            ai_message="Logged lunch from the daycare report.",
            confidence=0.9,
            events=[
                ExtractedEventCandidate(
                    category=EventCategory.JOURNAL,
                    event_type=EventType.FEEDING,
                    timestamp=datetime(2025, 11, 14, 12, 0),
                    summary="Lunch",
                    confidence=0.9,
                )
            ],
            data_source_type=DataSourceType.DAY_CARE_REPORT,
        )
        classification = InteractionClassification(
            interaction_type=InteractionType.DATA_RECORDING,
            confidence=0.85,
            reason="daycare report attached",
        )
        attachment = AttachmentInterpretation(
            files=[
                AttachmentSummary(
                    file_id="102",
                    file_name="report.pdf",
                    content_summary="Daily report",
                    detected_type=AttachmentType.DAYCARE_REPORT,
                )
            ],
            overall_summary="Daily report",
            attachment_type=AttachmentType.DAYCARE_REPORT,
            failed_file_ids=["103"],
            failure_note="Could not read: scan.jpg",
        )
        payload = ChatEventPayload.from_extraction(
            profile_id=7,
            user_id=42,
            original_text="from daycare",
            extraction=extraction,
            attachment_ids=["102", "103"],
            source_event_id="chat-message:m1",
            classification=classification,
            attachment=attachment,
        )

        event, _ = OriginLogRepository.create(payload)
        raw = OriginLogRepository.get(event.id).raw_payload

        assert raw["intent"] == "DATA_RECORDING"
        assert raw["classification"]["confidence"] == 0.85
        assert raw["classification"]["reason"] == "daycare report attached"
        assert raw["attachment_interpretation"]["attachment_type"] == "DAYCARE_REPORT"
        assert raw["attachment_interpretation"]["overall_summary"] == "Daily report"
        assert raw["attachment_interpretation"]["failure_note"] == "Could not read: scan.jpg"
        assert raw["attachment_ids"] == ["102", "103"]
