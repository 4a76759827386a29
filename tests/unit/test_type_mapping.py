"""Unit tests for extraction type -> narrative/timeline type mapping."""

import pytest

from tala.events.models import NarrativeEventType, TimelineEventType
from tala.events.type_mapping import to_narrative_type, to_timeline_type
from tala.observability.telemetry import get_counter


class TestTypeMapping:
    """Tests for the explicit mapping tables"""

    @pytest.mark.parametrize(
        ("raw", "narrative", "timeline"),
        [
            ("FEEDING", NarrativeEventType.FEEDING, TimelineEventType.FEEDING),
            ("diaper", NarrativeEventType.DIAPER, TimelineEventType.DIAPER_CHANGE),
            ("nap", NarrativeEventType.SLEEP, TimelineEventType.SLEEP),
            ("Doctor Visit", NarrativeEventType.MEDICAL_VISIT, TimelineEventType.MEDICAL_VISIT),
            ("growth-measurement", NarrativeEventType.GROWTH_MEASUREMENT, TimelineEventType.GROWTH_MEASUREMENT),
            ("MEDICATION", NarrativeEventType.MEDICINE, TimelineEventType.MEDICINE),
        ],
    )
    def test_known_types(self, raw, narrative, timeline):
        """Should map known spellings and aliases."""
        assert to_narrative_type(raw) == narrative
        assert to_timeline_type(raw) == timeline

    @pytest.mark.parametrize("raw", ["BATH", "", None, 42])
    def test_unknown_types_fall_back_to_notes(self, raw):
        """Should never raise; unknown types become NOTES."""
        assert to_narrative_type(raw) == NarrativeEventType.NOTES
        assert to_timeline_type(raw) == TimelineEventType.NOTES

    def test_fallback_is_counted(self):
        """Should count each fallback."""
        to_timeline_type("TUMMY_TIME")
        to_timeline_type("TUMMY_TIME")
        assert get_counter("events.type_mapping.timeline_fallback") == 2
        assert get_counter("events.type_mapping.narrative_fallback") == 0
