"""Timeline reads, enriched with attachment refs resolved on demand."""

from __future__ import annotations

from dataclasses import dataclass

from tala.events.attachment_resolver import AttachmentResolver
from tala.events.models import AttachmentRef, TimelineEntry, TimelineEventType
from tala.events.origin_log import OriginLogRepository
from tala.events.projection_repository import ProjectionRepository


@dataclass
class TimelinePage:
    entries: list[TimelineEntry]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


class TimelineService:
    def __init__(self, resolver: AttachmentResolver):
        self.resolver = resolver

    def list_for_profile(
        self,
        profile_id: int,
        limit: int = 20,
        offset: int = 0,
        timeline_type: TimelineEventType | None = None,
    ) -> TimelinePage:
        entries = ProjectionRepository.list_for_profile(
            profile_id, limit=limit, offset=offset, timeline_type=timeline_type
        )
        total = ProjectionRepository.count_for_profile(profile_id, timeline_type=timeline_type)
        return TimelinePage(entries=self.enrich(entries), total=total, limit=limit, offset=offset)

    def list_for_origin(self, origin_event_id: str) -> list[TimelineEntry]:
        return self.enrich(ProjectionRepository.list_for_origin(origin_event_id))

    def enrich(self, entries: list[TimelineEntry]) -> list[TimelineEntry]:
        """Attach refs from each entry's origin event (one lookup per origin)."""
        resolved: dict[str, list[AttachmentRef]] = {}
        enriched = []
        for entry in entries:
            if entry.origin_event_id not in resolved:
                origin = OriginLogRepository.get(entry.origin_event_id)
                ids = origin.attachment_ids if origin else []
                resolved[entry.origin_event_id] = self.resolver.resolve(ids)
            enriched.append(entry.model_copy(update={"attachments": resolved[entry.origin_event_id]}))
        return enriched
