"""
Event Projector - OriginEvent -> 1 NarrativeEvent + N TimelineEntries.

Projection of one origin event is delete-and-recreate inside a single
transaction: prior projections are removed, new ones inserted, and the
origin event is marked processed, all or nothing. Re-running converges to
the same end state, which is what makes the sweep safe.

Within that transaction each timeline entry is written under its own
SAVEPOINT. A candidate that fails to project is rolled back to its
savepoint, logged and skipped; its siblings still commit.
"""

from __future__ import annotations

import argparse
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from tala.config import DEFAULT_LOCATION, GEMINI_MODEL, SWEEP_BATCH_SIZE
from tala.errors import PersistenceError, ValidationError
from tala.events.models import (
    CandidateEvent,
    ChatEventPayload,
    NarrativeEvent,
    NarrativeEventType,
    OriginEvent,
    TimelineEntry,
    utc_now,
)
from tala.events.origin_log import OriginLogRepository
from tala.events.projection_repository import ProjectionRepository
from tala.events.type_mapping import to_narrative_type, to_timeline_type
from tala.infrastructure.database import db_transaction, init_database, reset_pool, retry_on_db_lock
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event, time_block
from tala.pipeline.types import PROJECTABLE_SOURCES

logger = get_logger(__name__)


@dataclass
class ProjectionResult:
    """Outcome of projecting one origin event."""

    origin_event_id: str
    narrative: NarrativeEvent | None = None
    entries: list[TimelineEntry] = field(default_factory=list)
    skipped_positions: list[int] = field(default_factory=list)
    already_processed: bool = False

    @property
    def timeline_entries_created(self) -> int:
        return len(self.entries)


@dataclass
class SweepResult:
    attempted: int = 0
    projected: int = 0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_ids)

    def to_dict(self) -> dict[str, object]:
        return {
            "attempted": self.attempted,
            "projected": self.projected,
            "failed": self.failed,
            "failed_ids": list(self.failed_ids),
        }


def _location(candidate: CandidateEvent) -> str:
    location = candidate.event_data.get("location")
    return str(location) if location else DEFAULT_LOCATION


def _tags(candidate: CandidateEvent) -> list[str]:
    tags = candidate.event_data.get("ai_tags")
    if isinstance(tags, str):
        return [tags] if tags.strip() else []
    if isinstance(tags, list):
        return [str(tag) for tag in tags if tag]
    return []


def _title(candidate: CandidateEvent) -> str:
    if candidate.summary.strip():
        return candidate.summary.strip()
    label = (candidate.event_type or "Event").replace("_", " ").capitalize()
    return f"{label} recorded"


class EventProjector:
    """Builds and replaces the projections of origin events."""

    def __init__(self, default_model_version: str = GEMINI_MODEL):
        self.default_model_version = default_model_version

    def project(self, origin_event_id: str, force: bool = False) -> ProjectionResult:
        """
        Project one origin event.

        Args:
            origin_event_id: Origin event to project
            force: Rebuild even if it is already PROCESSED

        Returns:
            ProjectionResult. For an already-processed event (without force)
            the stored projections are returned untouched.

        Raises:
            ValidationError: Origin event does not exist
            PersistenceError: The projection transaction failed; the origin
                event stays UNPROCESSED
        """
        origin = OriginLogRepository.get(origin_event_id)
        if origin is None:
            raise ValidationError(f"Origin event not found: {origin_event_id}", field="origin_event_id")

        if origin.processed and not force:
            counter("events.projector.already_processed")
            logger.info("Origin event %s already processed, returning stored projections", origin.id)
            return ProjectionResult(
                origin_event_id=origin.id,
                narrative=ProjectionRepository.get_narrative(origin.id),
                entries=ProjectionRepository.list_for_origin(origin.id),
                already_processed=True,
            )

        try:
            with time_block("events.projector.project"):
                result = self._project_in_transaction(origin)
        except sqlite3.Error as e:
            counter("events.projector.error")
            logger.error("Projection of origin event %s failed: %s", origin.id, e)
            raise PersistenceError(f"Projection failed for {origin.id}: {e}") from e

        counter("events.projector.projected")
        log_event(
            "events.projector.projected",
            origin_event_id=origin.id,
            profile_id=origin.profile_id,
            entries=result.timeline_entries_created,
            skipped=len(result.skipped_positions),
        )
        return result

    @retry_on_db_lock()
    def _project_in_transaction(self, origin: OriginEvent) -> ProjectionResult:
        result = ProjectionResult(origin_event_id=origin.id)
        payload = origin.payload

        with db_transaction() as conn:
            removed = ProjectionRepository.delete_for_origin(conn, origin.id)
            if removed:
                logger.info("Replacing %d prior timeline entries of origin event %s", removed, origin.id)

            if origin.source_type not in PROJECTABLE_SOURCES:
                counter("events.projector.unsupported_source")
                logger.warning(
                    "Source type %s is not projected to the timeline (origin event %s)",
                    origin.source_type,
                    origin.id,
                )
            elif not payload.events:
                logger.info("Origin event %s has no extracted events, nothing to project", origin.id)
            else:
                narrative = self._build_narrative(origin, payload)
                ProjectionRepository.insert_narrative(conn, narrative)
                result.narrative = narrative

                for position, candidate in enumerate(payload.events):
                    entry = self._project_candidate(conn, origin, payload, narrative, candidate, position)
                    if entry is None:
                        result.skipped_positions.append(position)
                    else:
                        result.entries.append(entry)

            OriginLogRepository.mark_processed(conn, origin.id)

        logger.info(
            "Projected origin event %s: narrative=%s, %d timeline entries",
            origin.id,
            result.narrative.id if result.narrative else None,
            result.timeline_entries_created,
        )
        return result

    def _build_narrative(self, origin: OriginEvent, payload: ChatEventPayload) -> NarrativeEvent:
        first = payload.events[0]
        single = len(payload.events) == 1

        return NarrativeEvent(
            id=str(uuid.uuid4()),
            origin_event_id=origin.id,
            profile_id=origin.profile_id,
            event_type=to_narrative_type(first.event_type) if single else NarrativeEventType.NOTES,
            event_time=first.timestamp or origin.event_time,
            title=_title(first) if single else f"{len(payload.events)} events recorded",
            description=payload.reply_text or None,
            details=[event.to_payload_dict() for event in payload.events],
            location=_location(first),
            created_at=utc_now(),
        )

    def _project_candidate(
        self,
        conn: sqlite3.Connection,
        origin: OriginEvent,
        payload: ChatEventPayload,
        narrative: NarrativeEvent,
        candidate: CandidateEvent,
        position: int,
    ) -> TimelineEntry | None:
        savepoint = f"candidate_{position}"
        conn.execute(f"SAVEPOINT {savepoint}")
        try:
            entry = TimelineEntry(
                id=str(uuid.uuid4()),
                origin_event_id=origin.id,
                narrative_event_id=narrative.id,
                profile_id=origin.profile_id,
                position=position,
                timeline_type=to_timeline_type(candidate.event_type),
                data_source=origin.source_type,
                record_time=candidate.timestamp or narrative.event_time,
                title=_title(candidate),
                ai_summary=candidate.summary or None,
                ai_tags=_tags(candidate),
                location=_location(candidate),
                ai_model_version=payload.ai_model_version or self.default_model_version,
                original_user_message=payload.original_text or None,
            )
            ProjectionRepository.insert_timeline_entry(conn, entry)
        except Exception as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
            conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            if isinstance(e, sqlite3.OperationalError) and "locked" in str(e).lower():
                raise
            counter("events.projector.candidate_skipped")
            logger.error(
                "Skipping candidate %d (%s) of origin event %s: %s",
                position,
                candidate.event_type,
                origin.id,
                e,
            )
            return None

        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        return entry

    def sweep(self, limit: int = SWEEP_BATCH_SIZE) -> SweepResult:
        """
        Project UNPROCESSED origin events in sweep order.

        One event's failure is logged and counted against it, and the sweep
        moves on; the event stays UNPROCESSED and goes behind events that have
        not failed yet, so a batch of stuck events cannot starve newer ones.
        """
        result = SweepResult()
        pending = OriginLogRepository.list_unprocessed(limit=limit)
        logger.info("Sweep found %d unprocessed origin events", len(pending))

        for origin in pending:
            result.attempted += 1
            try:
                self.project(origin.id)
                result.projected += 1
            except Exception as e:
                result.failed_ids.append(origin.id)
                counter("events.projector.sweep_failure")
                logger.error("Sweep could not project origin event %s: %s", origin.id, e)
                try:
                    OriginLogRepository.record_failed_attempt(origin.id, str(e))
                except sqlite3.Error as record_error:
                    logger.error("Could not record failed attempt for %s: %s", origin.id, record_error)

        log_event("events.projector.sweep", **result.to_dict())
        return result


def main(argv: list[str] | None = None) -> int:
    """tala-sweep: project every unprocessed origin event."""
    parser = argparse.ArgumentParser(description="Project unprocessed origin events to the timeline")
    parser.add_argument("--limit", type=int, default=SWEEP_BATCH_SIZE, help="Maximum events to project")
    args = parser.parse_args(argv)

    reset_pool()
    init_database()

    started = datetime.now()
    result = EventProjector().sweep(limit=args.limit)
    elapsed = (datetime.now() - started).total_seconds()

    print(
        f"Projected {result.projected}/{result.attempted} origin events "
        f"({result.failed} failed) in {elapsed:.1f}s"
    )
    for origin_id in result.failed_ids:
        print(f"  failed: {origin_id}")
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
