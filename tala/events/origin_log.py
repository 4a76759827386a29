"""
Origin Log Repository - append-only event store.

create() is idempotent on (source_type, source_event_id): a retry with the
same external id returns the stored row instead of a duplicate. Concurrent
creates are settled by the UNIQUE constraint, not by an in-process lock: the
loser of the race catches IntegrityError and re-reads the winner's row.

The only mutation after creation is mark_processed (flag + time); database
triggers reject anything else.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime

from tala.errors import PersistenceError
from tala.events.models import ChatEventPayload, OriginEvent, utc_now
from tala.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event
from tala.pipeline.types import DataSourceType

logger = get_logger(__name__)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class OriginLogRepository:
    """Repository for origin_events."""

    @staticmethod
    def create(
        payload: ChatEventPayload,
        event_time: datetime | None = None,
        notes: str | None = None,
    ) -> tuple[OriginEvent, bool]:
        """
        Append an origin event (idempotent on the external id).

        Args:
            payload: The interpretation to freeze into raw_payload
            event_time: When it happened; defaults to the first candidate's
                timestamp, then to now (local)
            notes: Free-text notes

        Returns:
            (event, created) where created is False when an existing row
            with the same (source type, external id) was returned

        Raises:
            PersistenceError: The write failed and was rolled back
        """
        try:
            return OriginLogRepository._create(payload, event_time, notes)
        except PersistenceError:
            raise
        except sqlite3.Error as e:
            counter("events.origin_log.write_error")
            logger.error("Origin log write failed for profile %s: %s", payload.profile_id, e)
            raise PersistenceError(f"Origin log write failed: {e}") from e

    @staticmethod
    @retry_on_db_lock()
    def _create(
        payload: ChatEventPayload,
        event_time: datetime | None,
        notes: str | None,
    ) -> tuple[OriginEvent, bool]:
        source_type = payload.source_type
        external_id = payload.source_event_id

        if external_id:
            existing = OriginLogRepository.get_by_source(source_type, external_id)
            if existing is not None:
                counter("events.origin_log.idempotent_hit")
                logger.info(
                    "Origin event for %s/%s already exists (%s), returning it",
                    source_type.value,
                    external_id,
                    existing.id,
                )
                return existing, False

        event = OriginEvent(
            id=str(uuid.uuid4()),
            profile_id=payload.profile_id,
            source_type=source_type,
            source_event_id=external_id,
            event_time=event_time or payload.event_time or datetime.now().replace(microsecond=0),
            raw_payload=payload.to_raw_payload(),
            attachment_ids=payload.attachment_ids,
            notes=notes,
            created_at=utc_now(),
        )

        try:
            with db_transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO origin_events (
                        id, profile_id, source_type, source_event_id, event_time,
                        raw_payload, attachment_file_ids, ai_processed, ai_processed_at,
                        notes, created_at
                    ) VALUES (
                        :id, :profile_id, :source_type, :source_event_id, :event_time,
                        :raw_payload, :attachment_file_ids, :ai_processed, :ai_processed_at,
                        :notes, :created_at
                    )
                    """,
                    event.to_db_dict(),
                )
        except sqlite3.IntegrityError as e:
            if not external_id:
                raise PersistenceError(f"Origin log insert rejected: {e}") from e
            # Lost a race on the unique key; the winner's row is the answer
            winner = OriginLogRepository.get_by_source(source_type, external_id)
            if winner is None:
                raise PersistenceError(f"Origin log insert rejected: {e}") from e
            counter("events.origin_log.race_resolved")
            logger.info("Concurrent create for %s/%s resolved to %s", source_type.value, external_id, winner.id)
            return winner, False
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise
            raise PersistenceError(f"Origin log write failed: {e}") from e

        counter("events.origin_log.created")
        logger.info(
            "Created origin event %s (profile=%s, source=%s, events=%d)",
            event.id,
            event.profile_id,
            source_type.value,
            len(payload.events),
        )
        log_event(
            "events.origin_log.created",
            origin_event_id=event.id,
            profile_id=event.profile_id,
            source_type=source_type.value,
            events=len(payload.events),
        )
        return event, True

    @staticmethod
    def get(origin_event_id: str) -> OriginEvent | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM origin_events WHERE id = ?", (origin_event_id,)
            ).fetchone()

        if not row:
            return None
        return OriginEvent.from_db_row(dict(row))

    @staticmethod
    def get_by_source(source_type: DataSourceType, source_event_id: str) -> OriginEvent | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM origin_events WHERE source_type = ? AND source_event_id = ?",
                (source_type.value, source_event_id),
            ).fetchone()

        if not row:
            return None
        return OriginEvent.from_db_row(dict(row))

    @staticmethod
    def mark_processed(conn: sqlite3.Connection, origin_event_id: str, processed_at: datetime | None = None) -> None:
        """
        Flip UNPROCESSED -> PROCESSED inside the caller's transaction.

        This is the only UPDATE the append-only triggers allow.
        """
        conn.execute(
            "UPDATE origin_events SET ai_processed = 1, ai_processed_at = ? WHERE id = ?",
            ((processed_at or utc_now()).isoformat(), origin_event_id),
        )

    @staticmethod
    def list_unprocessed(limit: int = 100) -> list[OriginEvent]:
        """
        Unprocessed events in sweep order: never-failed first, then the least
        recently failed, oldest first within each.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM origin_events e
                LEFT JOIN projection_attempts a ON a.origin_event_id = e.id
                WHERE e.ai_processed = 0
                ORDER BY COALESCE(a.attempts, 0) ASC, a.last_attempt_at ASC,
                         e.event_time ASC, e.created_at ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [OriginEvent.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def record_failed_attempt(origin_event_id: str, error: str) -> int:
        """Count a failed projection of an origin event; returns the attempts so far."""
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO projection_attempts (origin_event_id, attempts, last_attempt_at, last_error)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(origin_event_id) DO UPDATE SET
                    attempts = attempts + 1,
                    last_attempt_at = excluded.last_attempt_at,
                    last_error = excluded.last_error
                """,
                (origin_event_id, utc_now().isoformat(), error[:500]),
            )
            row = conn.execute(
                "SELECT attempts FROM projection_attempts WHERE origin_event_id = ?",
                (origin_event_id,),
            ).fetchone()
        return row[0]

    @staticmethod
    def list_by_profile(
        profile_id: int,
        source_type: DataSourceType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[OriginEvent]:
        """
        Origin events for a profile, newest first.

        Args:
            profile_id: Child profile
            source_type: Only this source type
            start: Only events at or after this local time
            end: Only events before this local time
        """
        query = "SELECT * FROM origin_events WHERE profile_id = ?"
        params: list[object] = [profile_id]

        if source_type is not None:
            query += " AND source_type = ?"
            params.append(source_type.value)
        if start is not None:
            query += " AND event_time >= ?"
            params.append(start.isoformat(timespec="seconds"))
        if end is not None:
            query += " AND event_time < ?"
            params.append(end.isoformat(timespec="seconds"))

        query += " ORDER BY event_time DESC, created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [OriginEvent.from_db_row(dict(row)) for row in rows]
