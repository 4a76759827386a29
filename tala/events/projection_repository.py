"""
Projection store - narrative_events and timeline_entries.

Writes take the caller's connection so the projector can replace all
projections of one origin event inside a single transaction. Reads open
their own pooled connection.
"""

from __future__ import annotations

import sqlite3

from tala.events.models import NarrativeEvent, TimelineEntry, TimelineEventType
from tala.infrastructure.database import get_db_connection


class ProjectionRepository:
    """Repository for narrative events and timeline entries."""

    @staticmethod
    def insert_narrative(conn: sqlite3.Connection, narrative: NarrativeEvent) -> None:
        conn.execute(
            """
            INSERT INTO narrative_events (
                id, origin_event_id, profile_id, event_type, event_time,
                title, description, details, location, created_at
            ) VALUES (
                :id, :origin_event_id, :profile_id, :event_type, :event_time,
                :title, :description, :details, :location, :created_at
            )
            """,
            narrative.to_db_dict(),
        )

    @staticmethod
    def insert_timeline_entry(conn: sqlite3.Connection, entry: TimelineEntry) -> None:
        conn.execute(
            """
            INSERT INTO timeline_entries (
                id, origin_event_id, narrative_event_id, profile_id, position,
                timeline_type, data_source, record_time, title, ai_summary,
                ai_tags, location, ai_model_version, original_user_message, created_at
            ) VALUES (
                :id, :origin_event_id, :narrative_event_id, :profile_id, :position,
                :timeline_type, :data_source, :record_time, :title, :ai_summary,
                :ai_tags, :location, :ai_model_version, :original_user_message, :created_at
            )
            """,
            entry.to_db_dict(),
        )

    @staticmethod
    def delete_for_origin(conn: sqlite3.Connection, origin_event_id: str) -> int:
        """
        Remove every projection of one origin event.

        Timeline rows go first; they reference the narrative.

        Returns:
            Number of timeline entries removed
        """
        cursor = conn.execute(
            "DELETE FROM timeline_entries WHERE origin_event_id = ?", (origin_event_id,)
        )
        removed = cursor.rowcount
        conn.execute("DELETE FROM narrative_events WHERE origin_event_id = ?", (origin_event_id,))
        return removed

    @staticmethod
    def get_narrative(origin_event_id: str) -> NarrativeEvent | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM narrative_events WHERE origin_event_id = ?", (origin_event_id,)
            ).fetchone()

        if not row:
            return None
        return NarrativeEvent.from_db_row(dict(row))

    @staticmethod
    def list_for_origin(origin_event_id: str) -> list[TimelineEntry]:
        """Timeline entries of one origin event, in candidate order."""
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM timeline_entries WHERE origin_event_id = ? ORDER BY position ASC",
                (origin_event_id,),
            ).fetchall()

        return [TimelineEntry.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def list_for_profile(
        profile_id: int,
        limit: int = 20,
        offset: int = 0,
        timeline_type: TimelineEventType | None = None,
    ) -> list[TimelineEntry]:
        """Timeline for a profile, newest record first."""
        query = "SELECT * FROM timeline_entries WHERE profile_id = ?"
        params: list[object] = [profile_id]

        if timeline_type is not None:
            query += " AND timeline_type = ?"
            params.append(timeline_type.value)

        query += " ORDER BY record_time DESC, created_at DESC, position ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [TimelineEntry.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def count_for_profile(profile_id: int, timeline_type: TimelineEventType | None = None) -> int:
        query = "SELECT COUNT(*) FROM timeline_entries WHERE profile_id = ?"
        params: list[object] = [profile_id]

        if timeline_type is not None:
            query += " AND timeline_type = ?"
            params.append(timeline_type.value)

        with get_db_connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    @staticmethod
    def dangling_timeline_entries() -> int:
        """Timeline rows whose origin or narrative row is missing (should be 0)."""
        with get_db_connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM timeline_entries t
                LEFT JOIN origin_events o ON o.id = t.origin_event_id
                LEFT JOIN narrative_events n ON n.id = t.narrative_event_id
                WHERE o.id IS NULL OR n.id IS NULL
                """
            ).fetchone()[0]
