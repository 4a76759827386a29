"""
Database schema initialization for Tala.

Tables:
- chat_messages: raw user/assistant messages (immutable once stored)
- origin_events: append-only event-sourcing root; UNIQUE(source_type, source_event_id)
  makes idempotent create a constraint-level guarantee. Triggers reject
  updates to anything but the processed flag/time, and reject deletes.
- narrative_events: one consolidated record per origin event
- timeline_entries: one display row per extracted event candidate
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from tala.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses IF NOT EXISTS everywhere.

    Args:
        db_path: Path to the database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS chat_messages (
            id TEXT PRIMARY KEY,
            profile_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
            content TEXT NOT NULL,
            message_type TEXT NOT NULL DEFAULT 'text' CHECK (message_type IN ('text', 'event', 'suggestion')),
            attachment_ids TEXT NOT NULL DEFAULT '[]',
            interaction_type TEXT,
            confidence REAL,
            extracted_records_json TEXT,
            thinking_process TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_chat_messages_profile_created
        ON chat_messages(profile_id, created_at);

        CREATE TABLE IF NOT EXISTS origin_events (
            id TEXT PRIMARY KEY,
            profile_id INTEGER NOT NULL,
            source_type TEXT NOT NULL,
            source_event_id TEXT,
            event_time TEXT NOT NULL,
            raw_payload TEXT NOT NULL,
            attachment_file_ids TEXT NOT NULL DEFAULT '[]',
            ai_processed INTEGER NOT NULL DEFAULT 0,
            ai_processed_at TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            UNIQUE(source_type, source_event_id)
        );

        CREATE INDEX IF NOT EXISTS idx_origin_events_profile_time
        ON origin_events(profile_id, event_time);

        CREATE INDEX IF NOT EXISTS idx_origin_events_unprocessed
        ON origin_events(ai_processed, event_time);

        CREATE TRIGGER IF NOT EXISTS trg_origin_events_append_only
        BEFORE UPDATE OF id, profile_id, source_type, source_event_id, event_time,
                         raw_payload, attachment_file_ids, notes, created_at
        ON origin_events
        BEGIN
            SELECT RAISE(ABORT, 'origin_events rows are immutable');
        END;

        CREATE TRIGGER IF NOT EXISTS trg_origin_events_no_delete
        BEFORE DELETE ON origin_events
        BEGIN
            SELECT RAISE(ABORT, 'origin_events rows cannot be deleted');
        END;

        -- Failed projection attempts, so the sweep rotates past events that keep failing
        CREATE TABLE IF NOT EXISTS projection_attempts (
            origin_event_id TEXT PRIMARY KEY REFERENCES origin_events(id),
            attempts INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT NOT NULL,
            last_error TEXT
        );

        CREATE TABLE IF NOT EXISTS narrative_events (
            id TEXT PRIMARY KEY,
            origin_event_id TEXT NOT NULL UNIQUE REFERENCES origin_events(id),
            profile_id INTEGER NOT NULL,
            event_type TEXT NOT NULL,
            event_time TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            details TEXT NOT NULL DEFAULT '[]',
            location TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS timeline_entries (
            id TEXT PRIMARY KEY,
            origin_event_id TEXT NOT NULL REFERENCES origin_events(id),
            narrative_event_id TEXT NOT NULL REFERENCES narrative_events(id) ON DELETE CASCADE,
            profile_id INTEGER NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            timeline_type TEXT NOT NULL,
            data_source TEXT NOT NULL,
            record_time TEXT NOT NULL,
            title TEXT NOT NULL,
            ai_summary TEXT,
            ai_tags TEXT NOT NULL DEFAULT '[]',
            location TEXT,
            ai_model_version TEXT,
            original_user_message TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_timeline_profile_time
        ON timeline_entries(profile_id, record_time);

        CREATE INDEX IF NOT EXISTS idx_timeline_origin
        ON timeline_entries(origin_event_id);
    """)

    conn.commit()
    conn.close()

    logger.info("Database schema initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Args:
        conn: Active database connection

    Returns:
        True if valid

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "chat_messages": ["id", "profile_id", "user_id", "role", "content", "created_at"],
        "origin_events": [
            "id",
            "profile_id",
            "source_type",
            "source_event_id",
            "raw_payload",
            "ai_processed",
        ],
        "narrative_events": ["id", "origin_event_id", "event_type", "title"],
        "timeline_entries": ["id", "origin_event_id", "narrative_event_id", "timeline_type"],
        "projection_attempts": ["origin_event_id", "attempts", "last_attempt_at"],
    }

    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables.keys()) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in required_tables.items():
        # Identifiers cannot be parameterized; names come from the dict above
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")

        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
