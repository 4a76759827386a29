"""
Tests for the database layer: lock retry, pool, transactions and the
append-only schema guarantees.
"""

import sqlite3

import pytest

from tala.infrastructure.database import (
    db_transaction,
    get_db_connection,
    get_pool,
    get_pool_stats,
    reset_pool,
    retry_on_db_lock,
    validate_schema,
)
from tala.observability.telemetry import get_counter


def test_retry_decorator_success():
    """Test retry decorator with successful operation"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def successful_operation():
        call_count[0] += 1
        return "success"

    assert successful_operation() == "success"
    assert call_count[0] == 1, "Should succeed on first try"


def test_retry_decorator_recovers_from_lock():
    """Test retry decorator recovers from database lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01, max_delay=0.05)
    def flaky_operation():
        call_count[0] += 1
        if call_count[0] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "success"

    assert flaky_operation() == "success"
    assert call_count[0] == 3, "Should retry twice before success"
    assert get_counter("database.lock_retry") == 2


def test_retry_decorator_fails_after_max_retries():
    """Test retry decorator gives up after max retries"""
    call_count = [0]

    @retry_on_db_lock(max_retries=2, base_delay=0.01)
    def always_fails():
        call_count[0] += 1
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError, match="database is locked"):
        always_fails()

    assert call_count[0] == 3, "Should try 3 times (initial + 2 retries)"
    assert get_counter("database.lock_retry_exhausted") == 1


def test_retry_decorator_ignores_non_lock_errors():
    """Test retry decorator doesn't retry non-lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def schema_error():
        call_count[0] += 1
        raise sqlite3.OperationalError("no such table: foo")

    with pytest.raises(sqlite3.OperationalError, match="no such table"):
        schema_error()

    assert call_count[0] == 1, "Should not retry non-lock errors"


def test_pool_singleton():
    """Test that get_pool returns same instance until reset"""
    pool1 = get_pool()
    assert get_pool() is pool1

    reset_pool()
    assert get_pool() is not pool1


def test_pool_stats():
    """Test pool stats returns expected format"""
    stats = get_pool_stats()

    assert stats["available"] + stats["in_use"] == stats["pool_size"]
    assert stats["closed"] is False
    assert isinstance(stats["usage_percent"], (int, float))


def test_missing_database_file(tmp_path, monkeypatch):
    """Test get_db_connection refuses to create a database implicitly"""
    monkeypatch.setenv("TALA_DB_PATH", str(tmp_path / "missing.db"))
    reset_pool()

    with pytest.raises(FileNotFoundError):
        with get_db_connection():
            pass


def test_schema_validates():
    """Test the initialized schema has every table"""
    assert validate_schema() is True


def test_db_transaction_rolls_back_on_error():
    """Test db_transaction rolls back on error"""
    with pytest.raises(ValueError):
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO chat_messages (id, profile_id, user_id, role, content, created_at) "
                "VALUES ('m1', 7, 42, 'user', 'hello', '2025-11-14T15:00:00+00:00')"
            )
            raise ValueError("Intentional error")

    with get_db_connection() as conn:
        count = conn.execute("SELECT COUNT(*) FROM chat_messages").fetchone()[0]
    assert count == 0


class TestOriginEventTriggers:
    """The origin_events table itself rejects mutation"""

    @pytest.fixture
    def origin_id(self):
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO origin_events (
                    id, profile_id, source_type, source_event_id, event_time,
                    raw_payload, created_at
                ) VALUES ('o1', 7, 'AI_CHAT', 'ext-1', '2025-11-14T14:00:00', '{}',
                          '2025-11-14T15:00:00+00:00')
                """
            )
        return "o1"

    def test_payload_update_rejected(self, origin_id):
        """Should abort an UPDATE of the raw payload."""
        with pytest.raises(sqlite3.IntegrityError, match="immutable"):
            with db_transaction() as conn:
                conn.execute("UPDATE origin_events SET raw_payload = '[]' WHERE id = ?", (origin_id,))

    def test_delete_rejected(self, origin_id):
        """Should abort a DELETE."""
        with pytest.raises(sqlite3.IntegrityError, match="cannot be deleted"):
            with db_transaction() as conn:
                conn.execute("DELETE FROM origin_events WHERE id = ?", (origin_id,))

    def test_processed_flag_update_allowed(self, origin_id):
        """Should allow flipping the processed flag and time."""
        with db_transaction() as conn:
            conn.execute(
                "UPDATE origin_events SET ai_processed = 1, ai_processed_at = '2025-11-14T15:01:00' WHERE id = ?",
                (origin_id,),
            )

        with get_db_connection() as conn:
            row = conn.execute("SELECT ai_processed FROM origin_events WHERE id = ?", (origin_id,)).fetchone()
        assert row[0] == 1

    def test_unique_external_id(self, origin_id):
        """Should reject a second row with the same (source type, external id)."""
        with pytest.raises(sqlite3.IntegrityError):
            with db_transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO origin_events (
                        id, profile_id, source_type, source_event_id, event_time,
                        raw_payload, created_at
                    ) VALUES ('o2', 7, 'AI_CHAT', 'ext-1', '2025-11-14T14:00:00', '{}',
                              '2025-11-14T15:00:00+00:00')
                    """
                )
