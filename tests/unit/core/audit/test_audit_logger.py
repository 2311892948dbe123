"""Tests for the AuditLogger and related utilities."""

from __future__ import annotations

import json

import pytest

from healthshadow.core.audit.logger import AUDIT_ACTIONS, AuditEvent, AuditLogger, hash_subject
from healthshadow.core.storage.database import ShadowDatabase


# ---------------------------------------------------------------------------
# hash_subject tests
# ---------------------------------------------------------------------------

class TestHashSubject:
    def test_sha256_hex(self):
        h = hash_subject("user-1")
        assert len(h) == 64
        assert "user-1" not in h

    def test_deterministic(self):
        assert hash_subject("user-1") == hash_subject("user-1")

    def test_different_users_differ(self):
        assert hash_subject("user-1") != hash_subject("user-2")


# ---------------------------------------------------------------------------
# AuditLogger write tests
# ---------------------------------------------------------------------------

class TestAuditLoggerWrite:
    def test_log_event_returns_uuid(self, audit_logger):
        event_id = audit_logger.log_event(AuditEvent(action="profile_read"))
        assert len(event_id) == 36

    def test_log_append(self, audit_logger):
        audit_logger.log_append("user-1", event_type="symptom", version=3)
        events = audit_logger.get_events(action="event_append")
        assert len(events) == 1
        assert events[0]["subject_hash"] == hash_subject("user-1")
        assert events[0]["event_type"] == "symptom"
        assert events[0]["version"] == 3
        assert events[0]["status"] == "success"

    def test_log_delete_records_count(self, audit_logger):
        audit_logger.log_delete("user-1", count=12)
        row = audit_logger.get_events(action="profile_delete")[0]
        assert json.loads(row["metadata_json"]) == {"records_deleted": 12}

    def test_log_denied(self, audit_logger):
        audit_logger.log_denied("user-1", operation="get_health_snapshot")
        row = audit_logger.get_events(action="access_denied")[0]
        assert row["status"] == "denied"
        assert row["error_type"] == "AuthorizationError"
        assert json.loads(row["metadata_json"])["operation"] == "get_health_snapshot"

    def test_log_emergency_sorts_patterns(self, audit_logger):
        audit_logger.log_emergency("user-1", patterns=["stroke", "chest_pain"])
        row = audit_logger.get_events(action="emergency_raised")[0]
        assert json.loads(row["metadata_json"]) == {"patterns": ["chest_pain", "stroke"]}

    def test_no_metadata_stored_as_null(self, audit_logger):
        audit_logger.log_read("user-1")
        assert audit_logger.get_events()[0]["metadata_json"] is None

    def test_user_id_never_stored(self, audit_logger, shadow_db):
        audit_logger.log_append("alice@example.org", event_type="symptom", version=1)
        audit_logger.log_delete("alice@example.org", count=1)
        rows = shadow_db.connection.execute("SELECT * FROM audit_log").fetchall()
        for row in rows:
            assert "alice" not in " ".join(str(v) for v in tuple(row))

    def test_write_failure_is_swallowed(self):
        db = ShadowDatabase(":memory:")
        db.initialize()
        logger = AuditLogger(db)
        db.connection.execute("DROP TABLE audit_log")
        assert logger.log_read("user-1") == ""
        db.close()


# ---------------------------------------------------------------------------
# AuditLogger read tests
# ---------------------------------------------------------------------------

class TestAuditLoggerRead:
    def test_filter_by_user(self, audit_logger):
        audit_logger.log_read("user-1")
        audit_logger.log_read("user-2")
        audit_logger.log_read("user-1", action="history_read")
        events = audit_logger.get_events(user_id="user-1")
        assert len(events) == 2

    def test_filter_by_since(self, audit_logger):
        audit_logger.log_read("user-1")
        assert audit_logger.get_events(since="2000-01-01T00:00:00") != []
        assert audit_logger.get_events(since="2999-01-01T00:00:00") == []

    def test_limit(self, audit_logger):
        for _ in range(5):
            audit_logger.log_read("user-1")
        assert len(audit_logger.get_events(limit=3)) == 3

    def test_count_events(self, audit_logger):
        audit_logger.log_read("user-1")
        audit_logger.log_read("user-1")
        audit_logger.log_denied("user-1", operation="x")
        assert audit_logger.count_events() == 3
        assert audit_logger.count_events(action="profile_read") == 2
        assert audit_logger.count_events(action="snapshot_rebuild") == 0

    def test_count_events_since(self, audit_logger, shadow_db):
        audit_logger.log_read("user-1")
        audit_logger.log_read("user-1")
        audit_logger.log_denied("user-1", operation="x")
        with shadow_db.lock:
            shadow_db.connection.execute(
                "UPDATE audit_log SET timestamp = '2001-01-01T00:00:00+00:00' WHERE action = 'access_denied'"
            )
        assert audit_logger.count_events(since="2020-01-01T00:00:00+00:00") == 2
        assert audit_logger.count_events(action="access_denied", since="2020-01-01T00:00:00+00:00") == 0
        assert audit_logger.count_events(action="access_denied", since="2000-01-01T00:00:00+00:00") == 1
        assert audit_logger.count_events(since="2999-01-01T00:00:00+00:00") == 0

    @pytest.mark.parametrize("action", AUDIT_ACTIONS)
    def test_every_action_is_storable(self, audit_logger, action):
        audit_logger.log_event(AuditEvent(action=action, subject_hash=hash_subject("u")))
        assert audit_logger.count_events(action=action) == 1
