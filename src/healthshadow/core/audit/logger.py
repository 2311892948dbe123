"""Audit logger — PHI-free access and mutation trail for health profiles.

Every append, read, deletion, rebuild and denied access is recorded in the
``audit_log`` table. The trail never holds health data:

* ``subject_hash`` — SHA-256 of the user id, so a deleted profile leaves no
  row that could be joined back to its events.
* ``metadata`` — counts, versions and type names only, never payloads.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from healthshadow.core.storage.database import ShadowDatabase

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = (
    "event_append",
    "profile_read",
    "history_read",
    "profile_delete",
    "access_denied",
    "snapshot_rebuild",
    "emergency_raised",
)


def hash_subject(user_id: str) -> str:
    """SHA-256 of a user id — the only form in which users appear in the trail."""
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# AuditEvent dataclass
# ---------------------------------------------------------------------------

@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                       # one of AUDIT_ACTIONS
    subject_hash: str = ""
    event_type: str | None = None     # health event type for appends
    version: int | None = None        # snapshot version after the action
    status: str = "success"           # 'success' | 'failure' | 'denied'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------

class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately; a failed write is logged and swallowed
    so that auditing never blocks the health data path.

    Usage::

        audit = AuditLogger(shadow_db)
        audit.log_append("user-1", event_type="symptom", version=4)
        audit.log_denied("user-1", operation="get_snapshot")
    """

    def __init__(self, database: ShadowDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        metadata_json = (
            json.dumps(event.metadata, sort_keys=True, separators=(",", ":"))
            if event.metadata
            else None
        )

        try:
            with self._db.lock:
                self._db.connection.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, action, subject_hash, event_type, version,
                        status, error_type, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        now,
                        event.action,
                        event.subject_hash or None,
                        event.event_type,
                        event.version,
                        event.status,
                        event.error_type,
                        metadata_json,
                    ),
                )
        except Exception:
            logger.exception("Failed to write audit event — event lost")
            return ""

        return event_id

    def log_append(self, user_id: str, *, event_type: str, version: int) -> str:
        return self.log_event(AuditEvent(
            action="event_append",
            subject_hash=hash_subject(user_id),
            event_type=event_type,
            version=version,
        ))

    def log_read(self, user_id: str, *, action: str = "profile_read", version: int | None = None) -> str:
        return self.log_event(AuditEvent(
            action=action,
            subject_hash=hash_subject(user_id),
            version=version,
        ))

    def log_delete(self, user_id: str, *, count: int) -> str:
        """Log a profile deletion with the number of events removed."""
        return self.log_event(AuditEvent(
            action="profile_delete",
            subject_hash=hash_subject(user_id),
            metadata={"records_deleted": count},
        ))

    def log_denied(self, user_id: str, *, operation: str) -> str:
        return self.log_event(AuditEvent(
            action="access_denied",
            subject_hash=hash_subject(user_id),
            status="denied",
            error_type="AuthorizationError",
            metadata={"operation": operation},
        ))

    def log_rebuild(self, user_id: str, *, version: int, reason: str) -> str:
        return self.log_event(AuditEvent(
            action="snapshot_rebuild",
            subject_hash=hash_subject(user_id),
            version=version,
            error_type="IntegrityError",
            metadata={"reason": reason},
        ))

    def log_emergency(self, user_id: str, *, patterns: list[str]) -> str:
        return self.log_event(AuditEvent(
            action="emergency_raised",
            subject_hash=hash_subject(user_id),
            metadata={"patterns": sorted(patterns)},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        user_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if user_id:
            conditions.append("subject_hash = ?")
            params.append(hash_subject(user_id))
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally of one action type and from ``since`` on."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        with self._db.lock:
            row = self._db.connection.execute(
                f"SELECT COUNT(*) FROM audit_log{where}", params
            ).fetchone()
        return row[0]
