"""SQLite database management for the health shadow log.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per onboarded user; demographics are fixed at creation
CREATE TABLE IF NOT EXISTS users (
    user_id              TEXT PRIMARY KEY,
    demographics_enc     TEXT NOT NULL,
    language             TEXT NOT NULL DEFAULT 'en',
    notification_cadence TEXT NOT NULL DEFAULT 'weekly',
    created_at           TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Append-only log; (user_id, sequence_number) is the total order per user
CREATE TABLE IF NOT EXISTS health_events (
    user_id         TEXT NOT NULL REFERENCES users(user_id),
    sequence_number INTEGER NOT NULL,
    event_id        TEXT NOT NULL UNIQUE,
    timestamp       TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    source          TEXT NOT NULL,
    payload_enc     TEXT NOT NULL,
    PRIMARY KEY (user_id, sequence_number)
);

-- Materialized state; one row per user, versioned by event count
CREATE TABLE IF NOT EXISTS shadow_snapshots (
    user_id       TEXT PRIMARY KEY REFERENCES users(user_id),
    version       INTEGER NOT NULL,
    last_updated  TEXT NOT NULL,
    inputs_digest TEXT NOT NULL,
    state_enc     TEXT NOT NULL
);

-- Unencrypted computed scores (for indexed queries by the notification sweep)
CREATE TABLE IF NOT EXISTS risk_scores (
    user_id       TEXT NOT NULL REFERENCES users(user_id),
    condition     TEXT NOT NULL,
    score         REAL NOT NULL,
    computed_at   TEXT NOT NULL,
    inputs_digest TEXT NOT NULL,
    PRIMARY KEY (user_id, condition)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_type ON health_events(user_id, event_type);
CREATE INDEX IF NOT EXISTS idx_events_ts   ON health_events(user_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_risk_score  ON risk_scores(condition, score);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (access logging, PHI-free)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id            TEXT PRIMARY KEY,
    timestamp     TEXT NOT NULL DEFAULT (datetime('now')),
    action        TEXT NOT NULL,
    subject_hash  TEXT,
    event_type    TEXT,
    version       INTEGER,
    status        TEXT NOT NULL DEFAULT 'success',
    error_type    TEXT,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_subject   ON audit_log(subject_hash);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class ShadowDatabase:
    """SQLite database manager for the event log and snapshots.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    One connection is shared by every caller; ``lock`` must be held around
    each statement group that touches it.

    Usage::

        db = ShadowDatabase(":memory:")
        db.initialize()
        with db.lock:
            db.connection.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)
        else:
            target = ":memory:"

        # isolation_level=None: transactions are opened explicitly with BEGIN
        self._conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        # Deleted rows are overwritten on disk, not just unlinked
        self._conn.execute("PRAGMA secure_delete=ON")

        self._ensure_schema()
        logger.info("Shadow database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        conn.executescript(_SCHEMA_V1)

        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        current_version = row[0] if row[0] is not None else 0

        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Shadow database closed")

    def __enter__(self) -> ShadowDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
