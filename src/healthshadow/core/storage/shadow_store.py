"""Shadow store — append-only per-user event log plus a materialized snapshot.

The store mediates between domain objects (HealthEvent, ShadowSnapshot) and
the SQLite database. Payloads are sealed with PayloadCipher; the snapshot row
is rewritten in the same transaction as the event that produced it, so a
reader never sees an event without its derivation or the reverse.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator

from healthshadow.core.errors import IntegrityError, NotFound, ValidationError
from healthshadow.core.storage.database import ShadowDatabase
from healthshadow.core.storage.encryption import EncryptionError, PayloadCipher
from healthshadow.core.storage.models import (
    NOTIFICATION_CADENCES,
    AppendResult,
    Demographics,
    EventSource,
    EventType,
    HealthEvent,
    Preferences,
    ShadowSnapshot,
    TimeRange,
    User,
)
from healthshadow.core.storage.validation import validate_event

if TYPE_CHECKING:
    from healthshadow.core.audit.logger import AuditLogger
    from healthshadow.domains.health.domain_logic.derivation import DerivationPipeline

logger = logging.getLogger(__name__)

GENDERS = ("female", "male", "other")
DEFAULT_PAGE_SIZE = 100


def normalize_timestamp(value: str | None) -> str:
    """Parse an ISO 8601 timestamp and render it in UTC; empty means now."""
    if value is None or value == "":
        return datetime.now(timezone.utc).isoformat()
    if not isinstance(value, str):
        raise ValidationError(f"timestamp must be an ISO 8601 string, got {type(value).__name__}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"timestamp is not ISO 8601: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _validate_user(user: User) -> None:
    demo = user.demographics
    if not user.user_id or not user.user_id.strip():
        raise ValidationError("user_id must not be empty")
    if demo.age is not None and (isinstance(demo.age, bool) or not isinstance(demo.age, int) or not 0 <= demo.age <= 130):
        raise ValidationError("age must be an integer between 0 and 130")
    if demo.gender is not None and demo.gender not in GENDERS:
        raise ValidationError(f"gender must be one of: {', '.join(GENDERS)}")
    if not user.preferences.language:
        raise ValidationError("language must not be empty")
    if user.preferences.notification_cadence not in NOTIFICATION_CADENCES:
        raise ValidationError(
            f"notification_cadence must be one of: {', '.join(NOTIFICATION_CADENCES)}"
        )


class EventHistory:
    """Finite, restartable view of a user's log in ascending sequence order.

    The upper sequence bound is fixed when the view is created, so events
    appended afterwards never show up mid-iteration. Each ``iter()`` starts
    again from the first matching event and reads the log page by page.
    """

    def __init__(
        self,
        store: ShadowStore,
        user_id: str,
        time_range: TimeRange | None,
        page_size: int,
        upper_bound: int,
    ) -> None:
        self._store = store
        self.user_id = user_id
        self.time_range = time_range or TimeRange()
        self.page_size = page_size
        self.upper_bound = upper_bound

    def pages(self) -> Iterator[list[HealthEvent]]:
        cursor = 0
        while cursor < self.upper_bound:
            page = self._store._fetch_page(
                self.user_id, cursor, self.upper_bound, self.time_range, self.page_size
            )
            if not page:
                return
            yield page
            cursor = page[-1].sequence_number

    def __iter__(self) -> Iterator[HealthEvent]:
        for page in self.pages():
            yield from page

    def to_list(self) -> list[HealthEvent]:
        return list(self)


class ShadowStore:
    """Per-user event log with a derived snapshot.

    Appends for one user are serialized by a per-user lock; the shared
    database connection is guarded separately and only for the duration of
    each read or write, so appends for different users do not wait on each
    other's derivation.

    Usage::

        db = ShadowDatabase(":memory:")
        db.initialize()
        store = ShadowStore(db, PayloadCipher([key]), DerivationPipeline())
        store.register_user(User("u1", Demographics(age=40, gender="female")))
        version = store.append("u1", HealthEvent(EventType.SYMPTOM, {"symptoms": ["cough"]}))
    """

    def __init__(
        self,
        database: ShadowDatabase,
        cipher: PayloadCipher,
        pipeline: DerivationPipeline,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._db = database
        self._cipher = cipher
        self._pipeline = pipeline
        self._audit = audit_logger
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def pipeline(self) -> DerivationPipeline:
        return self._pipeline

    def user_lock(self, user_id: str) -> threading.Lock:
        """The write lock serializing every mutation of one user's profile."""
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._db.lock:
            conn = self._db.connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, user: User) -> User:
        """Create a profile. Re-registering with identical demographics is a no-op.

        Raises:
            ValidationError: On malformed fields, or when the profile exists
                with different demographics (they are fixed at onboarding).
        """
        _validate_user(user)
        with self.user_lock(user.user_id):
            existing = self._load_user(user.user_id)
            if existing is not None:
                if existing.demographics != user.demographics:
                    raise ValidationError("demographics are fixed once a profile is created")
                return existing

            created = user.created_at or self._now_iso()
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO users
                       (user_id, demographics_enc, language, notification_cadence, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        user.user_id,
                        self._cipher.seal(user.demographics.as_dict()),
                        user.preferences.language,
                        user.preferences.notification_cadence,
                        created,
                    ),
                )
        logger.info("Registered profile %s", user.user_id)
        return replace(user, created_at=created)

    def get_user(self, user_id: str) -> User:
        user = self._load_user(user_id)
        if user is None:
            raise NotFound(user_id)
        return user

    def has_profile(self, user_id: str) -> bool:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT 1 FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row is not None

    def update_preferences(
        self,
        user_id: str,
        *,
        language: str | None = None,
        notification_cadence: str | None = None,
    ) -> User:
        with self.user_lock(user_id):
            user = self.get_user(user_id)
            prefs = Preferences(
                language=language or user.preferences.language,
                notification_cadence=notification_cadence or user.preferences.notification_cadence,
            )
            updated = replace(user, preferences=prefs)
            _validate_user(updated)
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE users SET language = ?, notification_cadence = ? WHERE user_id = ?",
                    (prefs.language, prefs.notification_cadence, user_id),
                )
        return updated

    def list_user_ids(self) -> list[str]:
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT user_id FROM users ORDER BY user_id"
            ).fetchall()
        return [row[0] for row in rows]

    def _load_user(self, user_id: str) -> User | None:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        demo = self._cipher.open(row["demographics_enc"])
        return User(
            user_id=row["user_id"],
            demographics=Demographics(
                age=demo.get("age"), gender=demo.get("gender"), location=demo.get("location")
            ),
            preferences=Preferences(
                language=row["language"], notification_cadence=row["notification_cadence"]
            ),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(self, user_id: str, event: HealthEvent) -> int:
        """Validate, append and derive. Returns the new snapshot version.

        Raises:
            ValidationError: The event is malformed; nothing was written.
            NotFound: The user has no profile.
        """
        return self.append_with_changes(user_id, event).version

    def append_with_changes(self, user_id: str, event: HealthEvent) -> AppendResult:
        """Like :meth:`append`, also returning the snapshot and any change signal."""
        payload = validate_event(event)
        timestamp = normalize_timestamp(event.timestamp)

        with self.user_lock(user_id):
            user = self.get_user(user_id)
            previous = self._current_snapshot(user)

            event_id = event.event_id or str(uuid.uuid4())
            with self._db.lock:
                conn = self._db.connection
                if conn.execute(
                    "SELECT 1 FROM health_events WHERE event_id = ?", (event_id,)
                ).fetchone():
                    raise ValidationError(f"event_id {event_id!r} already appended")
                row = conn.execute(
                    "SELECT MAX(sequence_number) FROM health_events WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
            sequence = (row[0] or 0) + 1

            stored = HealthEvent(
                type=EventType(event.type),
                payload=payload,
                source=EventSource(event.source),
                timestamp=timestamp,
                event_id=event_id,
                user_id=user_id,
                sequence_number=sequence,
            )
            snapshot, change = self._pipeline.apply(previous, stored, user.demographics)

            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO health_events
                       (user_id, sequence_number, event_id, timestamp, event_type, source, payload_enc)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        user_id,
                        sequence,
                        event_id,
                        timestamp,
                        stored.type.value,
                        stored.source.value,
                        self._cipher.seal(payload),
                    ),
                )
                self._write_snapshot(conn, snapshot)

        logger.info(
            "Appended %s for user %s (seq=%d, version=%d)",
            stored.type.value, user_id, sequence, snapshot.version,
        )
        if change is not None:
            logger.info(
                "Significant change for user %s: %s", user_id, ", ".join(change.subjects())
            )
        if self._audit is not None:
            self._audit.log_append(user_id, event_type=stored.type.value, version=snapshot.version)
        return AppendResult(version=snapshot.version, event=stored, snapshot=snapshot, change=change)

    def _write_snapshot(self, conn: Any, snapshot: ShadowSnapshot) -> None:
        conn.execute(
            """INSERT INTO shadow_snapshots (user_id, version, last_updated, inputs_digest, state_enc)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   version = excluded.version,
                   last_updated = excluded.last_updated,
                   inputs_digest = excluded.inputs_digest,
                   state_enc = excluded.state_enc""",
            (
                snapshot.user_id,
                snapshot.version,
                snapshot.last_updated,
                snapshot.inputs_digest,
                self._cipher.seal(snapshot.to_dict()),
            ),
        )
        conn.execute("DELETE FROM risk_scores WHERE user_id = ?", (snapshot.user_id,))
        for condition in sorted(snapshot.risk_scores):
            risk = snapshot.risk_scores[condition]
            conn.execute(
                """INSERT INTO risk_scores (user_id, condition, score, computed_at, inputs_digest)
                   VALUES (?, ?, ?, ?, ?)""",
                (snapshot.user_id, condition, risk.score, risk.computed_at, risk.inputs_digest),
            )

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_snapshot(self, user_id: str) -> ShadowSnapshot:
        """Latest materialized state.

        A stored snapshot that fails its integrity check is rebuilt from the
        log before being returned.

        Raises:
            NotFound: The user has no profile.
        """
        user = self.get_user(user_id)
        try:
            return self._read_snapshot(user)
        except IntegrityError as exc:
            logger.warning("Snapshot for user %s failed integrity check: %s", user_id, exc)
            with self.user_lock(user_id):
                return self._rebuild(user, reason=str(exc))

    def peek_snapshot(self, user_id: str) -> ShadowSnapshot:
        """Latest state without writing anything.

        A stored snapshot that fails its integrity check is replayed in
        memory; the stored row is left for a writer to repair.

        Raises:
            NotFound: The user has no profile.
        """
        user = self.get_user(user_id)
        try:
            return self._read_snapshot(user)
        except IntegrityError as exc:
            logger.debug("Snapshot for user %s needs rebuild, replaying read-only: %s", user_id, exc)
            return self.replay(user_id)

    def _current_snapshot(self, user: User) -> ShadowSnapshot:
        """Snapshot to fold the next event into. Caller holds the user lock."""
        try:
            return self._read_snapshot(user)
        except IntegrityError as exc:
            logger.warning("Snapshot for user %s failed integrity check: %s", user.user_id, exc)
            return self._rebuild(user, reason=str(exc))

    def _read_snapshot(self, user: User) -> ShadowSnapshot:
        with self._db.lock:
            conn = self._db.connection
            row = conn.execute(
                "SELECT version, state_enc FROM shadow_snapshots WHERE user_id = ?",
                (user.user_id,),
            ).fetchone()
            count = conn.execute(
                "SELECT COUNT(*) FROM health_events WHERE user_id = ?", (user.user_id,)
            ).fetchone()[0]

        if row is None:
            if count:
                raise IntegrityError(f"missing snapshot for {count} event(s)")
            return self._pipeline.initial_snapshot(user.user_id, user.demographics)

        try:
            snapshot = ShadowSnapshot.from_dict(self._cipher.open(row["state_enc"]))
        except (EncryptionError, KeyError, ValueError, TypeError) as exc:
            raise IntegrityError(f"unreadable snapshot: {exc}") from exc
        if snapshot.version != count or row["version"] != count:
            raise IntegrityError(f"snapshot version {snapshot.version} != event count {count}")
        return snapshot

    def _rebuild(self, user: User, *, reason: str) -> ShadowSnapshot:
        snapshot = self.replay(user.user_id)
        with self._transaction() as conn:
            self._write_snapshot(conn, snapshot)
        logger.warning(
            "Rebuilt snapshot for user %s from log (version=%d)", user.user_id, snapshot.version
        )
        if self._audit is not None:
            self._audit.log_rebuild(user.user_id, version=snapshot.version, reason=reason[:200])
        return snapshot

    def replay(self, user_id: str) -> ShadowSnapshot:
        """Recompute the snapshot from an empty state by folding the whole log."""
        user = self.get_user(user_id)
        return self._pipeline.replay(user_id, user.demographics, self.get_history(user_id))

    def verify_snapshot(self, user_id: str) -> bool:
        """Compare the stored snapshot with a fresh replay.

        Returns True when they match. On divergence the stored snapshot is
        replaced by the replay and False is returned.
        """
        with self.user_lock(user_id):
            user = self.get_user(user_id)
            replayed = self.replay(user_id)
            try:
                stored = self._read_snapshot(user)
            except IntegrityError as exc:
                self._rebuild(user, reason=str(exc))
                return False
            if stored.to_dict() != replayed.to_dict():
                self._rebuild(user, reason="snapshot diverges from log replay")
                return False
        return True

    def users_at_risk(self, condition: str, *, min_score: float) -> list[tuple[str, float]]:
        """(user_id, score) for users whose stored score is at least ``min_score``."""
        with self._db.lock:
            rows = self._db.connection.execute(
                """SELECT user_id, score FROM risk_scores
                   WHERE condition = ? AND score >= ? ORDER BY score DESC, user_id""",
                (condition, min_score),
            ).fetchall()
        return [(row[0], row[1]) for row in rows]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(
        self,
        user_id: str,
        time_range: TimeRange | None = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> EventHistory:
        """Events in ascending sequence order. Empty for unknown or deleted users."""
        if page_size < 1:
            raise ValidationError("page_size must be at least 1")
        if time_range is not None:
            time_range = TimeRange(
                since=normalize_timestamp(time_range.since) if time_range.since else None,
                until=normalize_timestamp(time_range.until) if time_range.until else None,
            )
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT MAX(sequence_number) FROM health_events WHERE user_id = ?", (user_id,)
            ).fetchone()
        return EventHistory(self, user_id, time_range, page_size, row[0] or 0)

    def count_events(self, user_id: str) -> int:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM health_events WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0]

    def _fetch_page(
        self,
        user_id: str,
        after: int,
        upper: int,
        time_range: TimeRange,
        limit: int,
    ) -> list[HealthEvent]:
        conditions = ["user_id = ?", "sequence_number > ?", "sequence_number <= ?"]
        params: list[Any] = [user_id, after, upper]
        if time_range.since:
            conditions.append("timestamp >= ?")
            params.append(time_range.since)
        if time_range.until:
            conditions.append("timestamp <= ?")
            params.append(time_range.until)
        params.append(limit)

        query = (
            "SELECT * FROM health_events WHERE "
            + " AND ".join(conditions)
            + " ORDER BY sequence_number ASC LIMIT ?"
        )
        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: Any) -> HealthEvent:
        return HealthEvent(
            type=EventType(row["event_type"]),
            payload=self._cipher.open(row["payload_enc"]),
            source=EventSource(row["source"]),
            timestamp=row["timestamp"],
            event_id=row["event_id"],
            user_id=row["user_id"],
            sequence_number=row["sequence_number"],
        )

    # ------------------------------------------------------------------
    # Deletion (right to erasure)
    # ------------------------------------------------------------------

    def delete_profile(self, user_id: str) -> int:
        """Remove the log, the snapshot, the scores and the profile row.

        Runs as one transaction: either everything is gone or nothing changed.

        Returns:
            Number of events deleted.

        Raises:
            NotFound: The user has no profile.
        """
        with self.user_lock(user_id):
            with self._transaction() as conn:
                if conn.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,)).fetchone() is None:
                    raise NotFound(user_id)
                count = conn.execute(
                    "SELECT COUNT(*) FROM health_events WHERE user_id = ?", (user_id,)
                ).fetchone()[0]
                conn.execute("DELETE FROM risk_scores WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM shadow_snapshots WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM health_events WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))

        with self._locks_guard:
            self._locks.pop(user_id, None)
        logger.warning("Deleted profile %s: %d events removed", user_id, count)
        if self._audit is not None:
            self._audit.log_delete(user_id, count=count)
        return count
