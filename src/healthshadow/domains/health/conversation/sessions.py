"""Session store — in-memory conversation sessions with idle expiry."""

from __future__ import annotations

import logging

from healthshadow.domains.health.conversation.state_machine import ConversationState, Session

logger = logging.getLogger(__name__)


class SessionStore:
    """Keyed session store with TTL eviction.

    Sessions in ``emergency_active`` never expire: an unacknowledged
    emergency must survive any amount of silence. Evicted user ids are
    returned so the caller can cancel work still running for them.
    """

    def __init__(self, ttl_seconds: float = 1800.0) -> None:
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def is_expired(self, session: Session, now: float) -> bool:
        if session.state == ConversationState.EMERGENCY_ACTIVE:
            return False
        return now - session.last_activity > self.ttl_seconds

    def get(self, user_id: str, now: float) -> Session | None:
        """Live session for a user; an expired one is dropped and None returned."""
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if self.is_expired(session, now):
            del self._sessions[user_id]
            logger.info("Session %s expired", user_id)
            return None
        return session

    def get_or_create(
        self,
        user_id: str,
        now: float,
        *,
        language: str = "en",
        location: str | None = None,
    ) -> Session:
        session = self.get(user_id, now)
        if session is None:
            session = Session(
                user_id=user_id,
                last_activity=now,
                state_entered_at=now,
                language=language,
                location=location,
            )
            self._sessions[user_id] = session
        return session

    def put(self, session: Session) -> None:
        self._sessions[session.user_id] = session

    def peek(self, user_id: str) -> Session | None:
        """Current session without expiry handling (read-only callers)."""
        return self._sessions.get(user_id)

    def remove(self, user_id: str) -> Session | None:
        return self._sessions.pop(user_id, None)

    def evict_expired(self, now: float) -> list[str]:
        expired = sorted(uid for uid, s in self._sessions.items() if self.is_expired(s, now))
        for user_id in expired:
            del self._sessions[user_id]
        if expired:
            logger.info("Evicted %d idle session(s)", len(expired))
        return expired

    def sessions(self) -> list[Session]:
        return [self._sessions[k] for k in sorted(self._sessions)]
