"""Health shadow service — orchestrates store, diagnosis and conversation per user.

All work that touches one user's profile or session runs under that user's
``asyncio.Lock``: append, derivation, diagnosis and the state transition.
Nothing inside the lock awaits a collaborator. Vision and speech analysis
happen before the lock is taken; translation and delivery happen after it is
released. Collaborator work is tracked per user so that it can be cancelled
when the session expires or an emergency preempts it. Appends are single
SQLite transactions and are never cancelled halfway.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from healthshadow.core.collaborators.resilience import RetryPolicy, call_with_retry
from healthshadow.core.errors import NotFound, TransientCollaboratorError
from healthshadow.core.storage.models import (
    AppendResult,
    ChangeNotification,
    Demographics,
    EventType,
    HealthEvent,
    Preferences,
    ShadowSnapshot,
    User,
)
from healthshadow.domains.health.connectors.messaging import DeliveryReport
from healthshadow.domains.health.conversation.state_machine import (
    ConversationState,
    CreateProfile,
    DiagnosisOutcome,
    FirstContact,
    OutboundIntent,
    RerunDiagnosis,
    Session,
    Tick,
    Transition,
    UserReply,
)
from healthshadow.domains.health.domain_logic.diagnosis import DiagnosisResult
from healthshadow.domains.health.domain_logic.lifestyle import parse_lifestyle_text

if TYPE_CHECKING:
    from healthshadow.core.audit.logger import AuditLogger
    from healthshadow.core.storage.shadow_store import ShadowStore
    from healthshadow.core.translation.translator import TranslationService
    from healthshadow.domains.health.connectors import MessageDispatcher, ObservationAdapter
    from healthshadow.domains.health.connectors.observations import StructuredObservation
    from healthshadow.domains.health.conversation.sessions import SessionStore
    from healthshadow.domains.health.conversation.state_machine import ConversationStateMachine
    from healthshadow.domains.health.domain_logic.diagnosis import DiagnosisEngine

logger = logging.getLogger(__name__)

# Bound on RerunDiagnosis -> DiagnosisOutcome rounds within one message
MAX_ACTION_ROUNDS = 4


@dataclass
class MessageOutcome:
    """What one inbound message or observation led to."""

    user_id: str
    state: str
    versions: list[int] = field(default_factory=list)
    intents: list[OutboundIntent] = field(default_factory=list)
    reports: list[DeliveryReport] = field(default_factory=list)
    diagnosis: DiagnosisResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "state": self.state,
            "versions": list(self.versions),
            "intents": [i.to_dict() for i in self.intents],
            "deliveries": [r.to_dict() for r in self.reports],
            "diagnosis": self.diagnosis.to_dict() if self.diagnosis else None,
            "error": self.error,
        }


class _Turn:
    """Mutable scratch state for one locked section."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.intents: list[OutboundIntent] = []
        self.versions: list[int] = []
        self.changes: list[ChangeNotification] = []
        self.diagnosis: DiagnosisResult | None = None
        self.snapshot: ShadowSnapshot | None = None
        self.preempted = False


class HealthShadowService:
    """Entry point for inbound messages, observations and the clock.

    Usage::

        service = HealthShadowService(store, engine, machine, sessions, translation, dispatcher)
        outcome = await service.handle_message("user-1", "fever and cough since yesterday")
    """

    def __init__(
        self,
        store: ShadowStore,
        engine: DiagnosisEngine,
        machine: ConversationStateMachine,
        sessions: SessionStore,
        translation: TranslationService,
        dispatcher: MessageDispatcher,
        *,
        audit_logger: AuditLogger | None = None,
        policy: RetryPolicy | None = None,
        vision: ObservationAdapter | None = None,
        speech: ObservationAdapter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.engine = engine
        self.machine = machine
        self.sessions = sessions
        self.translation = translation
        self.dispatcher = dispatcher
        self.vision = vision
        self.speech = speech
        self._audit = audit_logger
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Locks and cancellation
    # ------------------------------------------------------------------

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def pending_tasks(self, user_id: str) -> int:
        return sum(1 for t in self._tasks.get(user_id, ()) if not t.done())

    def cancel_pending(self, user_id: str) -> int:
        """Cancel in-flight collaborator work for a user. Returns how many were cancelled."""
        cancelled = 0
        for task in list(self._tasks.get(user_id, ())):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d pending collaborator task(s) for user %s", cancelled, user_id)
        return cancelled

    async def _tracked(self, user_id: str, coro: Awaitable[Any]) -> tuple[bool, Any]:
        """Run collaborator work as a cancellable task. Returns (completed, result).

        Cancellation of the task itself yields (False, None); cancellation of
        the caller propagates.
        """
        task = asyncio.ensure_future(coro)
        bucket = self._tasks.setdefault(user_id, set())
        bucket.add(task)
        try:
            await asyncio.wait({task})
        finally:
            bucket.discard(task)
        if task.cancelled():
            return False, None
        return True, task.result()

    # ------------------------------------------------------------------
    # Inbound: chat messages
    # ------------------------------------------------------------------

    async def handle_message(
        self, user_id: str, text: str, *, language: str | None = None
    ) -> MessageOutcome:
        """Process one chat message and deliver the resulting intents."""
        async with self.lock_for(user_id):
            turn = self._handle_message_locked(user_id, text, language)
        return await self._finish(user_id, turn)

    def _handle_message_locked(self, user_id: str, text: str, language: str | None) -> _Turn:
        now = self._clock()
        if not self.store.has_profile(user_id):
            return self._handle_without_profile(user_id, text, language, now)

        user = self.store.get_user(user_id)
        session = self.sessions.get_or_create(
            user_id, now, language=user.preferences.language, location=user.demographics.location
        )
        turn = _Turn(session)
        prior_state = session.state

        symptoms = self.engine.extract_symptoms(text)
        emergency = self.engine.emergency_matcher.matching_patterns(text)
        if emergency and not symptoms:
            symptoms = [p.display_name.lower() for p in emergency]
        if symptoms:
            self._append(turn, user_id, HealthEvent(
                type=EventType.SYMPTOM,
                payload={"symptoms": symptoms, "text": text},
            ))
        for category, facts in sorted(parse_lifestyle_text(text).items()):
            self._append_lifestyle(turn, user, category, facts)

        if emergency:
            self._diagnose(turn, user, symptoms, text=text)
        else:
            expects_diagnosis = bool(symptoms) and prior_state in (
                ConversationState.IDLE, ConversationState.AWAITING_FEEDBACK
            )
            self._apply(turn, UserReply(text=text, has_symptoms=expects_diagnosis), now)
            if expects_diagnosis:
                self._diagnose(turn, user, symptoms, text=text)

        self._drain_changes(turn, now)
        self.sessions.put(turn.session)
        return turn

    def _handle_without_profile(
        self, user_id: str, text: str, language: str | None, now: float
    ) -> _Turn:
        session = self.sessions.get_or_create(user_id, now, language=language or "en")
        turn = _Turn(session)

        emergency = self.engine.emergency_matcher.match(text, location=session.location)
        if emergency is not None:
            result = DiagnosisResult(emergency_flag=True, emergency=emergency)
            turn.diagnosis = result
            turn.preempted = True
            if self._audit is not None:
                self._audit.log_emergency(user_id, patterns=emergency.patterns)
            self._apply(turn, DiagnosisOutcome(result), now)
        elif session.state in (ConversationState.ONBOARDING, ConversationState.EMERGENCY_ACTIVE):
            self._apply(turn, UserReply(text=text), now)
        else:
            self._apply(turn, FirstContact(text=text, language=language), now)

        self.sessions.put(turn.session)
        return turn

    # ------------------------------------------------------------------
    # Inbound: observations and direct events
    # ------------------------------------------------------------------

    async def submit_image(self, user_id: str, image: bytes) -> MessageOutcome:
        return await self._submit_raw(user_id, self.vision, image, "vision")

    async def submit_audio(self, user_id: str, audio: bytes) -> MessageOutcome:
        return await self._submit_raw(user_id, self.speech, audio, "speech")

    async def _submit_raw(
        self, user_id: str, adapter: ObservationAdapter | None, raw: bytes, name: str
    ) -> MessageOutcome:
        if adapter is None:
            raise RuntimeError(f"No {name} adapter configured")
        if not self.store.has_profile(user_id):
            raise NotFound(user_id)
        try:
            completed, observation = await self._tracked(user_id, adapter.produces(raw))
        except TransientCollaboratorError as exc:
            logger.warning("%s analysis unavailable for user %s: %s", name, user_id, exc)
            return MessageOutcome(user_id=user_id, state=self._state(user_id), error=str(exc))
        if not completed:
            return MessageOutcome(
                user_id=user_id, state=self._state(user_id), error=f"{name} analysis cancelled"
            )
        return await self.submit_observation(user_id, observation)

    async def submit_observation(
        self, user_id: str, observation: StructuredObservation
    ) -> MessageOutcome:
        """Append an analyzer observation; symptom-bearing ones run diagnosis.

        Raises:
            NotFound: The user has no profile.
            ValidationError: The observation payload is malformed.
        """
        async with self.lock_for(user_id):
            now = self._clock()
            user = self.store.get_user(user_id)
            session = self.sessions.get_or_create(
                user_id, now, language=user.preferences.language, location=user.demographics.location
            )
            turn = _Turn(session)
            self._append(turn, user_id, observation.to_event())

            symptoms = observation.symptoms
            red_flag = bool(self.engine.emergency_matcher.matching_patterns(observation.text, symptoms))
            if red_flag or (
                symptoms and session.state in (ConversationState.IDLE, ConversationState.AWAITING_FEEDBACK)
            ):
                self._diagnose(turn, user, symptoms, text=observation.text)
            self._drain_changes(turn, now)
            self.sessions.put(turn.session)
        return await self._finish(user_id, turn)

    async def record_event(self, user_id: str, event: HealthEvent) -> MessageOutcome:
        """Append an externally produced event (e.g. a treatment update)."""
        async with self.lock_for(user_id):
            now = self._clock()
            user = self.store.get_user(user_id)
            turn = _Turn(self.sessions.get_or_create(
                user_id, now, language=user.preferences.language, location=user.demographics.location
            ))
            self._append(turn, user_id, event)
            self._drain_changes(turn, now)
            self.sessions.put(turn.session)
        return await self._finish(user_id, turn)

    # ------------------------------------------------------------------
    # Profile lifecycle
    # ------------------------------------------------------------------

    async def register_profile(
        self,
        user_id: str,
        demographics: Demographics,
        preferences: Preferences | None = None,
    ) -> User:
        async with self.lock_for(user_id):
            return self.store.register_user(
                User(user_id=user_id, demographics=demographics, preferences=preferences or Preferences())
            )

    async def delete_profile(self, user_id: str) -> int:
        """Erase the profile, drop the session and cancel pending work."""
        async with self.lock_for(user_id):
            self.cancel_pending(user_id)
            count = self.store.delete_profile(user_id)
            self.sessions.remove(user_id)
        self._locks.pop(user_id, None)
        self._tasks.pop(user_id, None)
        return count

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    async def tick(self) -> list[str]:
        """Expire idle sessions and time out stale feedback waits.

        Returns the user ids whose sessions were evicted.
        """
        now = self._clock()
        evicted = self.sessions.evict_expired(now)
        for user_id in evicted:
            self.cancel_pending(user_id)
        for session in self.sessions.sessions():
            async with self.lock_for(session.user_id):
                live = self.sessions.peek(session.user_id)
                if live is None:
                    continue
                transition = self.machine.transition(live, Tick(), now)
                self.sessions.put(transition.session)
        return evicted

    # ------------------------------------------------------------------
    # Locked-section helpers (synchronous, no collaborator calls)
    # ------------------------------------------------------------------

    def _append(self, turn: _Turn, user_id: str, event: HealthEvent) -> AppendResult:
        result = self.store.append_with_changes(user_id, event)
        turn.versions.append(result.version)
        turn.snapshot = result.snapshot
        if result.change is not None:
            turn.changes.append(result.change)
        return result

    def _append_lifestyle(self, turn: _Turn, user: User, category: str, facts: dict[str, Any]) -> None:
        snapshot = turn.snapshot or self.store.get_snapshot(user.user_id)
        merged = {**snapshot.lifestyle.get(category, {}), **facts}
        self._append(turn, user.user_id, HealthEvent(
            type=EventType.LIFESTYLE_CHANGE,
            payload={"category": category, "facts": merged},
        ))

    def _apply(self, turn: _Turn, signal: Any, now: float) -> Transition:
        transition = self.machine.transition(turn.session, signal, now)
        turn.session = transition.session
        turn.intents.extend(transition.intents)
        for action in transition.actions:
            self._perform(turn, action, now)
        return transition

    def _perform(self, turn: _Turn, action: Any, now: float, depth: int = 0) -> None:
        if isinstance(action, CreateProfile):
            user = self.store.register_user(User(
                user_id=turn.session.user_id,
                demographics=Demographics(age=action.age, gender=action.gender, location=action.location),
                preferences=Preferences(language=action.language),
            ))
            turn.session.location = user.demographics.location
        elif isinstance(action, RerunDiagnosis):
            if depth >= MAX_ACTION_ROUNDS:
                logger.warning("Diagnosis rerun limit reached for user %s", turn.session.user_id)
                return
            user = self.store.get_user(turn.session.user_id)
            self._diagnose(turn, user, list(action.symptoms), denied=action.denied, depth=depth + 1)
        else:
            raise TypeError(f"Unsupported action: {type(action).__name__}")

    def _diagnose(
        self,
        turn: _Turn,
        user: User,
        symptoms: list[str],
        *,
        text: str = "",
        denied: tuple[str, ...] = (),
        depth: int = 0,
    ) -> None:
        snapshot = turn.snapshot or self.store.get_snapshot(user.user_id)
        result = self.engine.diagnose(
            symptoms, text=text, snapshot=snapshot, location=user.demographics.location, denied=denied
        )
        turn.diagnosis = result
        if result.emergency_flag or result.candidates:
            self._append(turn, user.user_id, HealthEvent(
                type=EventType.DIAGNOSIS, payload=result.to_event_payload()
            ))
        if result.emergency_flag:
            turn.preempted = True
            if self._audit is not None:
                self._audit.log_emergency(user.user_id, patterns=result.emergency.patterns)

        now = self._clock()
        transition = self.machine.transition(turn.session, DiagnosisOutcome(result), now)
        turn.session = transition.session
        turn.intents.extend(transition.intents)
        for action in transition.actions:
            self._perform(turn, action, now, depth=depth)

    def _drain_changes(self, turn: _Turn, now: float) -> None:
        for change in turn.changes:
            self._apply(turn, change, now)
        turn.changes = []

    def _state(self, user_id: str) -> str:
        session = self.sessions.peek(user_id)
        return session.state.value if session else ConversationState.IDLE.value

    # ------------------------------------------------------------------
    # Outbound (outside the lock)
    # ------------------------------------------------------------------

    async def _finish(self, user_id: str, turn: _Turn) -> MessageOutcome:
        if turn.preempted:
            self.cancel_pending(user_id)
        intents = sorted(turn.intents, key=lambda i: -i.priority)
        completed, delivered = await self._tracked(user_id, self.deliver(intents))
        outcome = MessageOutcome(
            user_id=user_id,
            state=turn.session.state.value,
            versions=turn.versions,
            diagnosis=turn.diagnosis,
        )
        if completed:
            outcome.intents = [intent for intent, _ in delivered]
            outcome.reports = [report for _, report in delivered]
        else:
            outcome.intents = intents
            outcome.error = "delivery cancelled"
        return outcome

    async def deliver(
        self, intents: list[OutboundIntent]
    ) -> list[tuple[OutboundIntent, DeliveryReport]]:
        """Translate and dispatch intents in order. Failures degrade to undelivered reports."""
        results: list[tuple[OutboundIntent, DeliveryReport]] = []
        for intent in intents:
            text = await self.translation.translate(intent.text, intent.language)
            localized = replace(intent, text=text)
            try:
                report = await call_with_retry(
                    "messaging", lambda: self.dispatcher.deliver(localized), self._policy
                )
            except TransientCollaboratorError as exc:
                logger.error(
                    "Could not deliver %s intent to user %s: %s",
                    intent.kind.value, intent.user_id, exc,
                )
                report = DeliveryReport(
                    user_id=intent.user_id,
                    kind=intent.kind.value,
                    delivered=False,
                    language=intent.language,
                    text=text,
                    error=str(exc),
                )
            results.append((localized, report))
        return results
