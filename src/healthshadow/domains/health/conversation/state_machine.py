"""Conversation state machine — decides the next outbound intent for a user.

``ConversationStateMachine.transition`` is a pure decision function: it takes
a session, a signal and the current time, and returns a new session plus the
intents to send and the actions the caller should perform. It never touches
storage or the network, and it never mutates the session it was given.

Emergency handling has the highest priority. An emergency diagnosis moves
every state to ``emergency_active`` and drops any pending questions. The
emergency stays active until the user acknowledges it; until then replies
only re-send the reminder and change notifications are held back.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from healthshadow.core.storage.models import ChangeNotification
from healthshadow.domains.health.conversation import messages
from healthshadow.domains.health.domain_logic.diagnosis import (
    ClarifyingQuestion,
    DiagnosisResult,
)
from healthshadow.domains.health.domain_logic.emergency import (
    EmergencyAssessment,
    normalize_text,
)

if TYPE_CHECKING:
    from healthshadow.core.config.settings import Settings

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    IDLE = "idle"
    ONBOARDING = "onboarding"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    AWAITING_FEEDBACK = "awaiting_feedback"
    EMERGENCY_ACTIVE = "emergency_active"


class IntentKind(str, Enum):
    ONBOARDING_QUESTION = "onboarding_question"
    PROFILE_CONFIRMATION = "profile_confirmation"
    CLARIFYING_QUESTION = "clarifying_question"
    DIAGNOSIS = "diagnosis"
    NO_MATCH = "no_match"
    NOTED = "noted"
    FEEDBACK_THANKS = "feedback_thanks"
    CHANGE_NOTICE = "change_notice"
    EMERGENCY_ALERT = "emergency_alert"
    EMERGENCY_REMINDER = "emergency_reminder"
    EMERGENCY_CLEARED = "emergency_cleared"
    REMINDER = "reminder"


ONBOARDING_FIELDS = ("age", "gender", "location", "language")

YES_WORDS = {"yes", "y", "yeah", "yep", "yup", "sure", "correct", "haan", "ha", "ndio"}
NO_WORDS = {"no", "n", "nope", "nah", "not", "nahi", "hapana"}
# An acknowledgment phrase preceded by one of these (within two words) does not count
NEGATION_WORDS = {"not", "no", "never", "nahi", "hapana"}
NEGATION_WINDOW = 2
SKIP_WORDS = {"skip", "pass", "prefer not to say", "no answer"}

GENDER_WORDS = {
    "female": "female", "f": "female", "woman": "female", "girl": "female",
    "male": "male", "m": "male", "man": "male", "boy": "male",
    "other": "other", "non binary": "other", "nonbinary": "other",
}

COUNTRY_NAMES = {
    "india": "IN", "united states": "US", "usa": "US", "america": "US",
    "united kingdom": "GB", "uk": "GB", "britain": "GB", "england": "GB",
    "kenya": "KE", "nigeria": "NG",
}

LANGUAGE_NAMES = {
    "english": "en", "hindi": "hi", "swahili": "sw", "kiswahili": "sw",
    "spanish": "es", "french": "fr", "bengali": "bn", "tamil": "ta", "marathi": "mr",
}

EMERGENCY_PRIORITY = 100


# ---------------------------------------------------------------------------
# Session and signals
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """Transient per-user conversation state. Expired sessions are rebuilt empty."""

    user_id: str
    state: ConversationState = ConversationState.IDLE
    step: int = 0
    pending_questions: list[ClarifyingQuestion] = field(default_factory=list)
    collected_data: dict[str, Any] = field(default_factory=dict)
    last_activity: float = 0.0
    state_entered_at: float = 0.0
    language: str = "en"
    location: str | None = None
    emergency: EmergencyAssessment | None = None
    deferred_notifications: list[ChangeNotification] = field(default_factory=list)

    @property
    def in_emergency(self) -> bool:
        return self.state == ConversationState.EMERGENCY_ACTIVE


@dataclass(frozen=True)
class FirstContact:
    """A message from a user who has no profile yet."""

    text: str = ""
    language: str | None = None


@dataclass(frozen=True)
class UserReply:
    text: str
    has_symptoms: bool = False


@dataclass(frozen=True)
class DiagnosisOutcome:
    result: DiagnosisResult


@dataclass(frozen=True)
class Tick:
    """Periodic clock signal for timeouts."""


Signal = Union[FirstContact, UserReply, DiagnosisOutcome, ChangeNotification, Tick]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass
class OutboundIntent:
    user_id: str
    kind: IntentKind
    text: str
    language: str = "en"
    priority: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "kind": self.kind.value,
            "text": self.text,
            "language": self.language,
            "priority": self.priority,
            "data": self.data,
        }


@dataclass(frozen=True)
class CreateProfile:
    age: int | None
    gender: str | None
    location: str | None
    language: str


@dataclass(frozen=True)
class RerunDiagnosis:
    symptoms: tuple[str, ...]
    denied: tuple[str, ...] = ()


Action = Union[CreateProfile, RerunDiagnosis]


@dataclass
class Transition:
    session: Session
    intents: list[OutboundIntent] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Answer parsing
# ---------------------------------------------------------------------------

def _words(text: str) -> set[str]:
    return set(normalize_text(text).split())


def parse_yes_no(text: str) -> bool | None:
    words = _words(text)
    if words & YES_WORDS:
        return True
    if words & NO_WORDS:
        return False
    return None


def _is_skip(text: str) -> bool:
    norm = normalize_text(text)
    return norm in SKIP_WORDS or norm.startswith("skip")


def parse_onboarding_answer(field_name: str, text: str) -> tuple[bool, Any]:
    """Return (valid, value) for one onboarding field. 'skip' yields (True, None)."""
    norm = normalize_text(text)
    if field_name != "language" and _is_skip(text):
        return True, None

    if field_name == "age":
        match = re.search(r"\d{1,3}", norm)
        if match and 0 < int(match.group()) <= 130:
            return True, int(match.group())
        return False, None

    if field_name == "gender":
        for phrase in sorted(GENDER_WORDS, key=len, reverse=True):
            if re.search(rf"\b{re.escape(phrase)}\b", norm):
                return True, GENDER_WORDS[phrase]
        return False, None

    if field_name == "location":
        for name, code in COUNTRY_NAMES.items():
            if re.search(rf"\b{re.escape(name)}\b", norm):
                return True, code
        if re.fullmatch(r"[a-z]{2}", norm):
            return True, norm.upper()
        return False, None

    if field_name == "language":
        if _is_skip(text):
            return True, "en"
        for name, code in LANGUAGE_NAMES.items():
            if name in norm:
                return True, code
        if re.fullmatch(r"[a-z]{2,3}", norm):
            return True, norm
        return False, None

    raise ValueError(f"Unknown onboarding field: {field_name!r}")


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------

class ConversationStateMachine:
    """Pure transition function over :class:`Session`.

    Usage::

        machine = ConversationStateMachine(acknowledgment_policy="explicit")
        t = machine.transition(session, DiagnosisOutcome(result), now=time.time())
        for intent in t.intents:
            ...
    """

    def __init__(
        self,
        *,
        acknowledgment_policy: str = "explicit",
        acknowledgment_phrases: tuple[str, ...] | list[str] = ("i am safe", "i'm safe", "acknowledged"),
        feedback_timeout_seconds: float = 900.0,
    ) -> None:
        if acknowledgment_policy not in ("explicit", "any_message"):
            raise ValueError(f"Unknown acknowledgment policy: {acknowledgment_policy!r}")
        self.acknowledgment_policy = acknowledgment_policy
        self.feedback_timeout_seconds = feedback_timeout_seconds
        phrases = sorted({normalize_text(p) for p in acknowledgment_phrases if p.strip()}, key=len, reverse=True)
        self._ack_re = (
            re.compile(r"\b(" + "|".join(re.escape(p) for p in phrases) + r")\b") if phrases else None
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ConversationStateMachine:
        return cls(
            acknowledgment_policy=settings.acknowledgment_policy,
            acknowledgment_phrases=settings.acknowledgment_phrases,
            feedback_timeout_seconds=settings.feedback_timeout_seconds,
        )

    def is_acknowledgment(self, text: str) -> bool:
        if self.acknowledgment_policy == "any_message":
            return True
        if self._ack_re is None:
            return False
        normalized = normalize_text(text)
        for match in self._ack_re.finditer(normalized):
            preceding = normalized[: match.start()].split()[-NEGATION_WINDOW:]
            if not any(w in NEGATION_WORDS or w.endswith("n't") for w in preceding):
                return True
        return False

    def transition(self, session: Session, signal: Signal, now: float) -> Transition:
        """Apply one signal. ``session`` is left untouched; the result holds a copy."""
        s = copy.deepcopy(session)
        t = Transition(session=s)

        if isinstance(signal, DiagnosisOutcome) and signal.result.emergency_flag:
            self._enter_emergency(t, signal.result, now)
        elif s.state == ConversationState.EMERGENCY_ACTIVE:
            self._in_emergency(t, signal, now)
        elif isinstance(signal, FirstContact):
            self._start_onboarding(t, signal, now)
        elif isinstance(signal, UserReply):
            self._on_reply(t, signal, now)
        elif isinstance(signal, DiagnosisOutcome):
            self._on_diagnosis(t, signal.result, now)
        elif isinstance(signal, ChangeNotification):
            if s.state == ConversationState.ONBOARDING:
                s.deferred_notifications.append(signal)
            else:
                t.intents.append(self._change_intent(s, signal))
        elif isinstance(signal, Tick):
            self._on_tick(t, now)
        else:
            raise TypeError(f"Unsupported signal: {type(signal).__name__}")

        if not isinstance(signal, (Tick, ChangeNotification)):
            s.last_activity = now
        if s.state != session.state:
            logger.info(
                "Session %s: %s -> %s on %s",
                s.user_id, session.state.value, s.state.value, type(signal).__name__,
            )
        return t

    # --- helpers ---

    def _intent(self, s: Session, kind: IntentKind, text: str, **data: Any) -> OutboundIntent:
        priority = EMERGENCY_PRIORITY if kind == IntentKind.EMERGENCY_ALERT else 0
        return OutboundIntent(
            user_id=s.user_id, kind=kind, text=text, language=s.language, priority=priority, data=data
        )

    def _change_intent(self, s: Session, change: ChangeNotification) -> OutboundIntent:
        return self._intent(
            s, IntentKind.CHANGE_NOTICE, messages.render_change_notice(change),
            version=change.version, subjects=change.subjects(),
        )

    @staticmethod
    def _enter(s: Session, state: ConversationState, now: float) -> None:
        s.state = state
        s.state_entered_at = now
        s.step = 0

    # --- emergency ---

    def _enter_emergency(self, t: Transition, result: DiagnosisResult, now: float) -> None:
        s = t.session
        s.pending_questions = []
        s.collected_data = {}
        s.emergency = result.emergency
        self._enter(s, ConversationState.EMERGENCY_ACTIVE, now)
        t.intents.append(self._intent(
            s, IntentKind.EMERGENCY_ALERT,
            messages.render_emergency_alert(result.emergency),
            emergency=result.emergency.to_dict(),
            disclaimer=result.disclaimer,
        ))

    def _in_emergency(self, t: Transition, signal: Signal, now: float) -> None:
        s = t.session
        if isinstance(signal, ChangeNotification):
            s.deferred_notifications.append(signal)
            return
        if isinstance(signal, UserReply) and self.is_acknowledgment(signal.text):
            s.emergency = None
            self._enter(s, ConversationState.IDLE, now)
            t.intents.append(self._intent(s, IntentKind.EMERGENCY_CLEARED, messages.EMERGENCY_CLEARED))
            self._release_deferred(t)
            return
        if isinstance(signal, (UserReply, FirstContact)):
            t.intents.append(self._intent(
                s, IntentKind.EMERGENCY_REMINDER, messages.render_emergency_reminder(s.emergency)
            ))
        # Non-emergency diagnoses and ticks are ignored until acknowledged

    def _release_deferred(self, t: Transition) -> None:
        s = t.session
        for change in s.deferred_notifications:
            t.intents.append(self._change_intent(s, change))
        s.deferred_notifications = []

    # --- onboarding ---

    def _start_onboarding(self, t: Transition, signal: FirstContact, now: float) -> None:
        s = t.session
        if s.state == ConversationState.ONBOARDING:
            self._ask_onboarding(t)
            return
        self._enter(s, ConversationState.ONBOARDING, now)
        s.collected_data = {}
        if signal.language:
            s.language = signal.language
            s.collected_data["language"] = signal.language
        self._ask_onboarding(t)

    def _next_onboarding_field(self, s: Session) -> str | None:
        for name in ONBOARDING_FIELDS:
            if name not in s.collected_data:
                return name
        return None

    def _ask_onboarding(self, t: Transition, *, retry: bool = False) -> None:
        s = t.session
        name = self._next_onboarding_field(s)
        if name is None:
            return
        text = messages.ONBOARDING_QUESTIONS[name]
        if retry:
            text = messages.ONBOARDING_RETRY + text
        t.intents.append(self._intent(s, IntentKind.ONBOARDING_QUESTION, text, field=name))

    def _on_onboarding_reply(self, t: Transition, reply: UserReply, now: float) -> None:
        s = t.session
        name = self._next_onboarding_field(s)
        if name is not None:
            valid, value = parse_onboarding_answer(name, reply.text)
            if not valid:
                self._ask_onboarding(t, retry=True)
                return
            s.collected_data[name] = value
            s.step += 1
            if name == "language":
                s.language = value

        if self._next_onboarding_field(s) is not None:
            self._ask_onboarding(t)
            return

        data = s.collected_data
        s.location = data.get("location")
        t.actions.append(CreateProfile(
            age=data.get("age"),
            gender=data.get("gender"),
            location=data.get("location"),
            language=data.get("language") or "en",
        ))
        s.collected_data = {}
        self._enter(s, ConversationState.IDLE, now)
        t.intents.append(self._intent(s, IntentKind.PROFILE_CONFIRMATION, messages.PROFILE_CONFIRMATION))
        self._release_deferred(t)

    # --- replies ---

    def _on_reply(self, t: Transition, reply: UserReply, now: float) -> None:
        s = t.session
        if s.state == ConversationState.ONBOARDING:
            self._on_onboarding_reply(t, reply, now)
        elif s.state == ConversationState.AWAITING_CLARIFICATION:
            self._on_clarification_answer(t, reply, now)
        elif s.state == ConversationState.AWAITING_FEEDBACK:
            s.collected_data = {}
            self._enter(s, ConversationState.IDLE, now)
            if not reply.has_symptoms:
                t.intents.append(self._intent(s, IntentKind.FEEDBACK_THANKS, messages.FEEDBACK_THANKS))
        elif not reply.has_symptoms:
            t.intents.append(self._intent(s, IntentKind.NOTED, messages.NOTED))

    def _on_clarification_answer(self, t: Transition, reply: UserReply, now: float) -> None:
        s = t.session
        if not s.pending_questions:
            self._enter(s, ConversationState.IDLE, now)
            return

        question = s.pending_questions[0]
        if question.symptom is None:
            s.collected_data["details"] = reply.text.strip()
        else:
            answer = parse_yes_no(reply.text)
            if answer is None:
                t.intents.append(self._intent(
                    s, IntentKind.CLARIFYING_QUESTION, messages.YES_NO_RETRY + question.text,
                    symptom=question.symptom,
                ))
                return
            key = "confirmed" if answer else "denied"
            s.collected_data.setdefault(key, []).append(question.symptom)

        s.pending_questions = s.pending_questions[1:]
        s.step += 1
        if s.pending_questions:
            self._ask_next_question(t)
            return

        data = s.collected_data
        symptoms = tuple(sorted(set(data.get("symptoms", [])) | set(data.get("confirmed", []))))
        t.actions.append(RerunDiagnosis(symptoms=symptoms, denied=tuple(sorted(data.get("denied", [])))))
        self._enter(s, ConversationState.IDLE, now)

    def _ask_next_question(self, t: Transition) -> None:
        s = t.session
        question = s.pending_questions[0]
        t.intents.append(self._intent(
            s, IntentKind.CLARIFYING_QUESTION, question.text,
            symptom=question.symptom, remaining=len(s.pending_questions),
        ))

    # --- diagnosis ---

    def _on_diagnosis(self, t: Transition, result: DiagnosisResult, now: float) -> None:
        s = t.session
        if s.state == ConversationState.ONBOARDING:
            return

        asked = set(s.collected_data.get("asked", [])) if s.state == ConversationState.IDLE else set()
        fresh = [q for q in result.clarifying_questions if q.text not in asked]
        if fresh:
            base = s.collected_data if s.state == ConversationState.IDLE else {}
            s.collected_data = {
                "symptoms": list(result.symptoms),
                "asked": sorted(asked | {q.text for q in fresh}),
                "confirmed": list(base.get("confirmed", [])),
                "denied": list(base.get("denied", [])),
            }
            s.pending_questions = fresh
            self._enter(s, ConversationState.AWAITING_CLARIFICATION, now)
            self._ask_next_question(t)
            return

        s.pending_questions = []
        s.collected_data = {}
        if not result.candidates:
            self._enter(s, ConversationState.IDLE, now)
            t.intents.append(self._intent(s, IntentKind.NO_MATCH, messages.NO_MATCH))
            return

        self._enter(s, ConversationState.AWAITING_FEEDBACK, now)
        t.intents.append(self._intent(
            s, IntentKind.DIAGNOSIS, messages.render_diagnosis(result),
            candidates=[c.to_dict() for c in result.candidates[:3]],
            disclaimer=result.disclaimer,
        ))

    # --- clock ---

    def _on_tick(self, t: Transition, now: float) -> None:
        s = t.session
        if (
            s.state == ConversationState.AWAITING_FEEDBACK
            and now - s.state_entered_at >= self.feedback_timeout_seconds
        ):
            self._enter(s, ConversationState.IDLE, now)
