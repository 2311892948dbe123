"""Data models for the event log and the materialized shadow snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Kinds of health event accepted by the log."""

    SYMPTOM = "symptom"
    IMAGE_ANALYSIS = "image_analysis"
    VOICE_ANALYSIS = "voice_analysis"
    LIFESTYLE_CHANGE = "lifestyle_change"
    DIAGNOSIS = "diagnosis"
    TREATMENT = "treatment"


class EventSource(str, Enum):
    """Who produced the event."""

    USER_INPUT = "user_input"
    SYSTEM_ANALYSIS = "system_analysis"
    EXTERNAL = "external"


class LifestyleCategory(str, Enum):
    DIET = "diet"
    EXERCISE = "exercise"
    SLEEP = "sleep"
    HABITS = "habits"


class Severity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class Urgency(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    EMERGENCY = "emergency"


# Event types whose payload carries a symptom list for the diagnosis engine
SYMPTOM_BEARING_TYPES = {EventType.SYMPTOM, EventType.VOICE_ANALYSIS}

NOTIFICATION_CADENCES = ("daily", "weekly", "off")


@dataclass(frozen=True)
class Demographics:
    """Fixed at onboarding. Any field may be missing (reduced-feature scoring)."""

    age: int | None = None
    gender: str | None = None  # 'female' | 'male' | 'other'
    location: str | None = None  # coarse: ISO country code

    def as_dict(self) -> dict[str, Any]:
        return {"age": self.age, "gender": self.gender, "location": self.location}


@dataclass
class Preferences:
    language: str = "en"
    notification_cadence: str = "weekly"  # one of NOTIFICATION_CADENCES


@dataclass
class User:
    """A profile owner. ``user_id`` and ``demographics`` never change."""

    user_id: str
    demographics: Demographics = field(default_factory=Demographics)
    preferences: Preferences = field(default_factory=Preferences)
    created_at: str = ""


@dataclass(frozen=True)
class HealthEvent:
    """One immutable entry in a user's health log.

    ``sequence_number`` and ``event_id`` are assigned by the store on append;
    callers submit events with the defaults. ``timestamp`` is informational
    only, the log is ordered by ``sequence_number``.
    """

    type: EventType
    payload: dict[str, Any]
    source: EventSource = EventSource.USER_INPUT
    timestamp: str = ""  # ISO 8601
    event_id: str = ""
    user_id: str = ""
    sequence_number: int = 0

    def carries_symptoms(self) -> bool:
        return self.type in SYMPTOM_BEARING_TYPES


@dataclass(frozen=True)
class RiskScore:
    condition: str
    score: float  # 0-1
    computed_at: str  # timestamp of the last event that fed the score
    inputs_digest: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "condition": self.condition,
            "score": self.score,
            "computed_at": self.computed_at,
            "inputs_digest": self.inputs_digest,
        }


@dataclass
class ShadowSnapshot:
    """Materialized current state for one user.

    Derived, never authoritative: replaying the first ``version`` events from
    an empty snapshot must reproduce it exactly.
    """

    user_id: str
    version: int = 0
    last_updated: str = ""
    lifestyle: dict[str, dict[str, Any]] = field(default_factory=dict)
    active_conditions: list[str] = field(default_factory=list)
    risk_scores: dict[str, RiskScore] = field(default_factory=dict)
    symptom_counts: dict[str, int] = field(default_factory=dict)
    indicator_counts: dict[str, int] = field(default_factory=dict)
    reduced_features: bool = False
    inputs_digest: str = ""

    def score_for(self, condition: str) -> float:
        risk = self.risk_scores.get(condition)
        return risk.score if risk is not None else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Canonical dict form (sorted keys) used for storage and comparison."""
        return {
            "user_id": self.user_id,
            "version": self.version,
            "last_updated": self.last_updated,
            "lifestyle": {k: dict(sorted(v.items())) for k, v in sorted(self.lifestyle.items())},
            "active_conditions": sorted(self.active_conditions),
            "risk_scores": {k: self.risk_scores[k].as_dict() for k in sorted(self.risk_scores)},
            "symptom_counts": dict(sorted(self.symptom_counts.items())),
            "indicator_counts": dict(sorted(self.indicator_counts.items())),
            "reduced_features": self.reduced_features,
            "inputs_digest": self.inputs_digest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShadowSnapshot:
        return cls(
            user_id=data["user_id"],
            version=int(data.get("version", 0)),
            last_updated=data.get("last_updated", ""),
            lifestyle={k: dict(v) for k, v in data.get("lifestyle", {}).items()},
            active_conditions=list(data.get("active_conditions", [])),
            risk_scores={
                k: RiskScore(
                    condition=v["condition"],
                    score=float(v["score"]),
                    computed_at=v.get("computed_at", ""),
                    inputs_digest=v.get("inputs_digest", ""),
                )
                for k, v in data.get("risk_scores", {}).items()
            },
            symptom_counts={k: int(v) for k, v in data.get("symptom_counts", {}).items()},
            indicator_counts={k: int(v) for k, v in data.get("indicator_counts", {}).items()},
            reduced_features=bool(data.get("reduced_features", False)),
            inputs_digest=data.get("inputs_digest", ""),
        )


@dataclass(frozen=True)
class TimeRange:
    """Inclusive ISO 8601 bounds on event timestamps. Either side may be open."""

    since: str | None = None
    until: str | None = None


@dataclass(frozen=True)
class ChangeReason:
    kind: str  # 'risk_delta' | 'risk_threshold' | 'habit_flip' | 'exercise_drop'
    subject: str  # condition or lifestyle attribute
    previous: Any = None
    current: Any = None


@dataclass(frozen=True)
class ChangeNotification:
    """Signal that derived state moved enough to consider telling the user."""

    user_id: str
    version: int
    reasons: tuple[ChangeReason, ...]

    def subjects(self) -> list[str]:
        return sorted({r.subject for r in self.reasons})


@dataclass(frozen=True)
class AppendResult:
    version: int
    event: HealthEvent
    snapshot: ShadowSnapshot
    change: ChangeNotification | None = None
