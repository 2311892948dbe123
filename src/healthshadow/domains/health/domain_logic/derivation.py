"""Derivation pipeline: fold one event into the snapshot and detect significant change.

The pipeline is the only code that produces snapshots. ``apply`` is used on
the append path and ``replay`` on the rebuild path; both go through the same
fold, so the snapshot at version n depends on nothing but the first n events
and the user's demographics.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Iterable

from healthshadow.core.storage.models import (
    ChangeNotification,
    ChangeReason,
    Demographics,
    EventType,
    HealthEvent,
    RiskScore,
    ShadowSnapshot,
)
from healthshadow.domains.health.domain_logic.lifestyle import (
    boolean_habits,
    exercise_frequency,
    fold_lifestyle,
)
from healthshadow.domains.health.domain_logic.risk_models import (
    ACTIVE_CONDITION_CONFIDENCE,
    MIN_INDICATOR_CONFIDENCE,
    MIN_INDICATOR_LEVEL,
)
from healthshadow.domains.health.domain_logic.risk_scoring import (
    ScoringInputs,
    compute_risk_scores,
)

if TYPE_CHECKING:
    from healthshadow.core.config.settings import Settings

logger = logging.getLogger(__name__)


def base_digest(demographics: Demographics) -> str:
    """Digest of the inputs before any event: the demographics alone."""
    canonical = json.dumps(demographics.as_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def chain_digest(previous: str, event: HealthEvent) -> str:
    """Extend the inputs digest with one applied event."""
    link = f"{previous}:{event.event_id}:{event.sequence_number}"
    return hashlib.sha256(link.encode("utf-8")).hexdigest()


def _count_indicators(counts: dict[str, int], indicators: dict) -> None:
    if indicators.get("confidence", 0.0) < MIN_INDICATOR_CONFIDENCE:
        return
    if indicators.get("jaundice_indicators", 0.0) >= MIN_INDICATOR_LEVEL:
        counts["jaundice"] = counts.get("jaundice", 0) + 1
    if indicators.get("facial_pallor", 0.0) >= MIN_INDICATOR_LEVEL:
        counts["pallor"] = counts.get("pallor", 0) + 1
    for name in indicators.get("skin_conditions", []):
        key = f"skin:{name}"
        counts[key] = counts.get(key, 0) + 1
    for name in indicators.get("eye_conditions", []):
        key = f"eye:{name}"
        counts[key] = counts.get(key, 0) + 1


class DerivationPipeline:
    """Recomputes lifestyle aggregates, active conditions and risk scores.

    Usage::

        pipeline = DerivationPipeline(delta_threshold=0.2, alert_threshold=0.6)
        snap = pipeline.initial_snapshot("user-1", demographics)
        snap, change = pipeline.apply(snap, event, demographics)
    """

    def __init__(
        self,
        *,
        delta_threshold: float = 0.20,
        alert_threshold: float = 0.60,
        exercise_drop_ratio: float = 0.5,
    ) -> None:
        self.delta_threshold = delta_threshold
        self.alert_threshold = alert_threshold
        self.exercise_drop_ratio = exercise_drop_ratio

    @classmethod
    def from_settings(cls, settings: Settings) -> DerivationPipeline:
        return cls(
            delta_threshold=settings.risk_delta_threshold,
            alert_threshold=settings.risk_alert_threshold,
            exercise_drop_ratio=settings.exercise_drop_ratio,
        )

    # ------------------------------------------------------------------
    # Fold
    # ------------------------------------------------------------------

    def initial_snapshot(self, user_id: str, demographics: Demographics) -> ShadowSnapshot:
        return ShadowSnapshot(user_id=user_id, inputs_digest=base_digest(demographics))

    def apply(
        self,
        previous: ShadowSnapshot,
        event: HealthEvent,
        demographics: Demographics,
    ) -> tuple[ShadowSnapshot, ChangeNotification | None]:
        """Fold one appended event into ``previous`` and return the new snapshot.

        ``previous`` is not modified.
        """
        lifestyle = {k: dict(v) for k, v in previous.lifestyle.items()}
        active = set(previous.active_conditions)
        symptom_counts = dict(previous.symptom_counts)
        indicator_counts = dict(previous.indicator_counts)
        payload = event.payload

        if event.type in (EventType.SYMPTOM, EventType.VOICE_ANALYSIS):
            for symptom in payload.get("symptoms", []):
                symptom_counts[symptom] = symptom_counts.get(symptom, 0) + 1
        elif event.type == EventType.IMAGE_ANALYSIS:
            if "indicators" in payload:
                _count_indicators(indicator_counts, payload["indicators"])
        elif event.type == EventType.LIFESTYLE_CHANGE:
            lifestyle = fold_lifestyle(lifestyle, payload["category"], payload["facts"])
        elif event.type == EventType.DIAGNOSIS:
            if not payload.get("emergency"):
                for entry in payload.get("conditions", []):
                    if entry["confidence"] >= ACTIVE_CONDITION_CONFIDENCE:
                        active.add(entry["condition"])
        elif event.type == EventType.TREATMENT:
            if payload.get("status") in ("completed", "resolved"):
                active.discard(payload["condition"])

        digest = chain_digest(previous.inputs_digest, event)
        result = compute_risk_scores(ScoringInputs(
            demographics=demographics,
            lifestyle=lifestyle,
            symptom_counts=symptom_counts,
            indicator_counts=indicator_counts,
        ))
        risk_scores = {
            condition: RiskScore(
                condition=condition,
                score=score,
                computed_at=event.timestamp,
                inputs_digest=digest,
            )
            for condition, score in result.scores.items()
        }

        snapshot = ShadowSnapshot(
            user_id=previous.user_id,
            version=previous.version + 1,
            last_updated=event.timestamp,
            lifestyle=lifestyle,
            active_conditions=sorted(active),
            risk_scores=risk_scores,
            symptom_counts=symptom_counts,
            indicator_counts=indicator_counts,
            reduced_features=result.reduced_features,
            inputs_digest=digest,
        )
        if result.reduced_features and not previous.reduced_features:
            logger.warning(
                "Reduced-feature scoring for user %s (missing demographics)", previous.user_id
            )

        return snapshot, self.detect_changes(previous, snapshot)

    def replay(
        self,
        user_id: str,
        demographics: Demographics,
        events: Iterable[HealthEvent],
    ) -> ShadowSnapshot:
        """Rebuild a snapshot from an empty state by folding ``events`` in order."""
        snapshot = self.initial_snapshot(user_id, demographics)
        for event in events:
            snapshot, _ = self.apply(snapshot, event, demographics)
        return snapshot

    # ------------------------------------------------------------------
    # Significant change
    # ------------------------------------------------------------------

    def detect_changes(
        self, previous: ShadowSnapshot, current: ShadowSnapshot
    ) -> ChangeNotification | None:
        """Compare two consecutive snapshots.

        Significant when a risk score moves by at least ``delta_threshold``,
        crosses ``alert_threshold`` in either direction, a boolean habit
        flips, or exercise frequency falls below ``exercise_drop_ratio`` of
        its previous value. Conditions with no previous score are skipped.
        """
        reasons: list[ChangeReason] = []

        for condition in sorted(current.risk_scores):
            old = previous.risk_scores.get(condition)
            if old is None:
                continue
            new_score = current.risk_scores[condition].score
            crossed = (old.score < self.alert_threshold) != (new_score < self.alert_threshold)
            if crossed:
                reasons.append(ChangeReason("risk_threshold", condition, old.score, new_score))
            elif abs(new_score - old.score) >= self.delta_threshold:
                reasons.append(ChangeReason("risk_delta", condition, old.score, new_score))

        old_flags = boolean_habits(previous.lifestyle)
        for attribute, value in boolean_habits(current.lifestyle).items():
            if attribute in old_flags and old_flags[attribute] != value:
                reasons.append(ChangeReason("habit_flip", attribute, old_flags[attribute], value))

        old_freq = exercise_frequency(previous.lifestyle)
        new_freq = exercise_frequency(current.lifestyle)
        if old_freq and new_freq is not None and new_freq < old_freq * self.exercise_drop_ratio:
            reasons.append(ChangeReason("exercise_drop", "exercise.frequency_per_week", old_freq, new_freq))

        if not reasons:
            return None
        return ChangeNotification(
            user_id=current.user_id,
            version=current.version,
            reasons=tuple(reasons),
        )
