"""Deterministic risk scoring: aggregates + demographics -> per-condition scores.

Each component function returns (value, details) with the value clamped to
[0, 1]. All formulas are pure: no clock, no randomness, and sums run over
sorted keys so the same inputs always give bit-identical floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from healthshadow.core.storage.models import Demographics
from healthshadow.domains.health.domain_logic.lifestyle import lifestyle_features
from healthshadow.domains.health.domain_logic.risk_models import (
    INDICATOR_SATURATION,
    RISK_MODELS,
    SCORE_DIGITS,
    SYMPTOM_SATURATION,
    RiskModel,
)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    """Clamp a value to [lo, hi]."""
    return max(lo, min(hi, value))


@dataclass
class ScoringInputs:
    """Everything a risk score may depend on. Nothing else is consulted."""

    demographics: Demographics
    lifestyle: dict[str, dict[str, Any]] = field(default_factory=dict)
    symptom_counts: dict[str, int] = field(default_factory=dict)
    indicator_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class ScoringResult:
    scores: dict[str, float]
    reduced_features: bool
    details: dict[str, dict[str, float]] = field(default_factory=dict)


def has_full_demographics(demographics: Demographics) -> bool:
    """Age and gender are required for the demographic component."""
    return demographics.age is not None and bool(demographics.gender)


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def compute_demographic(model: RiskModel, demographics: Demographics) -> tuple[float, dict]:
    """Age ramp (70%) blended with a gender prior (30%)."""
    age_factor = _clamp((float(demographics.age) - model.age_onset) / model.age_span)
    gender = (demographics.gender or "").lower()
    gender_factor = model.gender_factor.get(gender, 0.5)
    value = 0.7 * age_factor + 0.3 * gender_factor
    return _clamp(value), {"age_factor": round(age_factor, 4), "gender_factor": gender_factor}


def compute_lifestyle(model: RiskModel, features: dict[str, float]) -> tuple[float, dict]:
    value = 0.0
    for name in sorted(model.lifestyle_weights):
        value += model.lifestyle_weights[name] * features[name]
    return _clamp(value), {name: features[name] for name in sorted(model.lifestyle_weights)}


def compute_symptom_history(model: RiskModel, symptom_counts: dict[str, int]) -> tuple[float, dict]:
    """Frequency of condition-related symptoms across the whole history."""
    total = sum(symptom_counts.get(s, 0) for s in sorted(model.symptoms))
    return _clamp(total / SYMPTOM_SATURATION), {"related_symptom_reports": total}


def _indicator_matches(pattern: str, key: str) -> bool:
    if pattern.endswith("*"):
        return key.startswith(pattern[:-1])
    return key == pattern


def compute_imaging(model: RiskModel, indicator_counts: dict[str, int]) -> tuple[float, dict]:
    total = 0
    for key in sorted(indicator_counts):
        if any(_indicator_matches(p, key) for p in model.indicators):
            total += indicator_counts[key]
    return _clamp(total / INDICATOR_SATURATION), {"related_indicator_reports": total}


# ---------------------------------------------------------------------------
# Blend
# ---------------------------------------------------------------------------

def score_condition(
    model: RiskModel,
    inputs: ScoringInputs,
    features: dict[str, float],
    *,
    include_demographic: bool,
) -> tuple[float, dict]:
    """Weighted blend of the available components, renormalized by their weights.

    When the demographic component is excluded (reduced-feature pass) its
    weight is dropped and the remaining weights are rescaled to sum to 1.
    """
    w_demo, w_life, w_symp, w_img = model.weights
    parts: list[tuple[float, float]] = []
    details: dict[str, Any] = {}

    if include_demographic:
        demo, demo_details = compute_demographic(model, inputs.demographics)
        parts.append((w_demo, demo))
        details["demographic"] = round(demo, 4)
        details.update(demo_details)

    life, _ = compute_lifestyle(model, features)
    parts.append((w_life, life))
    details["lifestyle"] = round(life, 4)

    symp, symp_details = compute_symptom_history(model, inputs.symptom_counts)
    parts.append((w_symp, symp))
    details["symptoms"] = round(symp, 4)
    details.update(symp_details)

    img, img_details = compute_imaging(model, inputs.indicator_counts)
    parts.append((w_img, img))
    details["imaging"] = round(img, 4)
    details.update(img_details)

    weight_total = sum(w for w, _ in parts)
    if weight_total <= 0:
        return 0.0, details
    value = sum(w * v for w, v in parts) / weight_total
    return round(_clamp(value), SCORE_DIGITS), details


def compute_risk_scores(inputs: ScoringInputs) -> ScoringResult:
    """Score every known condition.

    A missing age or gender does not fail derivation: the demographic
    component is skipped for all conditions and the result is flagged
    ``reduced_features``.
    """
    full = has_full_demographics(inputs.demographics)
    features = lifestyle_features(inputs.lifestyle)

    scores: dict[str, float] = {}
    details: dict[str, dict[str, float]] = {}
    for condition in sorted(RISK_MODELS):
        score, detail = score_condition(
            RISK_MODELS[condition], inputs, features, include_demographic=full
        )
        scores[condition] = score
        details[condition] = detail

    return ScoringResult(scores=scores, reduced_features=not full, details=details)
