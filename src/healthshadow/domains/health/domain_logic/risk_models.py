"""Risk model definitions and domain constants for snapshot derivation."""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Component names (order is the order weights are listed in)
# ---------------------------------------------------------------------------

COMPONENTS = ("demographic", "lifestyle", "symptoms", "imaging")

# ---------------------------------------------------------------------------
# Fallback values for missing lifestyle facts
# ---------------------------------------------------------------------------

FALLBACK_UNKNOWN_HABIT = 0.3     # Not reported -> mildly cautious
FALLBACK_NEUTRAL = 0.5           # Not reported, no prior -> neutral
FALLBACK_SLEEP = 0.4

# Symptom / indicator counts at which the history component saturates at 1.0
SYMPTOM_SATURATION = 6.0
INDICATOR_SATURATION = 3.0

# Indicator readings below this are treated as noise
MIN_INDICATOR_LEVEL = 0.5
MIN_INDICATOR_CONFIDENCE = 0.4

# Diagnosis events promote a condition to "active" at or above this confidence
ACTIVE_CONDITION_CONFIDENCE = 0.5

SCORE_DIGITS = 6

DIET_RISK = {"poor": 1.0, "average": 0.5, "good": 0.1}


@dataclass(frozen=True)
class RiskModel:
    """Weights and inputs for one condition's risk score.

    ``weights`` follows COMPONENTS order and sums to 1. ``lifestyle_weights``
    maps lifestyle feature names (see lifestyle.lifestyle_features) to weights
    that also sum to 1. An ``indicators`` entry ending in ``*`` matches by
    prefix (``skin:*`` matches every skin condition).
    """

    condition: str
    weights: tuple[float, float, float, float]
    age_onset: float
    age_span: float
    gender_factor: dict[str, float]
    lifestyle_weights: dict[str, float]
    symptoms: tuple[str, ...]
    indicators: tuple[str, ...] = field(default_factory=tuple)


RISK_MODELS: dict[str, RiskModel] = {
    m.condition: m
    for m in (
        RiskModel(
            condition="anemia",
            weights=(0.15, 0.20, 0.30, 0.35),
            age_onset=50, age_span=40,
            gender_factor={"female": 0.7, "male": 0.4},
            lifestyle_weights={"diet_risk": 0.7, "alcohol_risk": 0.3},
            symptoms=("fatigue", "weakness", "dizziness", "pale skin", "shortness of breath"),
            indicators=("pallor",),
        ),
        RiskModel(
            condition="cardiovascular_disease",
            weights=(0.30, 0.40, 0.30, 0.0),
            age_onset=35, age_span=45,
            gender_factor={"male": 0.7, "female": 0.5},
            lifestyle_weights={
                "smoking_risk": 0.35, "inactivity_risk": 0.25,
                "diet_risk": 0.25, "alcohol_risk": 0.15,
            },
            symptoms=("chest pain", "palpitations", "shortness of breath", "swollen ankles", "fatigue"),
        ),
        RiskModel(
            condition="chronic_respiratory_disease",
            weights=(0.20, 0.45, 0.35, 0.0),
            age_onset=40, age_span=40,
            gender_factor={"male": 0.6, "female": 0.5},
            lifestyle_weights={"smoking_risk": 0.8, "inactivity_risk": 0.2},
            symptoms=("cough", "wheezing", "shortness of breath", "chest tightness", "phlegm"),
        ),
        RiskModel(
            condition="hypertension",
            weights=(0.35, 0.45, 0.20, 0.0),
            age_onset=30, age_span=45,
            gender_factor={"male": 0.6, "female": 0.5},
            lifestyle_weights={
                "diet_risk": 0.3, "inactivity_risk": 0.25, "alcohol_risk": 0.2,
                "smoking_risk": 0.15, "sleep_risk": 0.1,
            },
            symptoms=("headache", "dizziness", "blurred vision", "nosebleed"),
        ),
        RiskModel(
            condition="liver_disease",
            weights=(0.10, 0.35, 0.20, 0.35),
            age_onset=40, age_span=40,
            gender_factor={"male": 0.6, "female": 0.5},
            lifestyle_weights={"alcohol_risk": 0.7, "diet_risk": 0.3},
            symptoms=("yellow eyes", "yellow skin", "abdominal pain", "dark urine", "nausea", "fatigue"),
            indicators=("jaundice", "eye:scleral icterus"),
        ),
        RiskModel(
            condition="skin_disorder",
            weights=(0.05, 0.10, 0.35, 0.50),
            age_onset=20, age_span=60,
            gender_factor={"female": 0.5, "male": 0.5},
            lifestyle_weights={"sleep_risk": 0.5, "diet_risk": 0.5},
            symptoms=("rash", "itching", "skin lesion", "dry skin", "mole change"),
            indicators=("skin:*",),
        ),
        RiskModel(
            condition="type_2_diabetes",
            weights=(0.30, 0.45, 0.25, 0.0),
            age_onset=30, age_span=40,
            gender_factor={"male": 0.55, "female": 0.5},
            lifestyle_weights={"diet_risk": 0.45, "inactivity_risk": 0.4, "sleep_risk": 0.15},
            symptoms=("frequent urination", "excessive thirst", "blurred vision", "fatigue", "slow healing"),
        ),
    )
}

RISK_CONDITIONS = sorted(RISK_MODELS)
