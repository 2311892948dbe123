"""Tests for deterministic risk scoring."""

from __future__ import annotations

import pytest

from healthshadow.core.storage.models import Demographics
from healthshadow.domains.health.domain_logic.lifestyle import lifestyle_features
from healthshadow.domains.health.domain_logic.risk_models import (
    FALLBACK_NEUTRAL,
    FALLBACK_UNKNOWN_HABIT,
    RISK_CONDITIONS,
    RISK_MODELS,
)
from healthshadow.domains.health.domain_logic.risk_scoring import (
    ScoringInputs,
    compute_demographic,
    compute_imaging,
    compute_risk_scores,
    compute_symptom_history,
)

ADULT = Demographics(age=40, gender="female", location="IN")


class TestModels:
    @pytest.mark.parametrize("condition", RISK_CONDITIONS)
    def test_weights_sum_to_one(self, condition):
        model = RISK_MODELS[condition]
        assert sum(model.weights) == pytest.approx(1.0)
        assert sum(model.lifestyle_weights.values()) == pytest.approx(1.0)


class TestComponents:
    def test_age_ramp(self):
        model = RISK_MODELS["cardiovascular_disease"]
        young, _ = compute_demographic(model, Demographics(age=20, gender="female"))
        old, _ = compute_demographic(model, Demographics(age=80, gender="female"))
        assert young == pytest.approx(0.3 * 0.5)
        assert old == pytest.approx(0.7 + 0.3 * 0.5)

    def test_unknown_gender_uses_neutral_prior(self):
        model = RISK_MODELS["anemia"]
        _, details = compute_demographic(model, Demographics(age=30, gender="other"))
        assert details["gender_factor"] == 0.5

    def test_symptom_history_saturates(self):
        model = RISK_MODELS["chronic_respiratory_disease"]
        value, details = compute_symptom_history(model, {"cough": 10, "rash": 4})
        assert value == 1.0
        assert details["related_symptom_reports"] == 10

    def test_imaging_prefix_match(self):
        model = RISK_MODELS["skin_disorder"]
        value, _ = compute_imaging(model, {"skin:eczema": 1, "skin:acne": 1, "pallor": 5})
        assert value == pytest.approx(2 / 3)


class TestLifestyleFeatures:
    def test_unreported_facts_use_fallbacks(self):
        features = lifestyle_features({})
        assert features["smoking_risk"] == FALLBACK_UNKNOWN_HABIT
        assert features["inactivity_risk"] == FALLBACK_NEUTRAL

    def test_reported_facts(self):
        features = lifestyle_features({
            "habits": {"smoking": True, "alcohol_units_per_week": 42},
            "exercise": {"frequency_per_week": 5},
            "diet": {"quality": "good"},
            "sleep": {"hours_per_night": 7.5},
        })
        assert features == {
            "alcohol_risk": 1.0,
            "diet_risk": 0.1,
            "inactivity_risk": 0.0,
            "sleep_risk": 0.0,
            "smoking_risk": 1.0,
        }


class TestComputeRiskScores:
    def test_scores_every_condition_in_range(self):
        result = compute_risk_scores(ScoringInputs(demographics=ADULT))
        assert sorted(result.scores) == RISK_CONDITIONS
        assert all(0.0 <= s <= 1.0 for s in result.scores.values())
        assert result.reduced_features is False

    def test_bit_identical_for_same_inputs(self):
        inputs = ScoringInputs(
            demographics=ADULT,
            lifestyle={"habits": {"smoking": True}},
            symptom_counts={"cough": 2, "fatigue": 1},
            indicator_counts={"pallor": 1},
        )
        assert compute_risk_scores(inputs).scores == compute_risk_scores(inputs).scores

    def test_smoking_raises_respiratory_risk(self):
        former = compute_risk_scores(ScoringInputs(ADULT, lifestyle={"habits": {"smoking": False}}))
        smokes = compute_risk_scores(ScoringInputs(ADULT, lifestyle={"habits": {"smoking": True}}))
        condition = "chronic_respiratory_disease"
        assert smokes.scores[condition] > former.scores[condition]

    def test_missing_demographics_reduce_features(self):
        result = compute_risk_scores(ScoringInputs(Demographics(age=None, gender="male")))
        assert result.reduced_features is True
        assert "demographic" not in result.details["hypertension"]
        assert all(0.0 <= s <= 1.0 for s in result.scores.values())

    def test_reduced_scores_renormalize_weights(self):
        lifestyle = {
            "habits": {"smoking": True, "alcohol_units_per_week": 21},
            "exercise": {"frequency_per_week": 0},
            "diet": {"quality": "poor"},
        }
        result = compute_risk_scores(ScoringInputs(Demographics(), lifestyle=lifestyle))
        # lifestyle component is 1.0 and carries 0.4 of the remaining 0.7 weight
        assert result.scores["cardiovascular_disease"] == pytest.approx(round(0.4 / 0.7, 6))
