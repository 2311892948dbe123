"""Lifestyle aggregation: fold ``lifestyle_change`` events into category facts.

A lifestyle event replaces exactly one category (diet, exercise, sleep or
habits); the other categories keep their last reported facts.
"""

from __future__ import annotations

import re
from typing import Any

from healthshadow.domains.health.domain_logic.risk_models import (
    DIET_RISK,
    FALLBACK_NEUTRAL,
    FALLBACK_SLEEP,
    FALLBACK_UNKNOWN_HABIT,
)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _num(val: Any) -> float | None:
    if val is None or isinstance(val, bool):
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def fold_lifestyle(
    aggregate: dict[str, dict[str, Any]], category: str, facts: dict[str, Any]
) -> dict[str, dict[str, Any]]:
    """Return a new aggregate with ``category`` replaced by ``facts``."""
    updated = {k: dict(v) for k, v in aggregate.items()}
    updated[category] = dict(facts)
    return updated


def exercise_frequency(aggregate: dict[str, dict[str, Any]]) -> float | None:
    return _num(aggregate.get("exercise", {}).get("frequency_per_week"))


def boolean_habits(aggregate: dict[str, dict[str, Any]]) -> dict[str, bool]:
    """Binary lifestyle attributes (e.g. ``habits.smoking``) keyed ``category.fact``."""
    flags: dict[str, bool] = {}
    for category in sorted(aggregate):
        for fact, value in sorted(aggregate[category].items()):
            if isinstance(value, bool):
                flags[f"{category}.{fact}"] = value
    return flags


def lifestyle_features(aggregate: dict[str, dict[str, Any]]) -> dict[str, float]:
    """Map the lifestyle aggregate to 0-1 risk features.

    Unreported facts fall back to conservative defaults rather than zero, so a
    silent user is not scored as a perfectly healthy one.
    """
    habits = aggregate.get("habits", {})
    smoking = habits.get("smoking")
    smoking_risk = (1.0 if smoking else 0.0) if isinstance(smoking, bool) else FALLBACK_UNKNOWN_HABIT

    units = _num(habits.get("alcohol_units_per_week"))
    alcohol_risk = _clamp(units / 21.0) if units is not None else FALLBACK_UNKNOWN_HABIT

    freq = exercise_frequency(aggregate)
    inactivity_risk = _clamp(1.0 - freq / 5.0) if freq is not None else FALLBACK_NEUTRAL

    quality = aggregate.get("diet", {}).get("quality")
    diet_risk = DIET_RISK.get(quality, FALLBACK_NEUTRAL)

    hours = _num(aggregate.get("sleep", {}).get("hours_per_night"))
    sleep_risk = _clamp(abs(hours - 7.5) / 4.0) if hours is not None else FALLBACK_SLEEP

    return {
        "alcohol_risk": alcohol_risk,
        "diet_risk": diet_risk,
        "inactivity_risk": inactivity_risk,
        "sleep_risk": sleep_risk,
        "smoking_risk": smoking_risk,
    }


# ---------------------------------------------------------------------------
# Free-text lifestyle updates
# ---------------------------------------------------------------------------

_EXERCISE_FREQ = re.compile(
    r"\b(?:exercis\w*|work(?:ing)? ?out|gym|run\w*|walk\w*|jog\w*|yoga)\b\D{0,24}?"
    r"(\d+)\s*(?:times|days|x)\s*(?:a|per|each)\s*week"
)
_SLEEP_HOURS = re.compile(r"\bsleep\w*\D{0,16}?(\d+(?:\.\d+)?)\s*(?:hours|hrs|h)\b")
_ALCOHOL_UNITS = re.compile(r"(\d+)\s*(?:drinks|units|beers|glasses)\s*(?:a|per|each)\s*week")
_QUIT_SMOKING = re.compile(r"\b(?:quit|stopped|gave up|no longer|don't|do not|never)\b\D{0,12}\bsmok")
_SMOKING = re.compile(r"\b(?:started smoking|i smoke|smoking again|smoke \d+|smoker)\b")
_NO_EXERCISE = re.compile(r"\b(?:stopped|quit|no longer|don't|do not|not)\b\D{0,12}\b(?:exercis|gym|work(?:ing)? ?out)")
_GOOD_DIET = re.compile(r"\b(?:eat(?:ing)? (?:healthy|healthier|well)|balanced diet|more vegetables)\b")
_POOR_DIET = re.compile(r"\b(?:junk food|fast food|unhealthy|fried food|lots of sugar)\b")


def parse_lifestyle_text(text: str) -> dict[str, dict[str, Any]]:
    """Pick lifestyle facts out of a chat message, keyed by category.

    Only facts stated with a recognizable phrase are returned; everything
    else in the message is ignored.
    """
    lowered = text.lower().replace("’", "'")
    updates: dict[str, dict[str, Any]] = {}

    if _QUIT_SMOKING.search(lowered):
        updates.setdefault("habits", {})["smoking"] = False
    elif _SMOKING.search(lowered):
        updates.setdefault("habits", {})["smoking"] = True
    alcohol = _ALCOHOL_UNITS.search(lowered)
    if alcohol:
        updates.setdefault("habits", {})["alcohol_units_per_week"] = int(alcohol.group(1))

    exercise = _EXERCISE_FREQ.search(lowered)
    if exercise:
        updates["exercise"] = {"frequency_per_week": int(exercise.group(1))}
    elif _NO_EXERCISE.search(lowered):
        updates["exercise"] = {"frequency_per_week": 0}

    sleep = _SLEEP_HOURS.search(lowered)
    if sleep and float(sleep.group(1)) <= 24:
        updates["sleep"] = {"hours_per_night": float(sleep.group(1))}

    if _GOOD_DIET.search(lowered):
        updates["diet"] = {"quality": "good"}
    elif _POOR_DIET.search(lowered):
        updates["diet"] = {"quality": "poor"}

    return updates
