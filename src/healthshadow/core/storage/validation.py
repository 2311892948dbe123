"""Shape validation for health events.

Runs before the store touches the database: a rejected event leaves no
trace in the log. Each payload validator returns a normalized copy of the
payload (lower-cased symptom names, enum values as plain strings) so that
derivation always sees one canonical form.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from healthshadow.core.errors import ValidationError
from healthshadow.core.storage.models import (
    EventSource,
    EventType,
    HealthEvent,
    LifestyleCategory,
    Severity,
    Urgency,
)

TREATMENT_STATUSES = ("started", "ongoing", "completed", "resolved")
DIET_QUALITIES = ("poor", "average", "good")


def _require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError(f"{what} must be an object, got {type(value).__name__}")
    return value


def _string_list(value: Any, what: str, *, allow_empty: bool = True) -> list[str]:
    if value is None:
        value = []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{what} must be a list of strings")
    cleaned = [v.strip().lower() for v in value if v.strip()]
    if not cleaned and not allow_empty:
        raise ValidationError(f"{what} must not be empty")
    return cleaned


def _unit_float(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{what} must be a number in [0, 1]")
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"{what} must be in [0, 1], got {value}")
    return float(value)


def _enum_value(enum_cls: type, value: Any, what: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{what} must be one of: {allowed}") from None


def _parse_timestamp(value: str) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"timestamp must be an ISO 8601 string, got {type(value).__name__}")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"timestamp is not ISO 8601: {value!r}") from None


# ---------------------------------------------------------------------------
# Per-type payload validators
# ---------------------------------------------------------------------------

def _validate_symptom(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {
        "symptoms": _string_list(payload.get("symptoms"), "symptoms", allow_empty=False),
    }
    if payload.get("severity") is not None:
        out["severity"] = _enum_value(Severity, payload["severity"], "severity")
    if payload.get("text"):
        if not isinstance(payload["text"], str):
            raise ValidationError("text must be a string")
        out["text"] = payload["text"]
    if payload.get("body_parts"):
        out["body_parts"] = _string_list(payload["body_parts"], "body_parts")
    return out


def _validate_voice(payload: dict[str, Any]) -> dict[str, Any]:
    transcription = _require_dict(payload.get("transcription"), "transcription")
    text = transcription.get("text")
    if not isinstance(text, str):
        raise ValidationError("transcription.text must be a string")
    language = transcription.get("language", "en")
    if not isinstance(language, str) or not language:
        raise ValidationError("transcription.language must be a non-empty string")

    temporal = payload.get("temporal_info")
    if temporal is not None and not isinstance(temporal, (str, dict)):
        raise ValidationError("temporal_info must be a string or object")

    return {
        "transcription": {
            "text": text,
            "confidence": _unit_float(transcription.get("confidence", 1.0), "transcription.confidence"),
            "language": language,
        },
        "symptoms": _string_list(payload.get("symptoms"), "symptoms"),
        "body_parts": _string_list(payload.get("body_parts"), "body_parts"),
        "temporal_info": temporal,
        "associated_factors": _string_list(payload.get("associated_factors"), "associated_factors"),
    }


def _validate_image(payload: dict[str, Any]) -> dict[str, Any]:
    has_indicators = "indicators" in payload
    has_quality = "quality_check" in payload
    if has_indicators == has_quality:
        raise ValidationError(
            "image_analysis payload needs exactly one of 'indicators' or 'quality_check'"
        )

    if has_quality:
        check = _require_dict(payload["quality_check"], "quality_check")
        if not isinstance(check.get("passed"), bool):
            raise ValidationError("quality_check.passed must be a boolean")
        return {
            "quality_check": {
                "passed": check["passed"],
                "reason": str(check.get("reason", "")),
            }
        }

    ind = _require_dict(payload["indicators"], "indicators")
    return {
        "indicators": {
            "skin_conditions": _string_list(ind.get("skin_conditions"), "skin_conditions"),
            "eye_conditions": _string_list(ind.get("eye_conditions"), "eye_conditions"),
            "facial_pallor": _unit_float(ind.get("facial_pallor", 0.0), "facial_pallor"),
            "jaundice_indicators": _unit_float(
                ind.get("jaundice_indicators", 0.0), "jaundice_indicators"
            ),
            "confidence": _unit_float(ind.get("confidence", 0.0), "confidence"),
        }
    }


def _validate_lifestyle_facts(category: str, facts: dict[str, Any]) -> None:
    for key, value in facts.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("lifestyle fact names must be non-empty strings")
        if isinstance(value, (dict, list)):
            raise ValidationError(f"lifestyle fact {key!r} must be a scalar")

    if category == LifestyleCategory.EXERCISE.value and "frequency_per_week" in facts:
        freq = facts["frequency_per_week"]
        if isinstance(freq, bool) or not isinstance(freq, (int, float)) or freq < 0:
            raise ValidationError("exercise.frequency_per_week must be a non-negative number")
    if category == LifestyleCategory.HABITS.value and "smoking" in facts:
        if not isinstance(facts["smoking"], bool):
            raise ValidationError("habits.smoking must be a boolean")
    if category == LifestyleCategory.SLEEP.value and "hours_per_night" in facts:
        hours = facts["hours_per_night"]
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not 0 <= hours <= 24:
            raise ValidationError("sleep.hours_per_night must be between 0 and 24")
    if category == LifestyleCategory.DIET.value and "quality" in facts:
        if facts["quality"] not in DIET_QUALITIES:
            raise ValidationError(f"diet.quality must be one of: {', '.join(DIET_QUALITIES)}")


def _validate_lifestyle(payload: dict[str, Any]) -> dict[str, Any]:
    category = _enum_value(LifestyleCategory, payload.get("category"), "category")
    facts = _require_dict(payload.get("facts"), "facts")
    if not facts:
        raise ValidationError("facts must not be empty")
    _validate_lifestyle_facts(category, facts)
    return {"category": category, "facts": dict(facts)}


def _validate_diagnosis(payload: dict[str, Any]) -> dict[str, Any]:
    conditions = payload.get("conditions", [])
    if not isinstance(conditions, list):
        raise ValidationError("conditions must be a list")
    normalized = []
    for entry in conditions:
        entry = _require_dict(entry, "conditions[]")
        name = entry.get("condition")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("conditions[].condition must be a non-empty string")
        normalized.append({
            "condition": name.strip(),
            "confidence": _unit_float(entry.get("confidence"), "conditions[].confidence"),
            "urgency": _enum_value(Urgency, entry.get("urgency", "low"), "conditions[].urgency"),
        })
    emergency = payload.get("emergency", False)
    if not isinstance(emergency, bool):
        raise ValidationError("emergency must be a boolean")
    return {"conditions": normalized, "emergency": emergency}


def _validate_treatment(payload: dict[str, Any]) -> dict[str, Any]:
    condition = payload.get("condition")
    if not isinstance(condition, str) or not condition.strip():
        raise ValidationError("condition must be a non-empty string")
    status = payload.get("status", "started")
    if status not in TREATMENT_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(TREATMENT_STATUSES)}")
    return {
        "condition": condition.strip(),
        "treatment": str(payload.get("treatment", "")),
        "status": status,
    }


_VALIDATORS: dict[EventType, Callable[[dict[str, Any]], dict[str, Any]]] = {
    EventType.SYMPTOM: _validate_symptom,
    EventType.VOICE_ANALYSIS: _validate_voice,
    EventType.IMAGE_ANALYSIS: _validate_image,
    EventType.LIFESTYLE_CHANGE: _validate_lifestyle,
    EventType.DIAGNOSIS: _validate_diagnosis,
    EventType.TREATMENT: _validate_treatment,
}


def validate_event(event: HealthEvent) -> dict[str, Any]:
    """Check an event's declared type and payload shape.

    Returns:
        The normalized payload to persist.

    Raises:
        ValidationError: If the type, source, timestamp or payload is malformed.
    """
    if not isinstance(event.type, EventType):
        _enum_value(EventType, event.type, "type")
    if not isinstance(event.source, EventSource):
        _enum_value(EventSource, event.source, "source")
    if event.timestamp not in (None, ""):
        _parse_timestamp(event.timestamp)
    payload = _require_dict(event.payload, "payload")
    return _VALIDATORS[EventType(event.type)](payload)
