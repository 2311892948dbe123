"""Structured observations and the adapters that produce them.

External analyzers (vision, speech) are opaque collaborators. These adapters
call them under the collaborator retry policy and convert their output into
a ``StructuredObservation`` whose payload is a valid health event payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from healthshadow.core.collaborators.resilience import RetryPolicy, call_with_retry
from healthshadow.core.errors import ValidationError
from healthshadow.core.storage.models import EventSource, EventType, HealthEvent

if TYPE_CHECKING:
    from healthshadow.domains.health.connectors import (
        SpeechRecognizer,
        SymptomExtractor,
        VisionAnalyzer,
    )

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Analyzer output types
# ---------------------------------------------------------------------------

@dataclass
class HealthIndicators:
    """What a vision analyzer saw in a usable image. Levels are 0-1."""

    skin_conditions: list[str] = field(default_factory=list)
    eye_conditions: list[str] = field(default_factory=list)
    facial_pallor: float = 0.0
    jaundice_indicators: float = 0.0
    confidence: float = 0.0


@dataclass
class QualityCheck:
    """A vision analyzer's verdict that the image could not be analyzed."""

    passed: bool
    reason: str = ""


@dataclass
class Transcription:
    text: str
    confidence: float = 1.0
    language: str = "en"


@dataclass
class SymptomData:
    symptoms: list[str] = field(default_factory=list)
    body_parts: list[str] = field(default_factory=list)
    temporal_info: str = ""
    associated_factors: list[str] = field(default_factory=list)


@dataclass
class StructuredObservation:
    """Analyzer output ready to be appended as a health event."""

    event_type: EventType
    payload: dict[str, Any]
    source: EventSource = EventSource.SYSTEM_ANALYSIS
    text: str = ""  # free text to scan for red flags (e.g. a transcription)

    @property
    def symptoms(self) -> list[str]:
        return list(self.payload.get("symptoms", []))

    def to_event(self, timestamp: str = "") -> HealthEvent:
        return HealthEvent(
            type=self.event_type, payload=dict(self.payload), source=self.source, timestamp=timestamp
        )


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class VisionAdapter:
    """Image bytes -> ``image_analysis`` observation."""

    def __init__(self, analyzer: VisionAnalyzer, policy: RetryPolicy | None = None) -> None:
        self._analyzer = analyzer
        self._policy = policy

    async def produces(self, raw_input: bytes) -> StructuredObservation:
        if not raw_input:
            raise ValidationError("image is empty")
        outcome = await call_with_retry(
            "vision", lambda: self._analyzer.analyze(raw_input), self._policy
        )
        if isinstance(outcome, QualityCheck):
            payload: dict[str, Any] = {
                "quality_check": {"passed": outcome.passed, "reason": outcome.reason}
            }
            logger.info("Image rejected by quality check: %s", outcome.reason or "no reason given")
        elif isinstance(outcome, HealthIndicators):
            payload = {
                "indicators": {
                    "skin_conditions": list(outcome.skin_conditions),
                    "eye_conditions": list(outcome.eye_conditions),
                    "facial_pallor": outcome.facial_pallor,
                    "jaundice_indicators": outcome.jaundice_indicators,
                    "confidence": outcome.confidence,
                }
            }
        else:
            raise ValidationError(f"vision analyzer returned {type(outcome).__name__}")
        return StructuredObservation(EventType.IMAGE_ANALYSIS, payload)


class SpeechAdapter:
    """Audio bytes -> transcription -> symptoms -> ``voice_analysis`` observation."""

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        extractor: SymptomExtractor,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._recognizer = recognizer
        self._extractor = extractor
        self._policy = policy

    async def produces(self, raw_input: bytes) -> StructuredObservation:
        if not raw_input:
            raise ValidationError("audio is empty")
        transcription = await call_with_retry(
            "speech", lambda: self._recognizer.transcribe(raw_input), self._policy
        )
        data = await call_with_retry(
            "symptom_extraction", lambda: self._extractor.extract(transcription), self._policy
        )
        payload = {
            "transcription": {
                "text": transcription.text,
                "confidence": transcription.confidence,
                "language": transcription.language,
            },
            "symptoms": list(data.symptoms),
            "body_parts": list(data.body_parts),
            "temporal_info": data.temporal_info,
            "associated_factors": list(data.associated_factors),
        }
        return StructuredObservation(EventType.VOICE_ANALYSIS, payload, text=transcription.text)
