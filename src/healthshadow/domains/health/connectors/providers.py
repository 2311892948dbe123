"""Offline analyzer implementations. Always available; no external service needed."""

from __future__ import annotations

import re
from typing import Callable

from healthshadow.domains.health.connectors.observations import (
    HealthIndicators,
    QualityCheck,
    SymptomData,
    Transcription,
)

_DURATION = re.compile(
    r"\b(since (?:yesterday|last \w+|\w+day)|for (?:\d+|a few|a couple of|several) \w+|today|this morning)\b"
)


class StaticVisionAnalyzer:
    """Returns a fixed analysis. Stands in for an image classifier in development."""

    def __init__(self, result: HealthIndicators | QualityCheck | None = None) -> None:
        self.result = result or QualityCheck(passed=False, reason="no vision backend configured")
        self.call_count = 0

    async def analyze(self, image: bytes) -> HealthIndicators | QualityCheck:
        self.call_count += 1
        return self.result


class TextSpeechRecognizer:
    """Treats the audio bytes as UTF-8 text. For development and tests."""

    def __init__(self, language: str = "en") -> None:
        self.language = language

    async def transcribe(self, audio: bytes) -> Transcription:
        return Transcription(
            text=audio.decode("utf-8", errors="replace").strip(),
            confidence=1.0,
            language=self.language,
        )


class KeywordSymptomExtractor:
    """Extracts symptoms with a vocabulary matcher (e.g. ``DiagnosisEngine.extract_symptoms``)."""

    def __init__(self, match_symptoms: Callable[[str], list[str]]) -> None:
        self._match = match_symptoms

    async def extract(self, transcription: Transcription) -> SymptomData:
        text = transcription.text.lower()
        duration = _DURATION.search(text)
        return SymptomData(
            symptoms=self._match(transcription.text),
            temporal_info=duration.group(1) if duration else "",
        )
