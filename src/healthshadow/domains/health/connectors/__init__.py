"""Collaborator connectors — narrow contracts to analyzers and messaging.

The engine never inspects images, audio or transport details. Everything it
needs from the outside world arrives through these interfaces.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from healthshadow.domains.health.connectors.messaging import DeliveryReport
    from healthshadow.domains.health.connectors.observations import (
        HealthIndicators,
        QualityCheck,
        StructuredObservation,
        SymptomData,
        Transcription,
    )
    from healthshadow.domains.health.conversation.state_machine import OutboundIntent


@runtime_checkable
class ObservationAdapter(Protocol):
    """Turns raw input (image, audio) into an appendable observation."""

    async def produces(self, raw_input: Any) -> StructuredObservation:
        ...


@runtime_checkable
class VisionAnalyzer(Protocol):
    """Image analysis backend: indicators for a usable image, else a failed quality check."""

    async def analyze(self, image: bytes) -> HealthIndicators | QualityCheck:
        ...


@runtime_checkable
class SpeechRecognizer(Protocol):
    async def transcribe(self, audio: bytes) -> Transcription:
        ...


@runtime_checkable
class SymptomExtractor(Protocol):
    async def extract(self, transcription: Transcription) -> SymptomData:
        ...


@runtime_checkable
class MessageDispatcher(Protocol):
    """Messaging transport. Delivery retries against a provider are its own business."""

    async def deliver(self, intent: OutboundIntent) -> DeliveryReport:
        ...
