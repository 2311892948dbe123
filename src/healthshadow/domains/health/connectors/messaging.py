"""Delivery reports and the in-memory message dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from healthshadow.domains.health.conversation.state_machine import OutboundIntent

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    user_id: str
    kind: str
    delivered: bool
    language: str = "en"
    text: str = ""
    error: str | None = None
    delivered_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "kind": self.kind,
            "delivered": self.delivered,
            "language": self.language,
            "text": self.text,
            "error": self.error,
            "delivered_at": self.delivered_at,
        }


class RecordingDispatcher:
    """Keeps every delivered intent in memory. Used by the server and tests.

    ``fail_times`` makes the first N deliveries raise ``ConnectionError``.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.sent: list[OutboundIntent] = []

    def for_user(self, user_id: str) -> list[OutboundIntent]:
        return [i for i in self.sent if i.user_id == user_id]

    def kinds(self, user_id: str | None = None) -> list[str]:
        intents = self.sent if user_id is None else self.for_user(user_id)
        return [i.kind.value for i in intents]

    def clear(self) -> None:
        self.sent.clear()

    async def deliver(self, intent: OutboundIntent) -> DeliveryReport:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("mock messaging transport unavailable")
        self.sent.append(intent)
        logger.debug("Recorded %s intent for user %s", intent.kind.value, intent.user_id)
        return DeliveryReport(
            user_id=intent.user_id,
            kind=intent.kind.value,
            delivered=True,
            language=intent.language,
            text=intent.text,
        )
