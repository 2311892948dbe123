"""Mock translator for testing."""

from __future__ import annotations


class MockTranslator:
    """Prefixes text with the target language tag, e.g. ``[hi] Hello``.

    ``fail_times`` makes the first N calls raise ``ConnectionError`` so retry
    and fallback paths can be exercised.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls: list[tuple[str, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def translate(self, text: str, target_language: str) -> str:
        self.calls.append((text, target_language))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("mock translation backend unavailable")
        return f"[{target_language}] {text}"
