"""Anthropic Claude translator."""

from __future__ import annotations

import logging
import time

from healthshadow.core.translation.translator import TRANSLATION_SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class AnthropicTranslator:
    """Translator backed by the Anthropic SDK."""

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-5-20250929") -> None:
        import anthropic

        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model

    async def translate(self, text: str, target_language: str) -> str:
        start = time.monotonic()
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=1024,
            temperature=0.0,
            system=TRANSLATION_SYSTEM_PROMPT,
            messages=[{
                "role": "user",
                "content": f"Target language (ISO 639-1): {target_language}\n\n{text}",
            }],
        )
        logger.debug(
            "Anthropic translation to %s took %.0fms", target_language, (time.monotonic() - start) * 1000
        )
        return response.content[0].text if response.content else ""
