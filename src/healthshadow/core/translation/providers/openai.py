"""OpenAI GPT translator."""

from __future__ import annotations

import logging
import time

from healthshadow.core.translation.translator import TRANSLATION_SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class OpenAITranslator:
    """Translator backed by the OpenAI SDK."""

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        import openai

        self.client = openai.AsyncOpenAI(api_key=api_key)
        self.model = model

    async def translate(self, text: str, target_language: str) -> str:
        start = time.monotonic()
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=1024,
            temperature=0.0,
            messages=[
                {"role": "system", "content": TRANSLATION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Target language (ISO 639-1): {target_language}\n\n{text}",
                },
            ],
        )
        logger.debug(
            "OpenAI translation to %s took %.0fms", target_language, (time.monotonic() - start) * 1000
        )
        choice = response.choices[0] if response.choices else None
        return choice.message.content or "" if choice else ""
