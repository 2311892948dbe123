"""Translator protocol, provider factory and the caching translation service."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Protocol, runtime_checkable

from healthshadow.core.collaborators.resilience import RetryPolicy, call_with_retry
from healthshadow.core.errors import TransientCollaboratorError

logger = logging.getLogger(__name__)

SOURCE_LANGUAGE = "en"

TRANSLATION_SYSTEM_PROMPT = (
    "You translate short health messages for a patient-facing assistant. "
    "Translate the user's text into the requested language using plain, "
    "everyday words. Keep numbers, phone numbers and medical warnings exact. "
    "Reply with the translation only."
)


@runtime_checkable
class Translator(Protocol):
    """Abstract interface to a translation backend."""

    async def translate(self, text: str, target_language: str) -> str: ...


def create_translator(provider_name: str, api_key: str = "", model: str = "") -> Translator:
    """Factory function to create a translator by provider name.

    Args:
        provider_name: "anthropic", "openai", or "mock"
        api_key: API key for the provider.
        model: Model identifier override.
    """
    if provider_name == "anthropic":
        from healthshadow.core.translation.providers.anthropic import AnthropicTranslator

        return AnthropicTranslator(api_key=api_key, model=model or "claude-sonnet-4-5-20250929")
    elif provider_name == "openai":
        from healthshadow.core.translation.providers.openai import OpenAITranslator

        return OpenAITranslator(api_key=api_key, model=model or "gpt-4o")
    elif provider_name == "mock":
        from healthshadow.core.translation.providers.mock import MockTranslator

        return MockTranslator()
    else:
        raise ValueError(f"Unknown translation provider: {provider_name}")


class TranslationService:
    """Translates outbound text with a bounded cache and an English fallback.

    A failed translation never blocks delivery: the cached rendering is used
    when there is one, otherwise the English source text is sent.
    """

    def __init__(
        self,
        translator: Translator,
        policy: RetryPolicy | None = None,
        *,
        cache_size: int = 512,
    ) -> None:
        self._translator = translator
        self._policy = policy or RetryPolicy()
        self._cache: OrderedDict[tuple[str, str], str] = OrderedDict()
        self._cache_size = cache_size
        self.fallback_count = 0

    def cached(self, text: str, language: str) -> str | None:
        key = (language, text)
        hit = self._cache.get(key)
        if hit is not None:
            self._cache.move_to_end(key)
        return hit

    def _remember(self, text: str, language: str, translated: str) -> None:
        self._cache[(language, text)] = translated
        self._cache.move_to_end((language, text))
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def translate(self, text: str, language: str) -> str:
        if not text or not language or language == SOURCE_LANGUAGE:
            return text
        hit = self.cached(text, language)
        if hit is not None:
            return hit
        try:
            translated = await call_with_retry(
                "translation", lambda: self._translator.translate(text, language), self._policy
            )
        except TransientCollaboratorError as exc:
            self.fallback_count += 1
            logger.warning("Translation to %s unavailable, sending English: %s", language, exc)
            return text
        translated = translated.strip() or text
        self._remember(text, language, translated)
        return translated
