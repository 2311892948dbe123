"""Translation provider implementations."""

from healthshadow.core.translation.providers.anthropic import AnthropicTranslator
from healthshadow.core.translation.providers.mock import MockTranslator
from healthshadow.core.translation.providers.openai import OpenAITranslator

__all__ = ["AnthropicTranslator", "MockTranslator", "OpenAITranslator"]
