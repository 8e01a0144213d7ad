"""Provider implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .anthropic import AnthropicProvider
from .base import BaseProvider, LanguageModel, ModelInfo, ProviderCapabilities
from .bedrock import BedrockProvider
from .openai import OpenAIProvider

if TYPE_CHECKING:
    from llmbridge.config import Config


def create_provider(config: Config) -> BaseProvider:
    """Get the provider for ``config.provider``.

    ``openai``, ``openai_compatible`` and ``azure`` all share the OpenAI
    provider; it picks the client from the kind.
    """
    if config.provider == "anthropic":
        return AnthropicProvider(config)
    if config.provider == "bedrock":
        return BedrockProvider(config)
    return OpenAIProvider(config)


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "BedrockProvider",
    "LanguageModel",
    "ModelInfo",
    "OpenAIProvider",
    "ProviderCapabilities",
    "create_provider",
]
