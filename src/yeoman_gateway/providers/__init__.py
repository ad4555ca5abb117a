"""Provider adapters for yeoman_gateway."""

from __future__ import annotations

import httpx

from yeoman_gateway.config import ModelConfig
from yeoman_gateway.errors import UnsupportedProviderError

from .anthropic import AnthropicProvider
from .base import BaseProvider
from .compatible import DeepSeekProvider, LMStudioProvider, LocalAIProvider, MistralProvider, OpenCodeProvider
from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider

PROVIDERS: dict[str, type[BaseProvider]] = {
    cls.name: cls
    for cls in (
        AnthropicProvider,
        OpenAIProvider,
        GeminiProvider,
        OllamaProvider,
        OpenCodeProvider,
        LMStudioProvider,
        LocalAIProvider,
        DeepSeekProvider,
        MistralProvider,
    )
}


def create_provider(
    config: ModelConfig,
    *,
    api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseProvider:
    """Build the adapter for ``config.provider``. No network I/O happens here."""
    try:
        cls = PROVIDERS[config.provider]
    except KeyError as exc:
        raise UnsupportedProviderError(config.provider) from exc
    return cls(config, api_key=api_key if cls.requires_api_key else None, transport=transport)


__all__ = [
    "PROVIDERS",
    "create_provider",
    "BaseProvider",
    "AnthropicProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "OllamaProvider",
    "OpenCodeProvider",
    "LMStudioProvider",
    "LocalAIProvider",
    "DeepSeekProvider",
    "MistralProvider",
]
