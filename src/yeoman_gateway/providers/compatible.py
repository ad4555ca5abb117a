"""Backends that speak the OpenAI Chat Completions dialect."""

from __future__ import annotations

from typing import Any

from yeoman_gateway.providers.openai import OpenAIProvider
from yeoman_gateway.types import TokenUsage


class DeepSeekProvider(OpenAIProvider):
    name = "deepseek"
    default_base_url = "https://api.deepseek.com"

    def _map_usage(self, usage: dict[str, Any]) -> TokenUsage:
        mapped = super()._map_usage(usage)
        # DeepSeek reports cache hits in its own field.
        hits = usage.get("prompt_cache_hit_tokens")
        if hits is not None:
            mapped = mapped.model_copy(update={"cached_input_tokens": hits})
        return mapped


class MistralProvider(OpenAIProvider):
    name = "mistral"
    default_base_url = "https://api.mistral.ai/v1"
    # Mistral always sends usage on the last chunk and rejects stream_options.
    stream_usage_option = False


class OpenCodeProvider(OpenAIProvider):
    name = "opencode"
    default_base_url = "https://opencode.ai/zen/v1"


class LMStudioProvider(OpenAIProvider):
    """Local LM Studio server; no API key required."""

    name = "lmstudio"
    default_base_url = "http://localhost:1234/v1"
    requires_api_key = False


class LocalAIProvider(OpenAIProvider):
    """Local LocalAI server; no API key required."""

    name = "localai"
    default_base_url = "http://localhost:8080/v1"
    requires_api_key = False
