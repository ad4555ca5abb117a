"""Gateway configuration models and YAML loader."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_PROVIDERS: tuple[str, ...] = (
    "anthropic",
    "openai",
    "gemini",
    "ollama",
    "opencode",
    "lmstudio",
    "localai",
    "deepseek",
    "mistral",
)

# Local backends need no credentials.
KEYLESS_PROVIDERS: frozenset[str] = frozenset({"ollama", "lmstudio", "localai"})

PROVIDER_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GOOGLE_GENERATIVE_AI_API_KEY",
    "opencode": "OPENCODE_API_KEY",
    "ollama": "OLLAMA_HOST",
    "lmstudio": "LMSTUDIO_BASE_URL",
    "localai": "LOCALAI_BASE_URL",
    "deepseek": "DEEPSEEK_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}

MAX_FALLBACKS = 5


def _check_provider(value: str) -> str:
    if value not in SUPPORTED_PROVIDERS:
        raise ValueError(f"unknown provider '{value}'")
    return value


class ModelConfig(BaseModel):
    """Active model settings. Frozen: a switch replaces the whole object."""

    model_config = ConfigDict(frozen=True)

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key_env: str = ""
    base_url: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.7
    max_requests_per_minute: int = 60
    # Daily token budget across every call; None means unlimited.
    max_tokens_per_day: Optional[int] = Field(default=None, gt=0)
    request_timeout_ms: int = 120_000
    max_retries: int = 3
    retry_delay_ms: int = 1000

    @field_validator("provider")
    @classmethod
    def check_provider(cls, value: str) -> str:
        return _check_provider(value)

    @property
    def key_env(self) -> str:
        return self.api_key_env or PROVIDER_KEY_ENV.get(self.provider, "")

    def for_hop(self, entry: FallbackEntry) -> ModelConfig:
        """Derive the config used for one fallback hop."""
        return self.model_copy(
            update={
                "provider": entry.provider,
                "model": entry.model,
                "api_key_env": entry.api_key_env or PROVIDER_KEY_ENV.get(entry.provider, ""),
                "base_url": entry.base_url,
            }
        )


class FallbackEntry(BaseModel):
    """One alternate (provider, model) pair of a personality's fallback chain."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def check_provider(cls, value: str) -> str:
        return _check_provider(value)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    # Upper bound on adapter invocations for one logical call, across all hops.
    max_total_attempts: int = Field(default=12, ge=1)

    @classmethod
    def from_model(cls, model: ModelConfig, **overrides: Any) -> RetryConfig:
        values: dict[str, Any] = {"max_retries": model.max_retries, "base_delay_ms": model.retry_delay_ms}
        values.update(overrides)
        return cls(**values)


class UsageConfig(BaseModel):
    db_path: str = "./data/usage.db"
    retention_days: int = Field(default=90, ge=1)
    prune_interval_hours: float = Field(default=24.0, gt=0)


class AIClientConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    retry_config: Optional[RetryConfig] = None

    def resolved_retry(self) -> RetryConfig:
        return self.retry_config or RetryConfig.from_model(self.model)


class GatewayConfig(BaseModel):
    log_level: str = "INFO"
    model: ModelConfig = Field(default_factory=ModelConfig)
    retry: Optional[RetryConfig] = None
    usage: UsageConfig = Field(default_factory=UsageConfig)
    fallbacks: list[FallbackEntry] = Field(default_factory=list, max_length=MAX_FALLBACKS)

    def client_config(self) -> AIClientConfig:
        return AIClientConfig(model=self.model, retry_config=self.retry)


def load_config(config_path: str | Path = "gateway.yaml") -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file."""
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    return GatewayConfig(**data)
