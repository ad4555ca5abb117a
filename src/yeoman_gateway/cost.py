"""Pricing lookup and cost calculation.

Prices are USD per 1M tokens. Pairs missing from the table (self-hosted
models, brand-new releases) cost nothing rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass

from yeoman_gateway.config import KEYLESS_PROVIDERS


@dataclass(frozen=True)
class ModelPricing:
    input_per_1m: float
    output_per_1m: float
    cached_input_per_1m: float | None = None


# Static pricing table; update as providers change pricing.
PRICING: dict[str, dict[str, ModelPricing]] = {
    "anthropic": {
        "claude-opus-4-20250514": ModelPricing(15, 75, 1.5),
        "claude-sonnet-4-20250514": ModelPricing(3, 15, 0.3),
        "claude-haiku-3-5-20241022": ModelPricing(0.8, 4, 0.08),
    },
    "openai": {
        "gpt-4o": ModelPricing(2.5, 10, 1.25),
        "gpt-4o-mini": ModelPricing(0.15, 0.6, 0.075),
        "gpt-4-turbo": ModelPricing(10, 30),
        "o1": ModelPricing(15, 60, 7.5),
        "o1-mini": ModelPricing(3, 12),
        "o3-mini": ModelPricing(1.1, 4.4, 0.55),
    },
    "gemini": {
        "gemini-2.0-flash": ModelPricing(0.1, 0.4, 0.025),
        "gemini-1.5-pro": ModelPricing(1.25, 5),
    },
    "opencode": {
        "gpt-5.2": ModelPricing(1.75, 14),
        "claude-sonnet-4-5": ModelPricing(3, 15),
        "claude-haiku-4-5": ModelPricing(1, 5),
        "gemini-3-flash": ModelPricing(0.5, 3),
        "qwen3-coder": ModelPricing(0.45, 1.5),
        "big-pickle": ModelPricing(0, 0),
    },
    "deepseek": {
        "deepseek-chat": ModelPricing(0.27, 1.1, 0.07),
        "deepseek-coder": ModelPricing(0.14, 0.28),
        "deepseek-reasoner": ModelPricing(0.55, 2.19, 0.14),
    },
    "mistral": {
        "mistral-large-latest": ModelPricing(2, 6),
        "mistral-small-latest": ModelPricing(0.2, 0.6),
        "codestral-latest": ModelPricing(0.3, 0.9),
    },
}


@dataclass(frozen=True)
class AvailableModel:
    provider: str
    model: str
    input_per_1m: float
    output_per_1m: float
    cached_input_per_1m: float | None = None


class CostCalculator:
    """Stateless pricing-table lookup."""

    def __init__(self, pricing: dict[str, dict[str, ModelPricing]] | None = None) -> None:
        self._pricing = pricing if pricing is not None else PRICING

    def pricing(self, provider: str, model: str) -> ModelPricing | None:
        return self._pricing.get(provider, {}).get(model)

    def cost(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cached_tokens: int = 0,
    ) -> float:
        """Return the full-precision USD cost of one call."""
        price = self.pricing(provider, model)
        if price is None:
            return 0.0

        cached = min(max(cached_tokens, 0), max(input_tokens, 0))
        uncached = max(input_tokens, 0) - cached
        cached_rate = price.cached_input_per_1m if price.cached_input_per_1m is not None else price.input_per_1m
        total = (
            uncached * price.input_per_1m
            + cached * cached_rate
            + max(output_tokens, 0) * price.output_per_1m
        ) / 1_000_000
        return max(total, 0.0)

    def available_models(self) -> dict[str, list[AvailableModel]]:
        """All priced models grouped by provider, with placeholders for local backends."""
        grouped: dict[str, list[AvailableModel]] = {}
        for provider, models in self._pricing.items():
            grouped[provider] = [
                AvailableModel(
                    provider=provider,
                    model=model,
                    input_per_1m=price.input_per_1m,
                    output_per_1m=price.output_per_1m,
                    cached_input_per_1m=price.cached_input_per_1m,
                )
                for model, price in models.items()
            ]
        for provider in sorted(KEYLESS_PROVIDERS):
            placeholder = AvailableModel(provider=provider, model="local", input_per_1m=0, output_per_1m=0)
            grouped.setdefault(provider, [placeholder])
        return grouped

    @staticmethod
    def format_usd(cost_usd: float, digits: int = 4) -> str:
        return f"${cost_usd:.{digits}f}"
