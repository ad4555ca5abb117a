import unittest

from yeoman_gateway.config import FallbackEntry, ModelConfig, RetryConfig
from yeoman_gateway.errors import ProviderUnavailableError, RateLimitedError
from yeoman_gateway.fallback import FallbackPolicy
from yeoman_gateway.retry import backoff_seconds


class FallbackPolicyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.primary = ModelConfig(provider="anthropic", model="claude-sonnet-4-20250514")

    def test_hops_in_order(self) -> None:
        policy = FallbackPolicy(
            [FallbackEntry(provider="openai", model="gpt-4o"), {"provider": "ollama", "model": "llama3"}]
        )
        hops = policy.hops(self.primary)
        self.assertEqual(
            [h.key for h in hops],
            [("anthropic", "claude-sonnet-4-20250514"), ("openai", "gpt-4o"), ("ollama", "llama3")],
        )
        self.assertEqual([h.index for h in hops], [0, 1, 2])

    def test_empty_policy(self) -> None:
        policy = FallbackPolicy()
        self.assertFalse(policy)
        self.assertEqual(len(policy.hops(self.primary)), 1)

    def test_at_most_five_entries(self) -> None:
        with self.assertRaises(ValueError):
            FallbackPolicy([{"provider": "ollama", "model": f"m{i}"} for i in range(6)])

    def test_attempt_ceiling(self) -> None:
        policy = FallbackPolicy([{"provider": "ollama", "model": "a"}, {"provider": "ollama", "model": "b"}])
        self.assertEqual(policy.attempt_ceiling(RetryConfig(max_retries=1)), 6)
        self.assertEqual(policy.attempt_ceiling(RetryConfig(max_retries=3, max_total_attempts=5)), 5)


class BackoffTests(unittest.TestCase):
    def test_exponential_and_capped(self) -> None:
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=5000)
        delays = [backoff_seconds(config, attempt) for attempt in range(4)]
        self.assertEqual(delays, [1.0, 2.0, 4.0, 5.0])

    def test_retry_after_honored(self) -> None:
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=30_000)
        hinted = RateLimitedError("openai", retry_after=7.0)
        self.assertEqual(backoff_seconds(config, 0, hinted), 7.0)
        unhinted = RateLimitedError("openai")
        self.assertEqual(backoff_seconds(config, 1, unhinted), 2.0)
        self.assertEqual(backoff_seconds(config, 0, ProviderUnavailableError("openai", "down")), 1.0)

    def test_retry_after_capped(self) -> None:
        config = RetryConfig(max_delay_ms=2000)
        self.assertEqual(backoff_seconds(config, 0, RateLimitedError("openai", retry_after=60)), 2.0)


if __name__ == "__main__":
    unittest.main()
