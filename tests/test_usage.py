import asyncio
import os
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone

from yeoman_gateway.storage import UsageRecord, UsageStorage
from yeoman_gateway.usage import UsageStats, UsageTracker

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class UsageTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "usage.db")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_accumulates_and_survives_restart(self) -> None:
        before, after = asyncio.run(_accumulate_then_reload(self.db_path))

        for stats in (before, after):
            self.assertEqual(stats.tokens_used_today, 40)
            self.assertEqual(stats.calls_today, 2)
            self.assertEqual(stats.errors_today, 0)
            self.assertEqual(stats.tokens_used_month, 40)
            self.assertAlmostEqual(stats.latency_avg_ms_today, 200.0)
            self.assertEqual(stats.by_provider["ollama"].calls, 2)

    def test_keys_split_by_model_and_personality(self) -> None:
        records = asyncio.run(_accumulate_keys())
        self.assertEqual(
            [(r.model, r.personality_id, r.calls) for r in records],
            [("llama3", None, 1), ("llama3", "friday", 2), ("mistral", None, 1)],
        )

    def test_reset_errors_and_latency_keep_tokens(self) -> None:
        stats, reloaded = asyncio.run(_reset_counters(self.db_path))
        self.assertEqual(stats.errors_today, 0)
        self.assertEqual(stats.api_latency_total_ms, 0.0)
        self.assertEqual(stats.api_call_count, 0)
        self.assertEqual(stats.tokens_used_today, 30)
        self.assertEqual(stats.calls_today, 2)
        self.assertEqual(reloaded.errors_today, 0)
        self.assertEqual(reloaded.tokens_used_today, 30)

    def test_start_prunes_old_records(self) -> None:
        remaining, stats = asyncio.run(_prune_on_start(self.db_path))
        self.assertEqual([row.date for row in remaining], [NOW.date().isoformat()])
        self.assertEqual(stats.calls_today, 1)
        self.assertEqual(stats.api_calls_total, 1)

    def test_query_history_filters(self) -> None:
        rows = asyncio.run(_history(self.db_path))
        self.assertEqual([(r.provider, r.model, r.total_tokens) for r in rows], [("ollama", "llama3:8b", 30)])

    def test_persistence_failure_keeps_memory(self) -> None:
        blocker = os.path.join(self._tmp.name, "not-a-dir")
        with open(blocker, "w", encoding="utf-8"):
            pass
        storage = UsageStorage(os.path.join(blocker, "usage.db"))
        tracker = UsageTracker(storage, clock=lambda: NOW)
        with self.assertLogs("yeoman_gateway.usage", level="WARNING"):
            asyncio.run(tracker.accumulate("ollama", "llama3", input_tokens=1, output_tokens=2))
        self.assertEqual(tracker.get_usage_stats().tokens_used_today, 3)

    def test_storage_opens_on_first_accumulate(self) -> None:
        persisted, stats = asyncio.run(_accumulate_without_start(self.db_path))
        self.assertEqual([(r.date, r.total_tokens, r.calls) for r in persisted], [(NOW.date().isoformat(), 33, 2)])
        self.assertEqual(stats.tokens_used_today, 33)
        self.assertEqual(stats.api_calls_total, 2)

    def test_check_limit(self) -> None:
        tracker = UsageTracker(max_tokens_per_day=50, clock=lambda: NOW)
        asyncio.run(tracker.accumulate("ollama", "llama3", input_tokens=20, output_tokens=20))
        self.assertEqual(tracker.check_limit().model_dump(), {"allowed": True, "tokens_used_today": 40, "limit_per_day": 50})
        self.assertFalse(tracker.check_limit(40).allowed)
        self.assertIsNone(UsageTracker(clock=lambda: NOW).check_limit().limit_per_day)

    def test_memory_only_tracker(self) -> None:
        tracker = UsageTracker(clock=lambda: NOW)
        asyncio.run(tracker.accumulate("openai", "gpt-4o", input_tokens=5, cost_usd=0.25, is_error=True))
        stats = tracker.get_usage_stats()
        self.assertEqual(stats.errors_today, 1)
        self.assertAlmostEqual(stats.cost_usd_today, 0.25)
        self.assertEqual(stats.api_call_count, 0)


async def _accumulate_then_reload(db_path: str) -> tuple[UsageStats, UsageStats]:
    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.start()
    await tracker.accumulate("ollama", "llama3", input_tokens=10, output_tokens=20, latency_ms=100)
    await tracker.accumulate("ollama", "llama3", input_tokens=5, output_tokens=5, latency_ms=300)
    before = tracker.get_usage_stats()
    await tracker.stop()
    await storage.close()

    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.start()
    after = tracker.get_usage_stats()
    await tracker.stop()
    await storage.close()
    return before, after


async def _accumulate_keys() -> list[UsageRecord]:
    tracker = UsageTracker(clock=lambda: NOW)
    await tracker.accumulate("ollama", "llama3", input_tokens=1)
    await tracker.accumulate("ollama", "llama3", input_tokens=1, personality_id="friday")
    await tracker.accumulate("ollama", "llama3", input_tokens=1, personality_id="friday")
    await tracker.accumulate("ollama", "mistral", input_tokens=1)
    return tracker.records()


async def _reset_counters(db_path: str) -> tuple[UsageStats, UsageStats]:
    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.start()
    await tracker.accumulate("ollama", "llama3", input_tokens=10, output_tokens=10, latency_ms=50)
    await tracker.accumulate("ollama", "llama3", input_tokens=10, latency_ms=70, is_error=True)
    await tracker.reset_errors()
    await tracker.reset_latency()
    stats = tracker.get_usage_stats()
    await tracker.stop()
    await storage.close()

    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.start()
    reloaded = tracker.get_usage_stats()
    await tracker.stop()
    await storage.close()
    return stats, reloaded


async def _prune_on_start(db_path: str):
    storage = UsageStorage(db_path)
    await storage.initialize()
    old_day = (NOW.date() - timedelta(days=120)).isoformat()
    await storage.increment(UsageRecord(day=old_day, provider="ollama", model="llama3", total_tokens=9, calls=1))
    await storage.increment(
        UsageRecord(day=NOW.date().isoformat(), provider="ollama", model="llama3", total_tokens=3, calls=1)
    )

    tracker = UsageTracker(storage, retention_days=90, clock=lambda: NOW)
    await tracker.start()
    remaining = await storage.query_history()
    stats = tracker.get_usage_stats()
    await tracker.stop()
    await storage.close()
    return remaining, stats


async def _accumulate_without_start(db_path: str):
    storage = UsageStorage(db_path)
    await storage.initialize()
    old_day = (NOW.date() - timedelta(days=120)).isoformat()
    await storage.increment(UsageRecord(day=old_day, provider="ollama", model="llama3", total_tokens=9, calls=1))
    await storage.increment(
        UsageRecord(day=NOW.date().isoformat(), provider="ollama", model="llama3", total_tokens=3, calls=1)
    )
    await storage.close()

    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.accumulate("ollama", "llama3", input_tokens=10, output_tokens=20)
    stats = tracker.get_usage_stats()
    persisted = await storage.query_history()
    await storage.close()
    return persisted, stats


async def _history(db_path: str):
    storage = UsageStorage(db_path)
    tracker = UsageTracker(storage, clock=lambda: NOW)
    await tracker.start()
    await tracker.accumulate("ollama", "llama3:8b", input_tokens=10, output_tokens=20)
    await tracker.accumulate("openai", "gpt-4o", input_tokens=1, output_tokens=1)
    rows = await storage.query_history(
        since=date(2026, 3, 1),
        until=date(2026, 3, 31),
        provider="ollama",
        model="llama3",
    )
    await tracker.stop()
    await storage.close()
    return rows


if __name__ == "__main__":
    unittest.main()
