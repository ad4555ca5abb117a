"""Usage tracker.

Daily/monthly aggregation of token usage, cost, call/error counts and
latency per provider and model. Counters live in memory for cheap stats
reads and are persisted as additive deltas through ``UsageStorage`` so
they survive restarts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import aiosqlite
from pydantic import BaseModel, Field

from yeoman_gateway.storage import UsageRecord, UsageStorage

logger = logging.getLogger(__name__)


class ProviderStats(BaseModel):
    tokens_used: int = 0
    cost_usd: float = 0.0
    calls: int = 0
    errors: int = 0


class LimitCheck(BaseModel):
    allowed: bool
    tokens_used_today: int
    limit_per_day: Optional[int] = None


class UsageStats(BaseModel):
    tokens_used_today: int = 0
    tokens_cached_today: int = 0
    cost_usd_today: float = 0.0
    calls_today: int = 0
    errors_today: int = 0
    latency_avg_ms_today: float = 0.0

    tokens_used_month: int = 0
    cost_usd_month: float = 0.0
    calls_month: int = 0
    errors_month: int = 0

    api_calls_total: int = 0
    api_errors_total: int = 0
    api_latency_total_ms: float = 0.0
    # Number of calls contributing to api_latency_total_ms.
    api_call_count: int = 0
    api_latency_avg_ms: float = 0.0

    by_provider: dict[str, ProviderStats] = Field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageTracker:
    def __init__(
        self,
        storage: UsageStorage | None = None,
        *,
        retention_days: int = 90,
        max_tokens_per_day: int | None = None,
        prune_interval_hours: float = 24.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._retention_days = retention_days
        self._max_tokens_per_day = max_tokens_per_day
        self._prune_interval_s = prune_interval_hours * 3600
        self._clock = clock
        self._records: dict[tuple[str, str, str, Optional[str]], UsageRecord] = {}
        self._prune_task: asyncio.Task[None] | None = None
        self._opened = False
        self._open_lock = asyncio.Lock()

    @property
    def storage(self) -> UsageStorage | None:
        return self._storage

    def _today(self) -> date:
        return self._clock().date()

    async def start(self) -> None:
        """Load persisted counters, run the startup prune and schedule the daily one."""
        await self.prune()
        if self._prune_task is None:
            self._prune_task = asyncio.create_task(self._prune_loop())

    async def load(self) -> None:
        """Open the storage on first use and pick up its persisted counters.

        Failures are logged; counting continues in memory.
        """
        try:
            if await self._open_storage():
                await self._prune_records()
        except (aiosqlite.Error, OSError) as exc:
            logger.warning("Usage storage unavailable: %s", exc)

    async def stop(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
            self._prune_task = None

    async def accumulate(
        self,
        provider: str,
        model: str,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cached_tokens: int = 0,
        cost_usd: float = 0.0,
        latency_ms: float | None = None,
        is_error: bool = False,
        personality_id: str | None = None,
    ) -> None:
        """Add one terminal call outcome to today's record for the key."""
        await self.load()

        delta = UsageRecord(
            day=self._today().isoformat(),
            provider=provider,
            model=model,
            personality_id=personality_id,
            input_tokens=max(input_tokens, 0),
            output_tokens=max(output_tokens, 0),
            cached_tokens=max(cached_tokens, 0),
            total_tokens=max(input_tokens, 0) + max(output_tokens, 0),
            cost_usd=max(cost_usd, 0.0),
            calls=1,
            errors=1 if is_error else 0,
            latency_total_ms=max(latency_ms, 0.0) if latency_ms is not None else 0.0,
            latency_samples=1 if latency_ms is not None else 0,
        )

        record = self._records.get(delta.key)
        if record is None:
            record = UsageRecord(day=delta.day, provider=provider, model=model, personality_id=personality_id)
            self._records[delta.key] = record
        record.add(delta)

        if self._storage is not None and self._opened:
            try:
                await self._storage.increment(delta)
            except (aiosqlite.Error, RuntimeError) as exc:
                # The in-memory counters already hold the delta.
                logger.warning("Failed to persist usage for %s/%s: %s", provider, model, exc)

    def get_usage_stats(self) -> UsageStats:
        today = self._today()
        day_key = today.isoformat()
        month_key = day_key[:7]
        stats = UsageStats()
        latency_today = 0.0
        latency_samples_today = 0

        for record in self._records.values():
            provider_stats = stats.by_provider.setdefault(record.provider, ProviderStats())
            provider_stats.tokens_used += record.total_tokens
            provider_stats.cost_usd += record.cost_usd
            provider_stats.calls += record.calls
            provider_stats.errors += record.errors

            stats.api_calls_total += record.calls
            stats.api_errors_total += record.errors
            stats.api_latency_total_ms += record.latency_total_ms
            stats.api_call_count += record.latency_samples

            if record.day == day_key:
                stats.tokens_used_today += record.total_tokens
                stats.tokens_cached_today += record.cached_tokens
                stats.cost_usd_today += record.cost_usd
                stats.calls_today += record.calls
                stats.errors_today += record.errors
                latency_today += record.latency_total_ms
                latency_samples_today += record.latency_samples

            if record.day.startswith(month_key):
                stats.tokens_used_month += record.total_tokens
                stats.cost_usd_month += record.cost_usd
                stats.calls_month += record.calls
                stats.errors_month += record.errors

        if latency_samples_today:
            stats.latency_avg_ms_today = latency_today / latency_samples_today
        if stats.api_call_count:
            stats.api_latency_avg_ms = stats.api_latency_total_ms / stats.api_call_count
        return stats

    def tokens_used_today(self) -> int:
        day_key = self._today().isoformat()
        return sum(r.total_tokens for r in self._records.values() if r.day == day_key)

    def check_limit(self, max_tokens_per_day: int | None = None) -> LimitCheck:
        """Compare today's tokens with the daily budget.

        ``max_tokens_per_day`` overrides the limit given at construction;
        with neither set every call is allowed.
        """
        limit = max_tokens_per_day if max_tokens_per_day is not None else self._max_tokens_per_day
        used = self.tokens_used_today()
        if limit is None:
            return LimitCheck(allowed=True, tokens_used_today=used)
        return LimitCheck(allowed=used < limit, tokens_used_today=used, limit_per_day=limit)

    def records(self) -> list[UsageRecord]:
        return sorted(self._records.values(), key=lambda r: (r.day, r.provider, r.model, r.personality_id or ""))

    async def reset_errors(self) -> None:
        """Zero the error counters; token and cost history is kept."""
        await self._open_storage()
        for record in self._records.values():
            record.errors = 0
        if self._storage is not None:
            await self._storage.reset_errors()

    async def reset_latency(self) -> None:
        """Zero the latency accumulators; token and cost history is kept."""
        await self._open_storage()
        for record in self._records.values():
            record.latency_total_ms = 0.0
            record.latency_samples = 0
        if self._storage is not None:
            await self._storage.reset_latency()

    async def prune(self) -> int:
        """Drop records older than the retention window."""
        await self._open_storage()
        return await self._prune_records()

    async def _open_storage(self) -> bool:
        """Initialize storage and load persisted counters on first use.

        Returns True only for the call that opened it.
        """
        if self._storage is None or self._opened:
            return False
        async with self._open_lock:
            if self._opened:
                return False
            await self._storage.initialize()
            for record in await self._storage.load_since(self._cutoff()):
                existing = self._records.get(record.key)
                if existing is None:
                    self._records[record.key] = record
                else:
                    existing.add(record)
            self._opened = True
        return True

    async def _prune_records(self) -> int:
        cutoff = self._cutoff()
        cutoff_key = cutoff.isoformat()
        stale = [key for key, record in self._records.items() if record.day < cutoff_key]
        for key in stale:
            del self._records[key]
        removed = len(stale)
        if self._storage is not None:
            removed = await self._storage.prune(cutoff)
        if removed:
            logger.info("Pruned %d usage records older than %s", removed, cutoff_key)
        return removed

    def _cutoff(self) -> date:
        return self._today() - timedelta(days=self._retention_days)

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval_s)
            try:
                await self.prune()
            except (aiosqlite.Error, OSError, RuntimeError) as exc:
                logger.warning("Usage prune failed: %s", exc)
