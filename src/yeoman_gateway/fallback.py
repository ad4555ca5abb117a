"""Ordered fallback chain evaluation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from yeoman_gateway.config import MAX_FALLBACKS, FallbackEntry, ModelConfig, RetryConfig


@dataclass(frozen=True)
class Hop:
    """One (provider, model) stop of a dispatch, with the config used to reach it."""

    index: int
    config: ModelConfig

    @property
    def key(self) -> tuple[str, str]:
        return (self.config.provider, self.config.model)


class FallbackPolicy:
    """A personality's bounded list of alternate models, walked strictly in order."""

    def __init__(self, entries: Iterable[FallbackEntry | dict] = ()) -> None:
        parsed = [e if isinstance(e, FallbackEntry) else FallbackEntry(**e) for e in entries]
        if len(parsed) > MAX_FALLBACKS:
            raise ValueError(f"a fallback chain holds at most {MAX_FALLBACKS} entries, got {len(parsed)}")
        self._entries: tuple[FallbackEntry, ...] = tuple(parsed)

    @property
    def entries(self) -> tuple[FallbackEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def hops(self, primary: ModelConfig) -> list[Hop]:
        """The primary followed by every fallback entry."""
        hops = [Hop(0, primary)]
        for i, entry in enumerate(self._entries, start=1):
            hops.append(Hop(i, primary.for_hop(entry)))
        return hops

    def attempt_ceiling(self, retry: RetryConfig) -> int:
        """Total adapter invocations allowed for one logical call across the whole chain."""
        per_hop = retry.max_retries + 1
        return min((len(self._entries) + 1) * per_hop, retry.max_total_attempts)
