"""SQLite persistence for usage accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS usage_records (
    day              TEXT    NOT NULL,
    provider         TEXT    NOT NULL,
    model            TEXT    NOT NULL,
    personality_id   TEXT    NOT NULL DEFAULT '',
    input_tokens     INTEGER NOT NULL DEFAULT 0,
    output_tokens    INTEGER NOT NULL DEFAULT 0,
    cached_tokens    INTEGER NOT NULL DEFAULT 0,
    total_tokens     INTEGER NOT NULL DEFAULT 0,
    cost_usd         REAL    NOT NULL DEFAULT 0,
    calls            INTEGER NOT NULL DEFAULT 0,
    errors           INTEGER NOT NULL DEFAULT 0,
    latency_total_ms REAL    NOT NULL DEFAULT 0,
    latency_samples  INTEGER NOT NULL DEFAULT 0,
    updated_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    PRIMARY KEY (day, provider, model, personality_id)
);

CREATE INDEX IF NOT EXISTS idx_usage_day ON usage_records(day);
"""

_INCREMENT_SQL = """
INSERT INTO usage_records
    (day, provider, model, personality_id, input_tokens, output_tokens, cached_tokens,
     total_tokens, cost_usd, calls, errors, latency_total_ms, latency_samples)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (day, provider, model, personality_id) DO UPDATE SET
    input_tokens     = input_tokens     + excluded.input_tokens,
    output_tokens    = output_tokens    + excluded.output_tokens,
    cached_tokens    = cached_tokens    + excluded.cached_tokens,
    total_tokens     = total_tokens     + excluded.total_tokens,
    cost_usd         = cost_usd         + excluded.cost_usd,
    calls            = calls            + excluded.calls,
    errors           = errors           + excluded.errors,
    latency_total_ms = latency_total_ms + excluded.latency_total_ms,
    latency_samples  = latency_samples  + excluded.latency_samples,
    updated_at       = strftime('%Y-%m-%dT%H:%M:%f','now')
"""


@dataclass
class UsageRecord:
    """Accumulated counters for one (day, provider, model, personality) key."""

    day: str
    provider: str
    model: str
    personality_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    calls: int = 0
    errors: int = 0
    latency_total_ms: float = 0.0
    latency_samples: int = 0

    @property
    def key(self) -> tuple[str, str, str, Optional[str]]:
        return (self.day, self.provider, self.model, self.personality_id)

    def add(self, delta: UsageRecord) -> None:
        self.input_tokens += delta.input_tokens
        self.output_tokens += delta.output_tokens
        self.cached_tokens += delta.cached_tokens
        self.total_tokens += delta.total_tokens
        self.cost_usd += delta.cost_usd
        self.calls += delta.calls
        self.errors += delta.errors
        self.latency_total_ms += delta.latency_total_ms
        self.latency_samples += delta.latency_samples


@dataclass
class HistoryRow:
    date: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: int
    total_tokens: int
    cost_usd: float
    calls: int
    errors: int


class UsageStorage:
    """Async SQLite store of per-day usage counters.

    Writes are additive upserts, so concurrent writers never need to read
    before they write.
    """

    def __init__(self, db_path: str = "./data/usage.db"):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and create the schema."""
        if self._conn is not None:
            return
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("Usage storage initialized at %s", self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Usage storage not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def increment(self, delta: UsageRecord) -> None:
        await self.conn.execute(
            _INCREMENT_SQL,
            (
                delta.day,
                delta.provider,
                delta.model,
                delta.personality_id or "",
                delta.input_tokens,
                delta.output_tokens,
                delta.cached_tokens,
                delta.total_tokens,
                delta.cost_usd,
                delta.calls,
                delta.errors,
                delta.latency_total_ms,
                delta.latency_samples,
            ),
        )
        await self.conn.commit()

    async def load_since(self, since: date) -> list[UsageRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM usage_records WHERE day >= ? ORDER BY day ASC",
            (since.isoformat(),),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def reset_errors(self) -> None:
        await self.conn.execute("UPDATE usage_records SET errors = 0")
        await self.conn.commit()

    async def reset_latency(self) -> None:
        await self.conn.execute("UPDATE usage_records SET latency_total_ms = 0, latency_samples = 0")
        await self.conn.commit()

    async def prune(self, before: date) -> int:
        """Delete every record dated before ``before``; returns the number removed."""
        cursor = await self.conn.execute("DELETE FROM usage_records WHERE day < ?", (before.isoformat(),))
        await self.conn.commit()
        return cursor.rowcount or 0

    async def query_history(
        self,
        *,
        since: Optional[date] = None,
        until: Optional[date] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        personality_id: Optional[str] = None,
    ) -> list[HistoryRow]:
        """Per-day totals, filtered by date range, provider, model substring and personality."""
        clauses: list[str] = []
        params: list[object] = []
        if since is not None:
            clauses.append("day >= ?")
            params.append(since.isoformat())
        if until is not None:
            clauses.append("day <= ?")
            params.append(until.isoformat())
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if model:
            clauses.append("model LIKE ?")
            params.append(f"%{model}%")
        if personality_id:
            clauses.append("personality_id = ?")
            params.append(personality_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await self.conn.execute(
            f"""SELECT day, provider, model,
                       SUM(input_tokens) AS input_tokens, SUM(output_tokens) AS output_tokens,
                       SUM(cached_tokens) AS cached_tokens, SUM(total_tokens) AS total_tokens,
                       SUM(cost_usd) AS cost_usd, SUM(calls) AS calls, SUM(errors) AS errors
                FROM usage_records {where}
                GROUP BY day, provider, model
                ORDER BY day ASC, provider ASC, model ASC""",
            params,
        )
        rows = await cursor.fetchall()
        return [
            HistoryRow(
                date=row["day"],
                provider=row["provider"],
                model=row["model"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cached_tokens=row["cached_tokens"],
                total_tokens=row["total_tokens"],
                cost_usd=row["cost_usd"],
                calls=row["calls"],
                errors=row["errors"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> UsageRecord:
        return UsageRecord(
            day=row["day"],
            provider=row["provider"],
            model=row["model"],
            personality_id=row["personality_id"] or None,
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cached_tokens=row["cached_tokens"],
            total_tokens=row["total_tokens"],
            cost_usd=row["cost_usd"],
            calls=row["calls"],
            errors=row["errors"],
            latency_total_ms=row["latency_total_ms"],
            latency_samples=row["latency_samples"],
        )
