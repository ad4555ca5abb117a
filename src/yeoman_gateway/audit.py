"""Fire-and-forget bridge to the audit chain collaborator."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, entry: dict[str, Any]) -> Any: ...


class AuditRecorder:
    """Schedules audit records without ever blocking or failing the caller.

    The sink may be synchronous or return an awaitable. Awaitables are run as
    background tasks; failures of either kind are logged and dropped.
    """

    def __init__(self, sink: AuditSink | None, log: logging.Logger | None = None) -> None:
        self._sink = sink
        self._logger = log or logger
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def record(self, event: str, metadata: dict[str, Any], *, level: str | None = None, message: str = "") -> None:
        if self._sink is None:
            return
        entry = {
            "event": event,
            "level": level or ("warn" if "error" in event or "exhausted" in event else "info"),
            "message": message or f"AI {event}",
            "metadata": metadata,
        }
        result: Any = None
        try:
            result = self._sink.record(entry)
            if not inspect.isawaitable(result):
                return
            # Awaitable sinks need a running loop to be scheduled on.
            task = asyncio.ensure_future(result, loop=asyncio.get_running_loop())
        except Exception:
            if inspect.iscoroutine(result):
                result.close()
            self._logger.warning("Failed to record AI audit event %s", event, exc_info=True)
            return

        self._pending.add(task)
        task.add_done_callback(lambda t: self._finished(t, event))

    async def drain(self) -> None:
        """Wait for audit records still in flight."""
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)

    def _finished(self, task: asyncio.Task[Any], event: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("Failed to record AI audit event %s: %s", event, exc)
