"""Stream framing parsers shared by the streaming adapters.

Backends frame their streams either as newline-delimited JSON records
(Ollama) or as server-sent events (everything else). Both parsers consume
the text lines of an ``httpx`` response and yield decoded records; the
adapters turn records into canonical chunks and use ``StreamAccumulator``
to produce the single terminal ``done`` chunk.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from yeoman_gateway.types import Done, StreamStopReason, TokenUsage

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: str


async def ndjson_records(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield one decoded object per non-empty line."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream record: %s", line)
            continue
        if isinstance(record, dict):
            yield record


async def sse_events(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """Yield dispatched server-sent events, stopping at a ``[DONE]`` sentinel."""
    event = ""
    data: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                payload = "\n".join(data)
                if payload.strip() == SSE_DONE:
                    return
                yield SSEEvent(event=event or "message", data=payload)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)

    # Transport closed without a trailing blank line.
    if data:
        payload = "\n".join(data)
        if payload.strip() != SSE_DONE:
            yield SSEEvent(event=event or "message", data=payload)


async def sse_json(lines: AsyncIterable[str]) -> AsyncIterator[tuple[str, dict[str, Any]]]:
    """Yield ``(event_name, decoded_data)`` for every JSON server-sent event."""
    async for sse in sse_events(lines):
        try:
            record = json.loads(sse.data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON streaming chunk: %s", sse.data)
            continue
        if isinstance(record, dict):
            yield sse.event, record


class StreamAccumulator:
    """Collects the counters and finish signal a stream reports along the way."""

    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cached_input_tokens = 0
        self.stop_reason: StreamStopReason = "end_turn"
        self.saw_tool_call = False
        self._finished = False

    def usage(
        self,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cached_input_tokens: int | None = None,
    ) -> None:
        if input_tokens is not None:
            self.input_tokens = input_tokens
        if output_tokens is not None:
            self.output_tokens = output_tokens
        if cached_input_tokens is not None:
            self.cached_input_tokens = cached_input_tokens

    def finish(self) -> Done:
        if self._finished:
            raise RuntimeError("stream already finished")
        self._finished = True
        stop_reason = "tool_use" if self.saw_tool_call else self.stop_reason
        return Done(
            usage=TokenUsage(
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                cached_input_tokens=self.cached_input_tokens,
            ),
            stop_reason=stop_reason,
        )
