"""Ollama local provider implementation.

Talks to Ollama's REST API at ``/api/chat``; streams arrive as
newline-delimited JSON records, the last of which has ``done: true``.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from yeoman_gateway.errors import ProviderUnavailableError
from yeoman_gateway.providers.base import BaseProvider
from yeoman_gateway.streaming import StreamAccumulator, ndjson_records
from yeoman_gateway.types import (
    ChatRequest,
    ChatResponse,
    ContentDelta,
    Message,
    ModelInfo,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallDelta,
)

_CHAT_PATH = "/api/chat"


class OllamaProvider(BaseProvider):
    """Async wrapper for a local Ollama server."""

    name = "ollama"
    default_base_url = "http://localhost:11434"
    models_path = "/api/tags"
    requires_api_key = False

    async def chat(self, req: ChatRequest) -> ChatResponse:
        data = await self._post_json(_CHAT_PATH, self._build_payload(req, stream=False))
        message = data.get("message") or {}

        tool_calls = [
            ToolCall(
                id=_call_id(),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=self._parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]

        stop_reason: StopReason = "tool_use" if tool_calls else self._map_done_reason(data.get("done_reason"))
        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls or None,
            stop_reason=stop_reason,
            usage=self._map_usage(data),
            provider=self.name,
            model=self.model,
        )

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(req, stream=True)

        async def _gen() -> AsyncIterator[StreamChunk]:
            acc = StreamAccumulator()
            tool_index = 0
            async with aclosing(self._stream_lines(_CHAT_PATH, payload)) as lines:
                async for record in ndjson_records(lines):
                    if record.get("error"):
                        raise ProviderUnavailableError(self.name, str(record["error"]))

                    message = record.get("message") or {}
                    if message.get("content"):
                        yield ContentDelta(content=message["content"])

                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function") or {}
                        acc.saw_tool_call = True
                        yield ToolCallDelta(
                            index=tool_index,
                            id=_call_id(),
                            name=function.get("name"),
                            arguments_delta=json.dumps(function.get("arguments") or {}),
                        )
                        tool_index += 1

                    if record.get("done"):
                        usage = self._map_usage(record)
                        acc.usage(usage.input_tokens, usage.output_tokens)
                        acc.stop_reason = self._map_done_reason(record.get("done_reason"))
                        break

            yield acc.finish()

        return _gen()

    @classmethod
    def _parse_models(cls, data: Any) -> list[ModelInfo]:
        return [ModelInfo(id=m["name"], size=m.get("size")) for m in data.get("models", [])]

    def _build_payload(self, req: ChatRequest, *, stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": self.resolve_temperature(req),
            "num_predict": self.resolve_max_tokens(req),
        }
        if req.stop_sequences:
            options["stop"] = list(req.stop_sequences)

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self._serialize_messages(req.messages),
            "stream": stream,
            "options": options,
        }
        if req.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description or "", "parameters": t.parameters},
                }
                for t in req.tools
            ]
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        names = self._tool_names(messages)
        out: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool" and m.tool_result is not None:
                entry: dict[str, Any] = {"role": "tool", "content": m.tool_result.content}
                if m.tool_result.tool_call_id in names:
                    entry["tool_name"] = names[m.tool_result.tool_call_id]
                out.append(entry)
            elif m.role == "assistant" and m.tool_calls:
                out.append(
                    {
                        "role": "assistant",
                        "content": m.content,
                        "tool_calls": [
                            {"function": {"name": tc.name, "arguments": tc.arguments}} for tc in m.tool_calls
                        ],
                    }
                )
            else:
                out.append({"role": m.role, "content": m.content})
        return out

    @staticmethod
    def _map_done_reason(reason: str | None) -> StopReason:
        return "max_tokens" if reason == "length" else "end_turn"

    @staticmethod
    def _map_usage(data: dict[str, Any]) -> TokenUsage:
        return TokenUsage(
            input_tokens=data.get("prompt_eval_count") or 0,
            output_tokens=data.get("eval_count") or 0,
        )


def _call_id() -> str:
    return f"ollama-{uuid.uuid4().hex[:12]}"
