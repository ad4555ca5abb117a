"""Anthropic provider implementation."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from yeoman_gateway.errors import ProviderError, classify_status
from yeoman_gateway.providers.base import BaseProvider
from yeoman_gateway.streaming import StreamAccumulator, sse_json
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
    ToolSpec,
)

_MESSAGES_PATH = "/v1/messages"
_API_VERSION = "2023-06-01"

_STOP_REASONS: dict[str, StopReason] = {
    "end_turn": "end_turn",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
    "stop_sequence": "stop_sequence",
}

# Error types carried by in-stream "error" events.
_STREAM_ERROR_STATUS = {
    "overloaded_error": 529,
    "api_error": 500,
    "rate_limit_error": 429,
    "authentication_error": 401,
    "permission_error": 403,
    "not_found_error": 404,
    "invalid_request_error": 400,
}


class AnthropicProvider(BaseProvider):
    """Async wrapper for the Anthropic Messages API."""

    name = "anthropic"
    default_base_url = "https://api.anthropic.com"
    models_path = "/v1/models"

    async def chat(self, req: ChatRequest) -> ChatResponse:
        data = await self._post_json(_MESSAGES_PATH, self._build_payload(req, stream=False))

        text: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {})
                )

        stop_reason: StopReason = (
            "tool_use" if tool_calls else _STOP_REASONS.get(data.get("stop_reason") or "", "end_turn")
        )
        return ChatResponse(
            id=data.get("id"),
            content="".join(text),
            tool_calls=tool_calls or None,
            stop_reason=stop_reason,
            usage=self._map_usage(data.get("usage") or {}),
            provider=self.name,
            model=self.model,
        )

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(req, stream=True)

        async def _gen() -> AsyncIterator[StreamChunk]:
            acc = StreamAccumulator()
            async with aclosing(self._stream_lines(_MESSAGES_PATH, payload)) as lines:
                async for event_name, event in sse_json(lines):
                    kind = event.get("type") or event_name

                    if kind == "message_start":
                        usage = self._map_usage((event.get("message") or {}).get("usage") or {})
                        acc.usage(usage.input_tokens, usage.output_tokens, usage.cached_input_tokens)
                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            acc.saw_tool_call = True
                            yield ToolCallDelta(
                                index=event.get("index", 0),
                                id=block.get("id"),
                                name=block.get("name"),
                            )
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield ContentDelta(content=delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            yield ToolCallDelta(
                                index=event.get("index", 0),
                                arguments_delta=delta.get("partial_json", ""),
                            )
                    elif kind == "message_delta":
                        delta = event.get("delta") or {}
                        if delta.get("stop_reason"):
                            acc.stop_reason = _STOP_REASONS.get(delta["stop_reason"], "end_turn")
                        usage = event.get("usage") or {}
                        acc.usage(output_tokens=usage.get("output_tokens"))
                    elif kind == "message_stop":
                        break
                    elif kind == "error":
                        raise self._stream_error(event.get("error") or {})

            yield acc.finish()

        return _gen()

    @classmethod
    def _auth_headers(cls, api_key: str | None) -> dict[str, str]:
        headers = {"anthropic-version": _API_VERSION}
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    @classmethod
    def _parse_models(cls, data: Any) -> list[ModelInfo]:
        return [
            ModelInfo(id=m["id"], display_name=m.get("display_name") or m["id"])
            for m in data.get("data", [])
            if m["id"].startswith("claude-")
        ]

    def _build_payload(self, req: ChatRequest, *, stream: bool) -> dict[str, Any]:
        system_text, messages = self._split_system(req.messages)

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.resolve_max_tokens(req),
            "temperature": self.resolve_temperature(req),
            "messages": self._serialize_messages(messages),
        }
        if system_text:
            payload["system"] = system_text
        if req.stop_sequences:
            payload["stop_sequences"] = list(req.stop_sequences)
        if req.tools:
            payload["tools"] = self._serialize_tools(req.tools)
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[str, list[Message]]:
        system_parts: list[str] = []
        rest: list[Message] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                rest.append(m)
        return ("\n".join(system_parts), rest)

    @staticmethod
    def _serialize_messages(messages: list[Message]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool" and m.tool_result is not None:
                block = {
                    "type": "tool_result",
                    "tool_use_id": m.tool_result.tool_call_id,
                    "content": m.tool_result.content,
                }
                if m.tool_result.is_error:
                    block["is_error"] = True
                # Consecutive tool results belong in a single user turn.
                if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                    out[-1]["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block]})
            elif m.role == "assistant" and m.tool_calls:
                content: list[dict[str, Any]] = []
                if m.content:
                    content.append({"type": "text", "text": m.content})
                for tc in m.tool_calls:
                    content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
                out.append({"role": "assistant", "content": content})
            else:
                out.append({"role": m.role, "content": m.content})
        return out

    @staticmethod
    def _serialize_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "name": t.name,
                "description": t.description or "",
                "input_schema": t.parameters,
            }
            for t in tools
        ]

    @staticmethod
    def _map_usage(usage: dict[str, Any]) -> TokenUsage:
        cache_read = usage.get("cache_read_input_tokens") or 0
        cache_write = usage.get("cache_creation_input_tokens") or 0
        return TokenUsage(
            input_tokens=(usage.get("input_tokens") or 0) + cache_read + cache_write,
            output_tokens=usage.get("output_tokens") or 0,
            cached_input_tokens=cache_read,
        )

    def _stream_error(self, error: dict[str, Any]) -> ProviderError:
        status = _STREAM_ERROR_STATUS.get(error.get("type", ""), 500)
        return classify_status(self.name, status, error.get("message") or "stream error")
