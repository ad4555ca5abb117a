"""OpenAI provider implementation.

Also the base of every backend speaking the Chat Completions dialect.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, ClassVar

from yeoman_gateway.errors import InvalidResponseError, ProviderUnavailableError
from yeoman_gateway.providers.base import BaseProvider
from yeoman_gateway.streaming import StreamAccumulator, sse_json
from yeoman_gateway.types import (
    ChatRequest,
    ChatResponse,
    ContentDelta,
    Message,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallDelta,
    ToolSpec,
)

_CHAT_PATH = "/chat/completions"

_FINISH_REASONS: dict[str, StopReason] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


class OpenAIProvider(BaseProvider):
    """Async wrapper for the OpenAI Chat Completions API."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    # Ask for a trailing usage chunk on streams.
    stream_usage_option: ClassVar[bool] = True

    async def chat(self, req: ChatRequest) -> ChatResponse:
        """Call Chat Completions and normalize the result."""
        data = await self._post_json(_CHAT_PATH, self._build_payload(req, stream=False))

        choices = data.get("choices") or []
        if not choices:
            raise InvalidResponseError(self.name, "response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall(
                id=tc.get("id") or f"call_{i}",
                name=(tc.get("function") or {}).get("name", ""),
                arguments=self._parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for i, tc in enumerate(message.get("tool_calls") or [])
        ]

        stop_reason: StopReason = "tool_use" if tool_calls else self._map_finish(choice.get("finish_reason"))
        return ChatResponse(
            id=data.get("id"),
            content=message.get("content") or "",
            tool_calls=tool_calls or None,
            stop_reason=stop_reason,
            usage=self._map_usage(data.get("usage") or {}),
            provider=self.name,
            model=self.model,
        )

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Return an async iterator that streams canonical chunks."""
        payload = self._build_payload(req, stream=True)

        async def _gen() -> AsyncIterator[StreamChunk]:
            acc = StreamAccumulator()
            async with aclosing(self._stream_lines(_CHAT_PATH, payload)) as lines:
                async for _, event in sse_json(lines):
                    if "error" in event:
                        error = event["error"]
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        raise ProviderUnavailableError(self.name, message or "stream error")

                    if event.get("usage"):
                        usage = self._map_usage(event["usage"])
                        acc.usage(usage.input_tokens, usage.output_tokens, usage.cached_input_tokens)

                    for choice in event.get("choices") or []:
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if isinstance(content, str) and content:
                            yield ContentDelta(content=content)

                        for tc in delta.get("tool_calls") or []:
                            acc.saw_tool_call = True
                            function = tc.get("function") or {}
                            arguments = function.get("arguments")
                            if isinstance(arguments, dict):
                                arguments = json.dumps(arguments)
                            yield ToolCallDelta(
                                index=tc.get("index", 0),
                                id=tc.get("id"),
                                name=function.get("name"),
                                arguments_delta=arguments or "",
                            )

                        if choice.get("finish_reason"):
                            acc.stop_reason = self._map_finish(choice["finish_reason"])

            yield acc.finish()

        return _gen()

    def _build_payload(self, req: ChatRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [self._serialize_message(m) for m in req.messages],
            "max_tokens": self.resolve_max_tokens(req),
            "temperature": self.resolve_temperature(req),
        }
        if req.stop_sequences:
            payload["stop"] = list(req.stop_sequences)
        if req.tools:
            payload["tools"] = self._serialize_tools(req.tools)
        if stream:
            payload["stream"] = True
            if self.stream_usage_option:
                payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        if message.role == "tool" and message.tool_result is not None:
            return {
                "role": "tool",
                "tool_call_id": message.tool_result.tool_call_id,
                "content": message.tool_result.content,
            }
        if message.role == "assistant" and message.tool_calls:
            return {
                "role": "assistant",
                "content": message.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in message.tool_calls
                ],
            }
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _serialize_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description or "",
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    @staticmethod
    def _map_finish(reason: str | None) -> StopReason:
        return _FINISH_REASONS.get(reason or "", "end_turn")

    def _map_usage(self, usage: dict[str, Any]) -> TokenUsage:
        details = usage.get("prompt_tokens_details") or {}
        return TokenUsage(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
            cached_input_tokens=details.get("cached_tokens") or 0,
        )
