"""Google Gemini provider implementation (generateContent REST API)."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from yeoman_gateway.errors import AuthenticationError, ProviderError
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
)

_FINISH_REASONS: dict[str, StopReason] = {
    "STOP": "end_turn",
    "MAX_TOKENS": "max_tokens",
}


class GeminiProvider(BaseProvider):
    """Async wrapper for the Gemini generateContent API."""

    name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def chat(self, req: ChatRequest) -> ChatResponse:
        data = await self._post_json(f"/models/{self.model}:generateContent", self._build_payload(req))

        candidate = (data.get("candidates") or [{}])[0]
        text: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part and not part.get("thought"):
                text.append(part["text"])
            if part.get("functionCall"):
                call = part["functionCall"]
                tool_calls.append(
                    ToolCall(id=call.get("id") or _call_id(), name=call["name"], arguments=call.get("args") or {})
                )

        stop_reason: StopReason = (
            "tool_use" if tool_calls else _FINISH_REASONS.get(candidate.get("finishReason") or "", "end_turn")
        )
        return ChatResponse(
            id=data.get("responseId"),
            content="".join(text),
            tool_calls=tool_calls or None,
            stop_reason=stop_reason,
            usage=self._map_usage(data.get("usageMetadata") or {}),
            provider=self.name,
            model=self.model,
        )

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(req)

        async def _gen() -> AsyncIterator[StreamChunk]:
            acc = StreamAccumulator()
            tool_index = 0
            path = f"/models/{self.model}:streamGenerateContent"
            # Gemini has no end sentinel; the stream ends when the transport closes.
            async with aclosing(self._stream_lines(path, payload, params={"alt": "sse"})) as lines:
                async for _, event in sse_json(lines):
                    if event.get("usageMetadata"):
                        usage = self._map_usage(event["usageMetadata"])
                        acc.usage(usage.input_tokens, usage.output_tokens, usage.cached_input_tokens)

                    for candidate in event.get("candidates") or []:
                        for part in (candidate.get("content") or {}).get("parts") or []:
                            if part.get("text") and not part.get("thought"):
                                yield ContentDelta(content=part["text"])
                            if part.get("functionCall"):
                                call = part["functionCall"]
                                acc.saw_tool_call = True
                                yield ToolCallDelta(
                                    index=tool_index,
                                    id=call.get("id") or _call_id(),
                                    name=call.get("name"),
                                    arguments_delta=json.dumps(call.get("args") or {}),
                                )
                                tool_index += 1
                        if candidate.get("finishReason"):
                            acc.stop_reason = _FINISH_REASONS.get(candidate["finishReason"], "end_turn")

            yield acc.finish()

        return _gen()

    @classmethod
    def _auth_headers(cls, api_key: str | None) -> dict[str, str]:
        return {"x-goog-api-key": api_key} if api_key else {}

    @classmethod
    def _parse_models(cls, data: Any) -> list[ModelInfo]:
        return [
            ModelInfo(id=m["name"].removeprefix("models/"), display_name=m.get("displayName"))
            for m in data.get("models", [])
            if "generateContent" in (m.get("supportedGenerationMethods") or ["generateContent"])
        ]

    def _classify(self, response: httpx.Response, body: str | None = None) -> ProviderError:
        error = super()._classify(response, body)
        # An invalid key is reported as a plain 400.
        if response.status_code == 400 and "api key" in str(error).lower():
            return AuthenticationError(self.name, "API key not valid", status_code=400)
        return error

    def _build_payload(self, req: ChatRequest) -> dict[str, Any]:
        system_text = "\n".join(m.content for m in req.messages if m.role == "system")
        generation: dict[str, Any] = {
            "maxOutputTokens": self.resolve_max_tokens(req),
            "temperature": self.resolve_temperature(req),
        }
        if req.stop_sequences:
            generation["stopSequences"] = list(req.stop_sequences)

        payload: dict[str, Any] = {
            "contents": self._serialize_messages(req.messages),
            "generationConfig": generation,
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        if req.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description or "", "parameters": t.parameters}
                        for t in req.tools
                    ]
                }
            ]
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        names = self._tool_names(messages)
        contents: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                continue
            if m.role == "tool" and m.tool_result is not None:
                result = m.tool_result
                contents.append(
                    {
                        "role": "user",
                        "parts": [
                            {
                                "functionResponse": {
                                    "id": result.tool_call_id,
                                    "name": names.get(result.tool_call_id, result.tool_call_id),
                                    "response": {"content": result.content},
                                }
                            }
                        ],
                    }
                )
            elif m.role == "assistant":
                parts: list[dict[str, Any]] = []
                if m.content:
                    parts.append({"text": m.content})
                for tc in m.tool_calls or ():
                    parts.append({"functionCall": {"id": tc.id, "name": tc.name, "args": tc.arguments}})
                contents.append({"role": "model", "parts": parts})
            else:
                contents.append({"role": "user", "parts": [{"text": m.content}]})
        return contents

    @staticmethod
    def _map_usage(meta: dict[str, Any]) -> TokenUsage:
        return TokenUsage(
            input_tokens=meta.get("promptTokenCount") or 0,
            output_tokens=(meta.get("candidatesTokenCount") or 0) + (meta.get("thoughtsTokenCount") or 0),
            cached_input_tokens=meta.get("cachedContentTokenCount") or 0,
        )


def _call_id() -> str:
    return f"gemini-{uuid.uuid4().hex[:12]}"
