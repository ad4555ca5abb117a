import asyncio
import json
import unittest
from collections.abc import Callable
from typing import Any

import httpx

from yeoman_gateway.config import ModelConfig
from yeoman_gateway.errors import InvalidResponseError, ProviderUnavailableError
from yeoman_gateway.providers.anthropic import AnthropicProvider
from yeoman_gateway.types import ChatRequest, Message, ToolCall, ToolResult, ToolSpec

Handler = Callable[[httpx.Request], httpx.Response]


class AnthropicChatTests(unittest.TestCase):
    def test_request_shape(self) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "msg_1",
                    "content": [{"type": "text", "text": "Done."}],
                    "stop_reason": "end_turn",
                    "usage": {"input_tokens": 20, "output_tokens": 3},
                },
            )

        calls = [
            ToolCall(id="toolu_1", name="read_file", arguments={"path": "a.txt"}),
            ToolCall(id="toolu_2", name="read_file", arguments={"path": "b.txt"}),
        ]
        history = [
            Message(role="system", content="You are terse."),
            Message(role="user", content="Read both files."),
            Message(role="assistant", content="Reading.", tool_calls=calls),
            Message(role="tool", tool_result=ToolResult(tool_call_id="toolu_1", content="alpha")),
            Message(role="tool", tool_result=ToolResult(tool_call_id="toolu_2", content="boom", is_error=True)),
        ]
        req = ChatRequest(
            messages=history,
            tools=[ToolSpec(name="read_file", parameters={"type": "object", "properties": {"path": {"type": "string"}}})],
            stop_sequences=["END"],
        )
        resp = asyncio.run(_chat(handler, req))

        self.assertEqual(resp.content, "Done.")
        self.assertEqual(resp.id, "msg_1")
        self.assertEqual(captured["url"], "https://api.anthropic.com/v1/messages")
        self.assertEqual(captured["headers"]["x-api-key"], "sk-ant-test")
        self.assertEqual(captured["headers"]["anthropic-version"], "2023-06-01")

        body = captured["body"]
        self.assertEqual(body["system"], "You are terse.")
        self.assertEqual(body["max_tokens"], 4096)
        self.assertEqual(body["stop_sequences"], ["END"])
        self.assertEqual(body["tools"][0]["input_schema"]["properties"]["path"]["type"], "string")
        self.assertEqual([m["role"] for m in body["messages"]], ["user", "assistant", "user"])
        self.assertEqual(
            [b["type"] for b in body["messages"][1]["content"]],
            ["text", "tool_use", "tool_use"],
        )
        results = body["messages"][2]["content"]
        self.assertEqual([r["tool_use_id"] for r in results], ["toolu_1", "toolu_2"])
        self.assertTrue(results[1]["is_error"])

    def test_tool_use_and_cache_usage(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "id": "msg_2",
                    "content": [
                        {"type": "text", "text": "Let me check."},
                        {"type": "tool_use", "id": "toolu_9", "name": "get_weather", "input": {"city": "Lima"}},
                    ],
                    "stop_reason": "tool_use",
                    "usage": {
                        "input_tokens": 100,
                        "cache_read_input_tokens": 50,
                        "cache_creation_input_tokens": 25,
                        "output_tokens": 10,
                    },
                },
            )

        resp = asyncio.run(_chat(handler, _hello()))
        self.assertEqual(resp.stop_reason, "tool_use")
        self.assertEqual(resp.tool_calls[0].id, "toolu_9")
        self.assertEqual(resp.tool_calls[0].arguments, {"city": "Lima"})
        self.assertEqual(resp.usage.input_tokens, 175)
        self.assertEqual(resp.usage.cached_input_tokens, 50)
        self.assertEqual(resp.usage.total_tokens, 185)

    def test_overloaded_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

        with self.assertRaises(ProviderUnavailableError):
            asyncio.run(_chat(handler, _hello()))

    def test_bad_request_is_invalid(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad model"}})

        with self.assertRaises(InvalidResponseError):
            asyncio.run(_chat(handler, _hello()))


class AnthropicStreamTests(unittest.TestCase):
    def test_event_stream(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=_events(
                    ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 8, "output_tokens": 1}}}),
                    ("ping", {"type": "ping"}),
                    (
                        "content_block_delta",
                        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
                    ),
                    (
                        "content_block_start",
                        {
                            "type": "content_block_start",
                            "index": 1,
                            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "lookup"},
                        },
                    ),
                    (
                        "content_block_delta",
                        {
                            "type": "content_block_delta",
                            "index": 1,
                            "delta": {"type": "input_json_delta", "partial_json": '{"q": "x"}'},
                        },
                    ),
                    ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 5}}),
                    ("message_stop", {"type": "message_stop"}),
                ),
            )

        chunks = asyncio.run(_stream(handler, _hello()))

        self.assertEqual(
            [c.type for c in chunks],
            ["content_delta", "tool_call_delta", "tool_call_delta", "done"],
        )
        self.assertEqual(chunks[1].id, "toolu_1")
        self.assertEqual(chunks[2].arguments_delta, '{"q": "x"}')
        done = chunks[-1]
        self.assertEqual(done.stop_reason, "tool_use")
        self.assertEqual((done.usage.input_tokens, done.usage.output_tokens), (8, 5))

    def test_error_event_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=_events(("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})),
            )

        with self.assertRaises(ProviderUnavailableError):
            asyncio.run(_stream(handler, _hello()))


class AnthropicModelListingTests(unittest.TestCase):
    def test_only_claude_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/v1/models")
            return httpx.Response(
                200,
                json={"data": [{"id": "claude-sonnet-4-20250514", "display_name": "Claude Sonnet 4"}, {"id": "other"}]},
            )

        models = asyncio.run(AnthropicProvider.fetch_available_models(api_key="k", transport=httpx.MockTransport(handler)))
        self.assertEqual([(m.id, m.display_name) for m in models], [("claude-sonnet-4-20250514", "Claude Sonnet 4")])


def _hello() -> ChatRequest:
    return ChatRequest(messages=[Message(role="user", content="Hi")])


def _events(*events: tuple[str, dict[str, Any]]) -> bytes:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()


def _make(handler: Handler) -> AnthropicProvider:
    config = ModelConfig(provider="anthropic", model="claude-sonnet-4-20250514")
    return AnthropicProvider(config, api_key="sk-ant-test", transport=httpx.MockTransport(handler))


async def _chat(handler: Handler, req: ChatRequest):
    provider = _make(handler)
    try:
        return await provider.chat(req)
    finally:
        await provider.aclose()


async def _stream(handler: Handler, req: ChatRequest) -> list:
    provider = _make(handler)
    try:
        return [chunk async for chunk in provider.stream(req)]
    finally:
        await provider.aclose()


if __name__ == "__main__":
    unittest.main()
