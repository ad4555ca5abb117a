import asyncio
import unittest
from typing import Any

from yeoman_gateway.audit import AuditRecorder


class ListSink:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def record(self, entry: dict[str, Any]) -> None:
        self.entries.append(entry)


class BrokenSink:
    def record(self, entry: dict[str, Any]) -> None:
        raise RuntimeError("audit chain offline")


class AsyncListSink:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    async def record(self, entry: dict[str, Any]) -> None:
        self.entries.append(entry)


class AsyncBrokenSink:
    async def record(self, entry: dict[str, Any]) -> None:
        raise RuntimeError("audit chain offline")


class AuditRecorderTests(unittest.TestCase):
    def test_entry_shape_and_levels(self) -> None:
        sink = ListSink()
        recorder = AuditRecorder(sink)
        recorder.record("ai_response", {"provider": "ollama"})
        recorder.record("ai_fallback_exhausted", {"hops": []})
        recorder.record("model_switched", {}, message="Model switched")

        self.assertEqual(
            [(e["event"], e["level"]) for e in sink.entries],
            [("ai_response", "info"), ("ai_fallback_exhausted", "warn"), ("model_switched", "info")],
        )
        self.assertEqual(sink.entries[0]["metadata"], {"provider": "ollama"})
        self.assertEqual(sink.entries[2]["message"], "Model switched")

    def test_disabled_without_sink(self) -> None:
        recorder = AuditRecorder(None)
        self.assertFalse(recorder.enabled)
        recorder.record("ai_response", {})

    def test_sync_failure_is_logged(self) -> None:
        recorder = AuditRecorder(BrokenSink())
        with self.assertLogs("yeoman_gateway.audit", level="WARNING"):
            recorder.record("ai_error", {})

    def test_async_sink_without_running_loop_is_logged(self) -> None:
        sink = AsyncListSink()
        recorder = AuditRecorder(sink)
        with self.assertLogs("yeoman_gateway.audit", level="WARNING"):
            recorder.record("model_switched", {})
        self.assertEqual(sink.entries, [])

    def test_async_failure_is_logged(self) -> None:
        with self.assertLogs("yeoman_gateway.audit", level="WARNING"):
            asyncio.run(_record_async_and_drain())


async def _record_async_and_drain() -> None:
    recorder = AuditRecorder(AsyncBrokenSink())
    recorder.record("ai_response", {})
    await recorder.drain()


if __name__ == "__main__":
    unittest.main()
