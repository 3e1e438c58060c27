"""Tests for side-by-side model comparison streams."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any
import unittest

from prep_chat.events import COMPARISON_FINISHED, COMPARISON_UPDATED, EventBus
from prep_chat.exceptions import ChatNetworkError, ChatValidationError, ErrorKind
from prep_chat.multi_model import ComparisonTarget, MultiModelComparison
from prep_chat.selector import ModelInfo
from prep_chat.session import INTERRUPTED_MESSAGE, RATE_LIMIT_MESSAGE
from prep_chat.transport import ChatRequest

from tests.fakes import DONE, until

GPT = ComparisonTarget(model_id="openai/gpt-4o", provider="openrouter", name="GPT-4o")
LLAMA = ComparisonTarget(model_id="llama3", provider="ollama")


def _text(content: str) -> dict[str, Any]:
    return {"type": "text", "content": content}


class PerModelTransport:
    """Replay a script chosen by the request's model id."""

    def __init__(self, scripts: dict[str, list[Any]]) -> None:
        self.scripts = scripts
        self.requests: list[ChatRequest] = []
        self.closed: list[str] = []

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict[str, Any]]:
        self.requests.append(request)
        try:
            for item in self.scripts.get(request.model_id, [DONE]):
                if isinstance(item, asyncio.Event):
                    await item.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.closed.append(request.model_id)


class MultiModelComparisonTests(unittest.IsolatedAsyncioTestCase):
    def _comparison(self, scripts: dict[str, list[Any]]) -> MultiModelComparison:
        self.transport = PerModelTransport(scripts)
        self.bus = EventBus()
        self.finished: list[dict[str, Any]] = []
        self.updates: list[dict[str, Any]] = []
        self.bus.subscribe(COMPARISON_FINISHED, lambda event: self.finished.append(event.data))
        self.bus.subscribe(COMPARISON_UPDATED, lambda event: self.updates.append(event.data))
        comparison = MultiModelComparison(self.transport, bus=self.bus, conversation_id="c1")
        self.addAsyncCleanup(comparison.reset)
        return comparison

    async def test_each_model_streams_into_its_own_response(self) -> None:
        comparison = self._comparison(
            {
                "openai/gpt-4o": [
                    {"type": "reasoning", "content": "Recall scoping."},
                    _text("A closure "),
                    _text("captures scope."),
                    {"type": "metadata", "metadata": {"tokensIn": 12, "tokensOut": 30}},
                    DONE,
                ],
                "llama3": [_text("Functions remember."), DONE],
            }
        )
        responses = await comparison.send("  Explain closures ", [GPT, LLAMA])
        self.assertEqual(list(responses), ["openrouter:openai/gpt-4o", "ollama:llama3"])
        self.assertTrue(comparison.is_loading)

        await comparison.wait()

        self.assertFalse(comparison.is_loading)
        gpt = comparison.responses["openrouter:openai/gpt-4o"]
        self.assertEqual(gpt.content, "A closure captures scope.")
        self.assertEqual(gpt.reasoning, "Recall scoping.")
        self.assertEqual((gpt.metadata.tokens_in, gpt.metadata.tokens_out), (12, 30))
        self.assertEqual(gpt.metadata.model_name, "GPT-4o")
        self.assertIsNotNone(gpt.metadata.latency_ms)
        self.assertTrue(gpt.is_complete)
        self.assertFalse(gpt.is_streaming)
        self.assertIsNone(gpt.error)

        llama = comparison.responses["ollama:llama3"]
        self.assertEqual(llama.content, "Functions remember.")
        self.assertEqual(llama.metadata.model, "llama3")

        self.assertEqual(
            sorted((r.content, r.conversation_id, r.provider) for r in self.transport.requests),
            [
                ("Explain closures", "c1", "ollama"),
                ("Explain closures", "c1", "openrouter"),
            ],
        )
        self.assertEqual(sorted(e["key"] for e in self.finished), sorted(responses))
        self.assertIn(
            {"key": "openrouter:openai/gpt-4o", "chunk_type": "reasoning"}, self.updates
        )

    async def test_duplicate_targets_are_asked_once(self) -> None:
        comparison = self._comparison({"llama3": [_text("once"), DONE]})
        await comparison.send("hi", [LLAMA, ComparisonTarget("llama3", "ollama", "Llama")])
        await comparison.wait()
        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(list(comparison.responses), ["ollama:llama3"])

    async def test_one_model_failing_does_not_affect_the_other(self) -> None:
        comparison = self._comparison(
            {
                "openai/gpt-4o": [
                    _text("partial"),
                    {"type": "error", "error": "429 Too Many Requests"},
                ],
                "llama3": [_text("fine"), DONE],
            }
        )
        await comparison.send("hi", [GPT, LLAMA])
        await comparison.wait()

        gpt = comparison.responses["openrouter:openai/gpt-4o"]
        self.assertEqual(gpt.error, RATE_LIMIT_MESSAGE)
        self.assertIs(gpt.error_kind, ErrorKind.RATE_LIMIT)
        self.assertEqual(gpt.content, "partial")
        self.assertTrue(gpt.is_complete)

        llama = comparison.responses["ollama:llama3"]
        self.assertIsNone(llama.error)
        self.assertEqual(llama.content, "fine")

        by_key = {event["key"]: event for event in self.finished}
        self.assertEqual(by_key["openrouter:openai/gpt-4o"]["error_kind"], "rate_limit")
        self.assertIsNone(by_key["ollama:llama3"]["error_kind"])

    async def test_transport_failure_is_logged_and_recorded(self) -> None:
        comparison = self._comparison({"llama3": [ChatNetworkError("connection refused")]})
        with self.assertLogs("prep_chat.multi_model", level="WARNING") as logs:
            await comparison.send("hi", [LLAMA])
            await comparison.wait()
        self.assertIn("comparison.stream.failed", logs.output[0])
        llama = comparison.responses["ollama:llama3"]
        self.assertIs(llama.error_kind, ErrorKind.NETWORK)
        self.assertEqual(llama.error, "connection refused")
        self.assertEqual(self.transport.closed, ["llama3"])

    async def test_stream_ending_without_done_is_interrupted(self) -> None:
        comparison = self._comparison({"llama3": [_text("cut")]})
        await comparison.send("hi", [LLAMA])
        await comparison.wait()
        llama = comparison.responses["ollama:llama3"]
        self.assertEqual(llama.error, INTERRUPTED_MESSAGE)
        self.assertEqual(llama.content, "cut")

    async def test_stop_aborts_every_stream_and_keeps_partial_text(self) -> None:
        gate = asyncio.Event()
        comparison = self._comparison(
            {
                "openai/gpt-4o": [_text("half of "), gate, _text("never"), DONE],
                "llama3": [_text("some"), gate, DONE],
            }
        )
        await comparison.send("hi", [GPT, LLAMA])
        await until(lambda: all(r.content for r in comparison.responses.values()))

        self.assertTrue(await comparison.stop())

        self.assertFalse(comparison.is_loading)
        self.assertEqual(sorted(self.transport.closed), ["llama3", "openai/gpt-4o"])
        gpt = comparison.responses["openrouter:openai/gpt-4o"]
        self.assertEqual(gpt.content, "half of ")
        self.assertTrue(gpt.is_complete)
        self.assertFalse(gpt.is_streaming)
        self.assertIsNone(gpt.error)
        self.assertEqual(self.finished, [])
        self.assertFalse(await comparison.stop())

    async def test_new_send_replaces_running_comparison(self) -> None:
        gate = asyncio.Event()
        comparison = self._comparison({"llama3": [_text("old"), gate, DONE]})
        await comparison.send("first", [LLAMA])
        await until(lambda: comparison.responses["ollama:llama3"].content == "old")

        comparison.transport = PerModelTransport({"openai/gpt-4o": [_text("new"), DONE]})
        await comparison.send("second", [GPT])
        await comparison.wait()

        self.assertEqual(list(comparison.responses), ["openrouter:openai/gpt-4o"])
        self.assertEqual(comparison.responses["openrouter:openai/gpt-4o"].content, "new")

    async def test_reset_clears_responses(self) -> None:
        comparison = self._comparison({"llama3": [_text("done"), DONE]})
        await comparison.send("hi", [LLAMA])
        await comparison.wait()
        await comparison.reset()
        self.assertEqual(comparison.responses, {})
        self.assertFalse(comparison.is_loading)

    async def test_empty_prompt_or_no_models_is_rejected(self) -> None:
        comparison = self._comparison({})
        with self.assertRaises(ChatValidationError):
            await comparison.send("   ", [LLAMA])
        with self.assertRaises(ChatValidationError):
            await comparison.send("hi", [])
        self.assertEqual(self.transport.requests, [])


class ComparisonTargetTests(unittest.TestCase):
    def test_key_joins_provider_and_model(self) -> None:
        self.assertEqual(GPT.key, "openrouter:openai/gpt-4o")

    def test_from_catalog_model(self) -> None:
        target = ComparisonTarget.from_model(
            ModelInfo(id="meta/llama-3", name="Llama 3", provider="openrouter")
        )
        self.assertEqual(target, ComparisonTarget("meta/llama-3", "openrouter", "Llama 3"))
        unnamed = ComparisonTarget.from_model(ModelInfo(id="x", provider="ollama"))
        self.assertIsNone(unnamed.name)


if __name__ == "__main__":
    unittest.main()
