"""Tests for the streaming HTTP transport and SSE line decoding."""

from __future__ import annotations

import json
import unittest

import httpx

from prep_chat.conversation import ConversationContext
from prep_chat.exceptions import ChatNetworkError, ChatProviderError, ChatRateLimitError
from prep_chat.message import FilePart
from prep_chat.transport import (
    ChatRequest,
    HttpChatTransport,
    decode_stream_line,
    http_status_error,
)

ENDPOINT = "http://chat.test/api/ai-assistant"


def _sse(*payloads: dict) -> bytes:
    lines = [f"data: {json.dumps(payload)}\n\n" for payload in payloads]
    return "".join(lines).encode("utf-8")


async def _collect(transport: HttpChatTransport, request: ChatRequest) -> list[dict]:
    return [chunk async for chunk in transport.stream(request)]


class DecodeLineTests(unittest.TestCase):
    def test_data_lines_decode_to_payloads(self) -> None:
        self.assertEqual(
            decode_stream_line('data: {"type": "text-delta", "delta": "Hi"}'),
            {"type": "text-delta", "delta": "Hi"},
        )
        self.assertEqual(decode_stream_line('{"type": "done"}'), {"type": "done"})

    def test_non_data_lines_are_skipped(self) -> None:
        for line in ("", "   ", ": keep-alive", "event: message", "id: 4", "retry: 100"):
            with self.subTest(line=line):
                self.assertIsNone(decode_stream_line(line))

    def test_done_sentinel(self) -> None:
        self.assertEqual(decode_stream_line("data: [DONE]"), {"type": "done"})

    def test_invalid_json_is_logged_and_skipped(self) -> None:
        with self.assertLogs("prep_chat.transport", level="WARNING"):
            self.assertIsNone(decode_stream_line("data: {not json"))
        self.assertIsNone(decode_stream_line("data: [1, 2]"))


class ChatRequestTests(unittest.TestCase):
    def test_payload_includes_only_set_fields(self) -> None:
        self.assertEqual(ChatRequest(content="hi").to_payload(), {"message": "hi"})

    def test_full_payload(self) -> None:
        request = ChatRequest(
            content="Explain closures",
            conversation_id="c1",
            files=[FilePart(media_type="image/png", url="data:image/png;base64,AA==")],
            model_id="openai/gpt-4o",
            provider="openrouter",
            enabled_provider_tools=["web_search"],
            context=ConversationContext(interview_id="iv1"),
        )
        payload = request.to_payload()
        self.assertEqual(payload["conversationId"], "c1")
        self.assertEqual(
            payload["attachments"],
            [{"mediaType": "image/png", "url": "data:image/png;base64,AA=="}],
        )
        self.assertEqual(payload["modelId"], "openai/gpt-4o")
        self.assertEqual(payload["provider"], "openrouter")
        self.assertEqual(payload["enabledTools"], ["web_search"])
        self.assertEqual(payload["context"]["interviewId"], "iv1")


class StatusErrorTests(unittest.TestCase):
    def test_rate_limit_statuses(self) -> None:
        self.assertIsInstance(http_status_error(429, ""), ChatRateLimitError)
        self.assertIsInstance(
            http_status_error(500, "RESOURCE_EXHAUSTED"), ChatRateLimitError
        )

    def test_other_statuses_are_provider_errors(self) -> None:
        error = http_status_error(502, "")
        self.assertIsInstance(error, ChatProviderError)
        self.assertIn("HTTP 502", str(error))


class HttpChatTransportTests(unittest.IsolatedAsyncioTestCase):
    async def test_streams_header_start_then_body_chunks(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            body = _sse({"type": "text-delta", "delta": "Clo"}) + b": ping\n\ndata: [DONE]\n\n"
            return httpx.Response(
                200,
                headers={
                    "x-conversation-id": "c42",
                    "x-new-conversation": "true",
                    "content-type": "text/event-stream",
                },
                content=body,
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpChatTransport(ENDPOINT, client=client)
            chunks = await _collect(transport, ChatRequest(content="hi", model_id="m"))

        self.assertEqual(seen, [{"message": "hi", "modelId": "m"}])
        self.assertEqual(
            chunks,
            [
                {
                    "type": "start",
                    "conversationId": "c42",
                    "isNewConversation": True,
                    "modelId": None,
                },
                {"type": "text-delta", "delta": "Clo"},
                {"type": "done"},
            ],
        )

    async def test_rate_limit_response_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="Too Many Requests")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpChatTransport(ENDPOINT, client=client)
            with self.assertRaises(ChatRateLimitError):
                await _collect(transport, ChatRequest(content="hi"))

    async def test_server_error_raises_provider_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream exploded")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpChatTransport(ENDPOINT, client=client)
            with self.assertRaises(ChatProviderError):
                await _collect(transport, ChatRequest(content="hi"))

    async def test_connection_failures_become_network_errors(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        def time_out(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        for handler in (refuse, time_out):
            async with httpx.AsyncClient(
                transport=httpx.MockTransport(handler)
            ) as client:
                transport = HttpChatTransport(ENDPOINT, client=client)
                with self.assertRaises(ChatNetworkError):
                    await _collect(transport, ChatRequest(content="hi"))


if __name__ == "__main__":
    unittest.main()
