"""Streaming transport: request shape and the HTTP/SSE implementation."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol

import httpx

from .conversation import ConversationContext
from .exceptions import (
    ChatNetworkError,
    ChatProviderError,
    ChatRateLimitError,
    PrepChatError,
    looks_rate_limited,
)
from .message import FilePart

LOGGER = logging.getLogger(__name__)

CONVERSATION_ID_HEADER = "x-conversation-id"
NEW_CONVERSATION_HEADER = "x-new-conversation"
MODEL_ID_HEADER = "x-model-id"

_SSE_DATA_PREFIX = "data:"
_SSE_DONE_SENTINEL = "[DONE]"


@dataclass
class ChatRequest:
    """Everything one streamed exchange sends to the server."""

    content: str
    conversation_id: str | None = None
    files: list[FilePart] = field(default_factory=list)
    model_id: str | None = None
    provider: str | None = None
    enabled_provider_tools: list[str] = field(default_factory=list)
    context: ConversationContext | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.content}
        if self.conversation_id:
            payload["conversationId"] = self.conversation_id
        if self.files:
            payload["attachments"] = [
                {
                    key: value
                    for key, value in (
                        ("mediaType", part.media_type),
                        ("url", part.url),
                        ("filename", part.filename),
                    )
                    if value is not None
                }
                for part in self.files
            ]
        if self.model_id:
            payload["modelId"] = self.model_id
        if self.provider:
            payload["provider"] = self.provider
        if self.enabled_provider_tools:
            payload["enabledTools"] = list(self.enabled_provider_tools)
        if self.context is not None:
            payload["context"] = self.context.to_dict()
        return payload


class ChatTransport(Protocol):
    """Anything that turns a request into an ordered stream of chunk payloads."""

    def stream(self, request: ChatRequest) -> AsyncIterator[dict[str, Any]]: ...


def decode_stream_line(line: str) -> dict[str, Any] | None:
    """Decode one SSE or NDJSON line into a chunk payload.

    Blank lines, SSE comments and non-data SSE fields decode to None. The
    OpenAI-style ``data: [DONE]`` sentinel decodes to a ``done`` chunk.
    """
    text = line.strip()
    if not text or text.startswith(":"):
        return None
    if text.startswith(_SSE_DATA_PREFIX):
        text = text[len(_SSE_DATA_PREFIX) :].strip()
    elif text.startswith(("event:", "id:", "retry:")):
        return None
    if text == _SSE_DONE_SENTINEL:
        return {"type": "done"}
    try:
        payload = json.loads(text)
    except ValueError:
        LOGGER.warning(
            "transport.line.invalid",
            extra={"event": "transport.line.invalid", "line": text[:200]},
        )
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def start_chunk_from_headers(headers: httpx.Headers) -> dict[str, Any] | None:
    """Build a ``start`` chunk from the conversation headers, if any are set."""
    conversation_id = headers.get(CONVERSATION_ID_HEADER)
    model_id = headers.get(MODEL_ID_HEADER)
    if not conversation_id and not model_id:
        return None
    return {
        "type": "start",
        "conversationId": conversation_id or None,
        "isNewConversation": headers.get(NEW_CONVERSATION_HEADER, "").lower() == "true",
        "modelId": model_id or None,
    }


def http_status_error(status_code: int, body: str) -> PrepChatError:
    """Map a non-2xx response to the matching domain exception."""
    detail = body.strip()[:500] or f"HTTP {status_code}"
    if status_code == 429 or looks_rate_limited(body):
        return ChatRateLimitError(f"Rate limit reached: {detail}")
    return ChatProviderError(f"Chat request failed with HTTP {status_code}: {detail}")


class HttpChatTransport:
    """POST the request and read the response body as a line-delimited stream."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_seconds: float = 120.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})
        self._client = client

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict[str, Any]]:
        client = self._client or httpx.AsyncClient(timeout=self.timeout_seconds)
        owns_client = self._client is None
        try:
            async with client.stream(
                "POST",
                self.endpoint,
                json=request.to_payload(),
                headers={"Accept": "text/event-stream", **self.headers},
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    LOGGER.warning(
                        "transport.http.error",
                        extra={
                            "event": "transport.http.error",
                            "status_code": response.status_code,
                        },
                    )
                    raise http_status_error(response.status_code, body)

                start = start_chunk_from_headers(response.headers)
                if start is not None:
                    yield start

                async for line in response.aiter_lines():
                    payload = decode_stream_line(line)
                    if payload is not None:
                        yield payload
        except httpx.TimeoutException as exc:
            raise ChatNetworkError("The chat request timed out.") from exc
        except httpx.TransportError as exc:
            raise ChatNetworkError(f"Unable to reach the chat service: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()
