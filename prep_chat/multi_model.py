"""Side-by-side comparison: one prompt streamed to several models at once.

Each selected model gets its own request and its own background task, keyed
``provider:model_id``. The streams are independent, so one model failing or
lagging never holds up the others. A comparison never touches the working
conversation or persistence; its results live in ``responses`` and are
announced on the event bus.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
import time

from .chunks import (
    DoneChunk,
    ErrorChunk,
    MetadataChunk,
    ReasoningDeltaChunk,
    TextDeltaChunk,
    parse_chunk,
)
from .events import COMPARISON_FINISHED, COMPARISON_UPDATED, EventBus
from .exceptions import ChatValidationError, ErrorKind, classify_error
from .message import MessageMetadata
from .selector import ModelInfo
from .session import INTERRUPTED_MESSAGE, RATE_LIMIT_MESSAGE
from .task_manager import TaskManager
from .transport import ChatRequest, ChatTransport

LOGGER = logging.getLogger(__name__)

_TASK_PREFIX = "compare:"


@dataclass(frozen=True)
class ComparisonTarget:
    """One model taking part in a comparison."""

    model_id: str
    provider: str
    name: str | None = None

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.model_id}"

    @classmethod
    def from_model(cls, model: ModelInfo) -> ComparisonTarget:
        return cls(model_id=model.id, provider=model.provider, name=model.name or None)


@dataclass
class ModelResponse:
    """Accumulated output of one model's stream."""

    model_id: str
    provider: str
    model_name: str | None = None
    content: str = ""
    reasoning: str = ""
    metadata: MessageMetadata = field(default_factory=MessageMetadata)
    error: str | None = None
    error_kind: ErrorKind | None = None
    is_streaming: bool = True
    is_complete: bool = False


def _task_name(key: str) -> str:
    return f"{_TASK_PREFIX}{key}"


class MultiModelComparison:
    """Fan one prompt out to several models and collect each reply separately."""

    def __init__(
        self,
        transport: ChatTransport,
        *,
        bus: EventBus | None = None,
        tasks: TaskManager | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self.transport = transport
        self.bus = bus or EventBus()
        self.tasks = tasks or TaskManager()
        self.conversation_id = conversation_id
        self.responses: dict[str, ModelResponse] = {}
        self._running: set[str] = set()

    @property
    def is_loading(self) -> bool:
        return bool(self._running)

    async def send(
        self, content: str, targets: Sequence[ComparisonTarget]
    ) -> dict[str, ModelResponse]:
        """Abort any running comparison and stream ``content`` to every target.

        Targets sharing a ``provider:model_id`` key are only asked once.
        Returns the response map, which fills in as the streams progress.
        """
        text = content.strip()
        if not text:
            raise ChatValidationError("Message content must not be empty.")
        if not targets:
            raise ChatValidationError("Select at least one model to compare.")
        await self.stop()

        unique: dict[str, ComparisonTarget] = {}
        for target in targets:
            unique.setdefault(target.key, target)
        self.responses = {
            key: ModelResponse(
                model_id=target.model_id,
                provider=target.provider,
                model_name=target.name,
                metadata=MessageMetadata(model=target.model_id, model_name=target.name),
            )
            for key, target in unique.items()
        }
        LOGGER.info(
            "comparison.started",
            extra={
                "event": "comparison.started",
                "conversation_id": self.conversation_id,
                "models": list(unique),
            },
        )
        for key, target in unique.items():
            request = ChatRequest(
                content=text,
                conversation_id=self.conversation_id,
                model_id=target.model_id,
                provider=target.provider,
            )
            self._running.add(key)
            self.tasks.spawn(self._stream(key, request), name=_task_name(key))
        return self.responses

    async def _stream(self, key: str, request: ChatRequest) -> None:
        response = self.responses[key]
        started = time.monotonic()
        completed = False
        stream = self.transport.stream(request)
        try:
            async for raw in stream:
                chunk = parse_chunk(raw)
                if isinstance(chunk, DoneChunk):
                    completed = True
                    break
                if isinstance(chunk, ErrorChunk):
                    kind = classify_error(chunk.error_text, chunk.code)
                    self._fail(response, kind, chunk.error_text)
                    break
                if self._apply(response, chunk):
                    await self.bus.publish(
                        COMPARISON_UPDATED,
                        {"key": key, "chunk_type": chunk.type},
                        source="comparison",
                    )
        except Exception as exc:
            kind = classify_error(exc)
            LOGGER.warning(
                "comparison.stream.failed",
                extra={
                    "event": "comparison.stream.failed",
                    "model_key": key,
                    "error_kind": kind.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            self._fail(response, kind, str(exc))
        finally:
            self._running.discard(key)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not completed and response.error is None:
            self._fail(response, ErrorKind.NETWORK, INTERRUPTED_MESSAGE)
        if response.metadata.latency_ms is None:
            response.metadata.latency_ms = int((time.monotonic() - started) * 1000)
        response.is_streaming = False
        response.is_complete = True
        await self.bus.publish(
            COMPARISON_FINISHED,
            {
                "key": key,
                "model_id": response.model_id,
                "error": response.error,
                "error_kind": response.error_kind.value if response.error_kind else None,
            },
            source="comparison",
        )

    @staticmethod
    def _apply(response: ModelResponse, chunk: object) -> bool:
        # Tool, file and start chunks carry nothing a comparison shows.
        if isinstance(chunk, TextDeltaChunk):
            response.content += chunk.delta
        elif isinstance(chunk, ReasoningDeltaChunk):
            response.reasoning += chunk.delta
        elif isinstance(chunk, MetadataChunk):
            response.metadata.merge(chunk.values())
        else:
            return False
        return True

    @staticmethod
    def _fail(response: ModelResponse, kind: ErrorKind, text: str) -> None:
        response.error_kind = kind
        if kind is ErrorKind.RATE_LIMIT:
            response.error = RATE_LIMIT_MESSAGE
        else:
            response.error = text or "An error occurred"

    async def stop(self) -> bool:
        """Abort every running stream; text received so far is kept."""
        running = list(self._running)
        await asyncio.gather(*(self.tasks.cancel(_task_name(key)) for key in running))
        self._running.clear()
        for response in self.responses.values():
            if response.is_streaming:
                response.is_streaming = False
                response.is_complete = True
        if running:
            LOGGER.info(
                "comparison.stopped",
                extra={"event": "comparison.stopped", "models": running},
            )
        return bool(running)

    async def reset(self) -> None:
        await self.stop()
        self.responses = {}

    async def wait(self) -> dict[str, ModelResponse]:
        """Wait for every running stream to finish without cancelling any."""
        for key in list(self._running):
            await self.tasks.wait(_task_name(key))
        return self.responses
