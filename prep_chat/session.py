"""Streaming session controller: one cancellable request/response per conversation.

The controller folds the transport's chunk sequence into the in-progress
assistant message. Failures never propagate out of the stream task; they
become a single classified error part on that message, next to whatever
partial content was already written.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from .chunks import (
    DoneChunk,
    ErrorChunk,
    FileChunk,
    MetadataChunk,
    ReasoningDeltaChunk,
    StartChunk,
    TextDeltaChunk,
    ToolErrorChunk,
    ToolInputCompleteChunk,
    ToolInputDeltaChunk,
    ToolInputStartChunk,
    ToolOutputChunk,
    parse_chunk,
)
from .conversation import DEFAULT_TITLE, WorkingConversation
from .events import (
    CONVERSATION_CREATED,
    MESSAGE_UPDATED,
    SESSION_FINISHED,
    SESSION_PHASE,
    EventBus,
)
from .exceptions import (
    ERROR_CODES,
    STREAM_ERROR_CODE,
    ChatValidationError,
    ErrorKind,
    classify_error,
)
from .message import (
    ErrorDetails,
    ErrorPart,
    FilePart,
    Message,
    MessageMetadata,
    PartState,
    ReasoningPart,
    Role,
    TextPart,
    finalize_parts,
    get_text,
    is_error,
)
from .persistence import ConversationGateway
from .state import StateManager, StreamPhase
from .task_manager import TaskManager
from .title import TitleSynthesizer, provisional_title
from .tool_tracker import ToolInvocationTracker
from .transport import ChatRequest, ChatTransport

LOGGER = logging.getLogger(__name__)

STREAM_TASK_NAME = "active_stream"
INTERRUPTED_MESSAGE = "Connection closed before the response completed."
RATE_LIMIT_MESSAGE = "Rate limit reached. Please wait a moment before trying again."


@dataclass
class SendOptions:
    """Model configuration captured at submit time."""

    model_id: str | None = None
    provider: str | None = None
    enabled_provider_tools: list[str] = field(default_factory=list)


@dataclass
class StreamingSession:
    """Transient state of one in-flight exchange."""

    message: Message
    conversation_id: str | None
    user_message: Message | None = None
    phase: StreamPhase = StreamPhase.SENDING
    cancel_requested: bool = False
    finishing: bool = False
    error_kind: ErrorKind | None = None
    is_new_conversation: bool = False
    started_at: float = field(default_factory=time.monotonic)
    first_chunk_at: float | None = None
    finished_at: float | None = None
    tracker: ToolInvocationTracker = field(init=False)

    def __post_init__(self) -> None:
        self.tracker = ToolInvocationTracker(self.message)


def _append_delta(
    message: Message, part_type: type[TextPart] | type[ReasoningPart], delta: str
) -> None:
    last = message.parts[-1] if message.parts else None
    if isinstance(last, part_type) and last.state is PartState.STREAMING:
        last.content += delta
    else:
        message.append_part(part_type(content=delta, state=PartState.STREAMING))


class StreamingSessionController:
    """Own the single live streaming session for one working conversation."""

    def __init__(
        self,
        conversation: WorkingConversation,
        *,
        user_id: str,
        gateway: ConversationGateway,
        transport: ChatTransport,
        bus: EventBus | None = None,
        tasks: TaskManager | None = None,
        titles: TitleSynthesizer | None = None,
    ) -> None:
        self.conversation = conversation
        self.user_id = user_id
        self.gateway = gateway
        self.transport = transport
        self.bus = bus or EventBus()
        self.tasks = tasks or TaskManager()
        self.titles = titles
        self._state = StateManager()
        self._session: StreamingSession | None = None

    @property
    def phase(self) -> StreamPhase:
        return self._state.phase

    @property
    def is_active(self) -> bool:
        return self._state.phase.is_active

    @property
    def session(self) -> StreamingSession | None:
        return self._session

    async def send(
        self,
        content: str,
        files: Sequence[FilePart] = (),
        options: SendOptions | None = None,
        *,
        append_user: bool = True,
    ) -> StreamingSession:
        """Start streaming a reply to ``content``.

        The user message is appended to the working copy before this returns;
        the reply streams in a background task. Raises ``ChatValidationError``
        when an exchange is already in flight.
        """
        if not await self._state.begin_send():
            raise ChatValidationError(
                "A response is already being generated for this conversation."
            )
        options = options or SendOptions()
        user_message: Message | None = None
        if append_user:
            user_message = Message.user(content, files)
            self.conversation.append(user_message)

        assistant = Message.assistant()
        assistant.metadata = MessageMetadata(model=options.model_id or "")
        session = StreamingSession(
            message=assistant,
            conversation_id=self.conversation.conversation_id,
            user_message=user_message,
            is_new_conversation=self.conversation.conversation_id is None,
        )
        self._session = session
        await self._publish_phase(session)

        request = ChatRequest(
            content=content,
            conversation_id=self.conversation.conversation_id,
            files=list(files),
            model_id=options.model_id,
            provider=options.provider,
            enabled_provider_tools=list(options.enabled_provider_tools),
            context=self.conversation.context,
        )
        self.tasks.spawn(self._run(session, request), name=STREAM_TASK_NAME)
        return session

    async def stop(self) -> bool:
        """Cancel the in-flight exchange, keeping everything streamed so far.

        Once the exchange has reached its outcome and is only storing the
        result, nothing is cancelled: the call waits for that to finish and
        returns False.
        """
        session = self._session
        if session is None or not self.is_active:
            return False
        if session.finishing:
            await self.tasks.wait(STREAM_TASK_NAME)
            return False
        session.cancel_requested = True
        LOGGER.info(
            "session.stop.requested",
            extra={
                "event": "session.stop.requested",
                "conversation_id": session.conversation_id,
                "message_id": session.message.id,
            },
        )
        await self.tasks.cancel(STREAM_TASK_NAME)
        if self.is_active and not session.finishing:
            # Cancelled before the stream task started running.
            session.finishing = True
            await self._finish(session, StreamPhase.CANCELLED)
        return True

    async def wait(self) -> StreamingSession | None:
        """Wait for the current exchange to finish and return it."""
        await self.tasks.wait(STREAM_TASK_NAME)
        return self._session

    async def _run(self, session: StreamingSession, request: ChatRequest) -> None:
        stream = self.transport.stream(request)
        outcome: StreamPhase | None = None
        try:
            outcome = await self._consume(session, stream)
            # From here on the outcome stands; stop() no longer cancels.
            session.finishing = not session.cancel_requested
        except asyncio.CancelledError:
            session.cancel_requested = True
        except Exception as exc:
            kind = classify_error(exc)
            LOGGER.warning(
                "session.stream.failed",
                extra={
                    "event": "session.stream.failed",
                    "conversation_id": session.conversation_id,
                    "error_kind": kind.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            self._record_error(session, kind, str(exc))
            outcome = StreamPhase.ERROR
            session.finishing = not session.cancel_requested
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        session.finishing = True
        if session.cancel_requested:
            outcome = StreamPhase.CANCELLED
        elif outcome is None:
            self._record_error(session, ErrorKind.NETWORK, INTERRUPTED_MESSAGE)
            outcome = StreamPhase.ERROR
        await self._finish(session, outcome)

    async def _consume(
        self, session: StreamingSession, stream: AsyncIterator[dict[str, Any]]
    ) -> StreamPhase | None:
        async for raw in stream:
            if session.cancel_requested:
                return None
            chunk = parse_chunk(raw)
            if chunk is None:
                continue
            if session.phase is StreamPhase.SENDING:
                await self._begin_streaming(session, chunk)
            outcome = self._apply(session, chunk)
            await self.bus.publish(
                MESSAGE_UPDATED,
                {
                    "conversation_id": session.conversation_id,
                    "message_id": session.message.id,
                    "chunk_type": chunk.type,
                    "delta": getattr(chunk, "delta", None),
                },
                source="session",
            )
            if outcome is not None:
                return outcome
        return None

    async def _begin_streaming(self, session: StreamingSession, chunk: Any) -> None:
        """Handle the first chunk: enter streaming and make sure the conversation exists."""
        session.first_chunk_at = time.monotonic()
        await self._set_phase(session, StreamPhase.STREAMING)
        self._attach(session)

        if isinstance(chunk, StartChunk) and chunk.conversation_id:
            if self.conversation.conversation_id is None:
                self.conversation.conversation_id = chunk.conversation_id
                session.is_new_conversation = True
                await self._announce_created(chunk.conversation_id)
        elif self.conversation.conversation_id is None:
            title = self._opening_title()
            created = await self.gateway.create(self.user_id, title, self.conversation.context)
            self.conversation.conversation_id = created.id
            self.conversation.title = created.title
            await self._announce_created(created.id)
        session.conversation_id = self.conversation.conversation_id

        await self._persist(session, include_reply=False)

    def _first_user_message(self) -> Message | None:
        return next((m for m in self.conversation.messages if m.role is Role.USER), None)

    def _opening_title(self) -> str:
        first = self._first_user_message()
        text = get_text(first) if first is not None else ""
        if self.titles is not None:
            title = self.titles.provisional_title(text)
        else:
            title = provisional_title(text)
        return title or DEFAULT_TITLE

    async def _announce_created(self, conversation_id: str) -> None:
        LOGGER.info(
            "session.conversation.created",
            extra={"event": "session.conversation.created", "conversation_id": conversation_id},
        )
        await self.bus.publish(
            CONVERSATION_CREATED, {"conversation_id": conversation_id}, source="session"
        )

    def _apply(self, session: StreamingSession, chunk: Any) -> StreamPhase | None:
        """Apply one chunk to the in-progress message; return a terminal phase or None."""
        message = session.message
        tracker = session.tracker
        if isinstance(chunk, TextDeltaChunk):
            _append_delta(message, TextPart, chunk.delta)
        elif isinstance(chunk, ReasoningDeltaChunk):
            _append_delta(message, ReasoningPart, chunk.delta)
        elif isinstance(chunk, ToolInputStartChunk):
            tracker.start(chunk.tool_call_id, chunk.tool_name)
        elif isinstance(chunk, ToolInputDeltaChunk):
            tracker.merge_input(chunk.tool_call_id, chunk.input_delta, chunk.tool_name)
        elif isinstance(chunk, ToolInputCompleteChunk):
            tracker.complete_input(chunk.tool_call_id, chunk.input, chunk.tool_name)
        elif isinstance(chunk, ToolOutputChunk):
            tracker.set_output(chunk.tool_call_id, chunk.output, chunk.tool_name)
        elif isinstance(chunk, ToolErrorChunk):
            tracker.set_error(chunk.tool_call_id, chunk.error_text, chunk.tool_name)
        elif isinstance(chunk, FileChunk):
            message.append_part(
                FilePart(media_type=chunk.media_type, url=chunk.url, filename=chunk.filename)
            )
        elif isinstance(chunk, MetadataChunk):
            if message.metadata is None:
                message.metadata = MessageMetadata()
            message.metadata.merge(chunk.values())
        elif isinstance(chunk, StartChunk):
            if chunk.model_id and message.metadata is not None and not message.metadata.model:
                message.metadata.model = chunk.model_id
        elif isinstance(chunk, ErrorChunk):
            kind = classify_error(chunk.error_text, chunk.code)
            self._record_error(session, kind, chunk.error_text)
            return StreamPhase.ERROR
        elif isinstance(chunk, DoneChunk):
            return StreamPhase.COMPLETE
        return None

    def _record_error(self, session: StreamingSession, kind: ErrorKind, text: str) -> None:
        if is_error(session.message):
            return
        session.error_kind = kind
        if kind is ErrorKind.RATE_LIMIT:
            text = RATE_LIMIT_MESSAGE
        details = ErrorDetails(
            code=ERROR_CODES.get(kind, STREAM_ERROR_CODE), is_retryable=True
        )
        session.message.append_part(
            ErrorPart(message=text or "An error occurred", details=details)
        )

    def _attach(self, session: StreamingSession) -> None:
        if not any(m is session.message for m in self.conversation.messages):
            self.conversation.append(session.message)

    def _fill_metadata(self, session: StreamingSession) -> None:
        metadata = session.message.metadata
        if metadata is None or session.finished_at is None:
            return
        if metadata.latency_ms is None:
            metadata.latency_ms = int((session.finished_at - session.started_at) * 1000)
        if metadata.ttft is None and session.first_chunk_at is not None:
            metadata.ttft = int((session.first_chunk_at - session.started_at) * 1000)
        if (
            metadata.total_tokens is None
            and metadata.tokens_in is not None
            and metadata.tokens_out is not None
        ):
            metadata.total_tokens = metadata.tokens_in + metadata.tokens_out
        if metadata.throughput is None and metadata.tokens_out and metadata.latency_ms:
            metadata.throughput = int(metadata.tokens_out / (metadata.latency_ms / 1000))

    async def _finish(self, session: StreamingSession, outcome: StreamPhase) -> None:
        message = session.message
        finalize_parts(message)
        session.finished_at = time.monotonic()
        self._fill_metadata(session)

        if outcome is not StreamPhase.CANCELLED or message.parts:
            self._attach(session)
        else:
            # Stopped before anything arrived: the empty reply is dropped.
            self.conversation.remove(message.id)
        await self._persist(session, include_reply=True)

        if outcome is StreamPhase.COMPLETE:
            await self._record_tools(session)
            first = self._first_user_message()
            if first is not None and self.titles is not None and session.is_new_conversation:
                self.titles.start(self.conversation, get_text(first))

        await self._set_phase(session, outcome)
        LOGGER.info(
            "session.finished",
            extra={
                "event": "session.finished",
                "conversation_id": session.conversation_id,
                "message_id": message.id,
                "phase": outcome.value,
                "error_kind": session.error_kind.value if session.error_kind else None,
            },
        )
        await self.bus.publish(
            SESSION_FINISHED,
            {
                "conversation_id": session.conversation_id,
                "message_id": message.id,
                "phase": outcome.value,
                "error_kind": session.error_kind.value if session.error_kind else None,
            },
            source="session",
        )

    async def _persist(self, session: StreamingSession, *, include_reply: bool) -> None:
        """Store every unconfirmed working message in list order; failures are logged.

        Messages left unsaved by an earlier exchange (a failed first send on a
        new chat, for one) are stored ahead of this exchange's messages, so the
        stored history matches the working copy. The in-progress reply is only
        included once it is final.
        """
        conversation_id = session.conversation_id
        if conversation_id is None:
            return
        pending = [
            m
            for m in self.conversation.pending()
            if include_reply or m is not session.message
        ]
        try:
            for message in pending:
                await self.gateway.add_message(conversation_id, message)
                self.conversation.mark_confirmed(message.id)
        except Exception as exc:
            LOGGER.warning(
                "session.persist.failed",
                extra={
                    "event": "session.persist.failed",
                    "conversation_id": conversation_id,
                    "message_id": session.message.id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    async def _record_tools(self, session: StreamingSession) -> None:
        names = session.tracker.tool_names()
        if not names or session.conversation_id is None:
            return
        if self.conversation.context is not None:
            self.conversation.context.record_tools(names)
        try:
            await self.gateway.record_tools_used(session.conversation_id, names)
        except Exception as exc:
            LOGGER.warning(
                "session.tools.record_failed",
                extra={
                    "event": "session.tools.record_failed",
                    "conversation_id": session.conversation_id,
                    "error": str(exc),
                },
            )

    async def _set_phase(self, session: StreamingSession, phase: StreamPhase) -> None:
        if await self._state.transition_to(phase):
            session.phase = phase
            await self._publish_phase(session)

    async def _publish_phase(self, session: StreamingSession) -> None:
        await self.bus.publish(
            SESSION_PHASE,
            {
                "conversation_id": session.conversation_id,
                "message_id": session.message.id,
                "phase": self._state.phase.value,
            },
            source="session",
        )
