"""Conversation mutations that rewrite history around the streaming session."""

from __future__ import annotations

import copy
import logging

from .attachments import AttachmentManager
from .conversation import Conversation, WorkingConversation, branch_title
from .events import (
    CONVERSATION_BRANCHED,
    RATE_LIMIT_NOTIFICATION,
    SESSION_FINISHED,
    Event,
    EventBus,
)
from .exceptions import ChatValidationError, ConversationNotFoundError, ErrorKind
from .message import Message, Role, get_text
from .persistence import ConversationGateway
from .selector import ModelSelector
from .session import SendOptions, StreamingSession, StreamingSessionController

LOGGER = logging.getLogger(__name__)


class RateLimitNotifier:
    """Fire one notification per newly produced rate-limit error message.

    Error messages present when the conversation was loaded are seeded into
    the seen-set and never notify.
    """

    def __init__(self, bus: EventBus, seen: set[str] | None = None) -> None:
        self.bus = bus
        self._seen: set[str] = set(seen or ())

    def seen(self, message_id: str) -> bool:
        return message_id in self._seen

    async def observe(self, message_id: str, kind: ErrorKind | None) -> bool:
        if kind is not ErrorKind.RATE_LIMIT or message_id in self._seen:
            return False
        self._seen.add(message_id)
        await self.bus.publish(
            RATE_LIMIT_NOTIFICATION, {"message_id": message_id}, source="mutations"
        )
        return True


class ConversationMutationService:
    """Send, edit, regenerate, trim and branch one working conversation.

    Every history-rewriting operation checks the controller first; the
    working list is never mutated while a session is in flight.
    """

    def __init__(
        self,
        controller: StreamingSessionController,
        *,
        gateway: ConversationGateway,
        user_id: str,
        bus: EventBus,
        selector: ModelSelector | None = None,
        attachments: AttachmentManager | None = None,
        require_model_selection: bool = False,
    ) -> None:
        self.controller = controller
        self.gateway = gateway
        self.user_id = user_id
        self.bus = bus
        self.selector = selector
        self.attachments = attachments
        self.require_model_selection = require_model_selection
        self.notifier = RateLimitNotifier(
            bus, seen=controller.conversation.error_message_ids()
        )
        self.bus.subscribe(SESSION_FINISHED, self._on_session_finished)

    @property
    def conversation(self) -> WorkingConversation:
        return self.controller.conversation

    def close(self) -> None:
        self.bus.unsubscribe(SESSION_FINISHED, self._on_session_finished)

    async def _on_session_finished(self, event: Event) -> None:
        if event.data.get("conversation_id") != self.conversation.conversation_id:
            return
        raw_kind = event.data.get("error_kind")
        kind = ErrorKind(raw_kind) if raw_kind else None
        await self.notifier.observe(str(event.data.get("message_id")), kind)

    def _options(self) -> SendOptions:
        selection = self.selector.selection if self.selector is not None else None
        if selection is None:
            return SendOptions()
        return SendOptions(
            model_id=selection.model_id,
            provider=selection.provider or None,
            enabled_provider_tools=list(selection.enabled_provider_tools),
        )

    def _check_ready(self) -> None:
        if self.controller.is_active:
            raise ChatValidationError("Wait for the current response to finish.")
        if self.require_model_selection and (
            self.selector is None or self.selector.selection is None
        ):
            raise ChatValidationError("Select a model before sending a message.")

    async def _send_with_staged(
        self, content: str, *, append_user: bool = True
    ) -> StreamingSession:
        """Send with the staged files; they are released only once the send is accepted."""
        if self.attachments is None:
            return await self.controller.send(
                content, (), self._options(), append_user=append_user
            )
        files = self.attachments.take_for_send()
        try:
            session = await self.controller.send(
                content, files, self._options(), append_user=append_user
            )
        except ChatValidationError:
            self.attachments.restore_unsent()
            raise
        self.attachments.release_sent()
        return session

    async def send(self, content: str) -> StreamingSession:
        """Append the user message optimistically and start streaming."""
        text = content.strip()
        if not text and (self.attachments is None or not len(self.attachments)):
            raise ChatValidationError("Message content must not be empty.")
        self._check_ready()
        return await self._send_with_staged(text)

    async def edit(self, index: int, content: str) -> StreamingSession:
        """Drop the user message at ``index`` and everything after it, then resend."""
        messages = self.conversation.messages
        if not 0 <= index < len(messages):
            raise ChatValidationError(f"No message at index {index}.")
        if messages[index].role is not Role.USER:
            raise ChatValidationError("Only user messages can be edited.")
        if not content.strip():
            raise ChatValidationError("Message content must not be empty.")
        self._check_ready()
        await self.delete_from(index)
        return await self.send(content)

    async def regenerate(self) -> bool:
        """Replace the last assistant reply using the current model selection.

        Returns False without touching anything when the last message is not an
        assistant reply or a session is active.
        """
        last = self.conversation.last
        if self.controller.is_active or last is None or last.role is not Role.ASSISTANT:
            LOGGER.info(
                "mutations.regenerate.ignored",
                extra={"event": "mutations.regenerate.ignored"},
            )
            return False
        prompt = self._previous_user_message(len(self.conversation.messages) - 1)
        if prompt is None:
            return False
        if self.require_model_selection and (
            self.selector is None or self.selector.selection is None
        ):
            raise ChatValidationError("Select a model before sending a message.")
        await self.delete_from(len(self.conversation.messages) - 1)
        await self._send_with_staged(get_text(prompt), append_user=False)
        return True

    def _previous_user_message(self, before: int) -> Message | None:
        for message in reversed(self.conversation.messages[:before]):
            if message.role is Role.USER:
                return message
        return None

    async def delete_from(self, index: int) -> list[Message]:
        """Drop every message at or after ``index`` from the working copy and storage."""
        if self.controller.is_active:
            raise ChatValidationError("Wait for the current response to finish.")
        if index < 0:
            raise ChatValidationError("Message index must not be negative.")
        messages = self.conversation.messages
        if index >= len(messages):
            return []
        persisted_index = sum(
            1 for message in messages[:index] if self.conversation.is_confirmed(message.id)
        )
        had_persisted = any(
            self.conversation.is_confirmed(message.id) for message in messages[index:]
        )
        removed = self.conversation.truncate(index)
        conversation_id = self.conversation.conversation_id
        if conversation_id is not None and had_persisted:
            await self.gateway.delete_messages_from(conversation_id, persisted_index)
        LOGGER.info(
            "mutations.delete_from",
            extra={
                "event": "mutations.delete_from",
                "conversation_id": conversation_id,
                "index": index,
                "removed": len(removed),
            },
        )
        return removed

    async def branch(
        self, message_id: str, conversation_id: str | None = None
    ) -> Conversation:
        """Create a new conversation from the prefix ending at ``message_id``."""
        source_id = conversation_id or self.conversation.conversation_id
        source = await self.gateway.find_by_id(source_id) if source_id else None
        if source is None or source.user_id != self.user_id:
            raise ConversationNotFoundError("Conversation not found.")
        position = source.index_of(message_id)
        if position < 0:
            raise ConversationNotFoundError(
                f"Message {message_id} not found in conversation {source.id}."
            )
        branch = await self.gateway.create_branch(
            source.id,
            message_id,
            self.user_id,
            branch_title(source.title),
            copy.deepcopy(source.messages[: position + 1]),
            source.context,
        )
        await self.bus.publish(
            CONVERSATION_BRANCHED,
            {
                "source_id": source.id,
                "conversation_id": branch.id,
                "message_id": message_id,
            },
            source="mutations",
        )
        return branch
