"""Persisted conversation records and the in-memory working copy used for rendering."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .message import Message, Role, is_error, message_from_dict, message_to_dict

DEFAULT_TITLE = "New Chat"
BRANCH_SUFFIX = " (Branch)"


@dataclass
class ConversationContext:
    """Optional link between a conversation and the rest of the product."""

    interview_id: str | None = None
    learning_path_id: str | None = None
    tools_used: list[str] = field(default_factory=list)

    def record_tools(self, names: list[str]) -> None:
        for name in names:
            if name and name not in self.tools_used:
                self.tools_used.append(name)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"toolsUsed": list(self.tools_used)}
        if self.interview_id:
            payload["interviewId"] = self.interview_id
        if self.learning_path_id:
            payload["learningPathId"] = self.learning_path_id
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> ConversationContext | None:
        if not isinstance(payload, dict):
            return None
        tools = payload.get("toolsUsed")
        return cls(
            interview_id=payload.get("interviewId"),
            learning_path_id=payload.get("learningPathId"),
            tools_used=[str(name) for name in tools] if isinstance(tools, list) else [],
        )


@dataclass
class Conversation:
    """A conversation as owned by the persistence layer."""

    id: str
    user_id: str
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    context: ConversationContext | None = None
    is_pinned: bool = False
    is_archived: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_message_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def new_id() -> str:
        return uuid4().hex

    def index_of(self, message_id: str) -> int:
        """Return the position of ``message_id`` or -1 when absent."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "_id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "messages": [message_to_dict(message) for message in self.messages],
            "isPinned": self.is_pinned,
            "isArchived": self.is_archived,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "lastMessageAt": self.last_message_at.isoformat(),
        }
        if self.context is not None:
            payload["context"] = self.context.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Conversation:
        raw_messages = payload.get("messages")
        messages = [
            message_from_dict(item)
            for item in (raw_messages if isinstance(raw_messages, list) else [])
            if isinstance(item, dict)
        ]
        conversation = cls(
            id=str(payload["_id"]),
            user_id=str(payload["userId"]),
            title=str(payload.get("title") or DEFAULT_TITLE),
            messages=messages,
            context=ConversationContext.from_dict(payload.get("context")),
            is_pinned=bool(payload.get("isPinned", False)),
            is_archived=bool(payload.get("isArchived", False)),
        )
        for attr, key in (
            ("created_at", "createdAt"),
            ("updated_at", "updatedAt"),
            ("last_message_at", "lastMessageAt"),
        ):
            raw = payload.get(key)
            if isinstance(raw, str):
                try:
                    setattr(conversation, attr, datetime.fromisoformat(raw))
                except ValueError:
                    pass
        return conversation


def branch_title(source_title: str) -> str:
    return f"{source_title}{BRANCH_SUFFIX}"


class WorkingConversation:
    """Render-authoritative copy of a conversation's messages.

    The working copy runs ahead of persistence: messages appended locally
    stay *pending* until ``mark_confirmed`` records that the gateway stored
    them. ``reconcile`` folds a persisted snapshot back in without dropping
    pending local messages. The working list never aliases the persisted
    ``Conversation.messages`` list.
    """

    def __init__(
        self,
        conversation_id: str | None = None,
        title: str = DEFAULT_TITLE,
        messages: list[Message] | None = None,
        context: ConversationContext | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.title = title
        self.context = context
        self.messages: list[Message] = copy.deepcopy(messages or [])
        self._confirmed: set[str] = {message.id for message in self.messages}

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> WorkingConversation:
        return cls(
            conversation_id=conversation.id,
            title=conversation.title,
            messages=conversation.messages,
            context=copy.deepcopy(conversation.context),
        )

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def truncate(self, index: int) -> list[Message]:
        """Drop messages at or after ``index`` and return them."""
        removed = self.messages[index:]
        del self.messages[index:]
        for message in removed:
            self._confirmed.discard(message.id)
        return removed

    def remove(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        self._confirmed.discard(message_id)
        return len(self.messages) != before

    def mark_confirmed(self, message_id: str) -> None:
        self._confirmed.add(message_id)

    def is_confirmed(self, message_id: str) -> bool:
        return message_id in self._confirmed

    def pending(self) -> list[Message]:
        return [m for m in self.messages if m.id not in self._confirmed]

    def error_message_ids(self) -> set[str]:
        return {m.id for m in self.messages if m.role is Role.ASSISTANT and is_error(m)}

    def reconcile(self, conversation: Conversation) -> None:
        """Apply a persisted snapshot, keeping unconfirmed local messages last."""
        persisted = copy.deepcopy(conversation.messages)
        persisted_ids = {message.id for message in persisted}
        pending = [m for m in self.pending() if m.id not in persisted_ids]
        self.conversation_id = conversation.id
        self.title = conversation.title
        self.context = copy.deepcopy(conversation.context)
        self.messages = persisted + pending
        self._confirmed = persisted_ids
