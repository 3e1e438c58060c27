"""Conversation persistence gateway: contract plus in-memory and JSON-file stores."""

from __future__ import annotations

import copy
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import re
from typing import Any, Protocol

from .conversation import DEFAULT_TITLE, Conversation, ConversationContext
from .exceptions import ConversationNotFoundError, PersistenceError, PersistenceFormatError
from .message import Message

LOGGER = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class ConversationGateway(Protocol):
    """Operations the streaming engine consumes from conversation storage.

    Ownership checks are the caller's job; the gateway trusts its inputs.
    """

    async def create(
        self,
        user_id: str,
        title: str = DEFAULT_TITLE,
        context: ConversationContext | None = None,
    ) -> Conversation: ...

    async def find_by_id(self, conversation_id: str) -> Conversation | None: ...

    async def add_message(self, conversation_id: str, message: Message) -> None: ...

    async def update_title(self, conversation_id: str, title: str) -> None: ...

    async def record_tools_used(self, conversation_id: str, names: list[str]) -> None: ...

    async def create_branch(
        self,
        source_id: str,
        from_message_id: str,
        user_id: str,
        title: str,
        messages: list[Message],
        context: ConversationContext | None,
    ) -> Conversation: ...

    async def toggle_pin(self, conversation_id: str) -> bool: ...

    async def archive(self, conversation_id: str) -> None: ...

    async def restore(self, conversation_id: str) -> None: ...

    async def delete_messages_from(self, conversation_id: str, index: int) -> None: ...

    async def delete(self, conversation_id: str) -> bool: ...

    async def list_by_user(
        self, user_id: str, include_archived: bool = False
    ) -> list[Conversation]: ...


class _StoreGateway:
    """Gateway operations over a keyed conversation store.

    Subclasses provide ``_load``, ``_save``, ``_remove`` and ``_all``. Every
    read returns a deep copy so callers never alias stored message lists.
    """

    def _load(self, conversation_id: str) -> Conversation | None:
        raise NotImplementedError

    def _save(self, conversation: Conversation) -> None:
        raise NotImplementedError

    def _remove(self, conversation_id: str) -> bool:
        raise NotImplementedError

    def _all(self) -> list[Conversation]:
        raise NotImplementedError

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._load(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found.")
        return conversation

    def _touch(self, conversation: Conversation, *, new_message: bool = False) -> None:
        now = datetime.now(UTC)
        conversation.updated_at = now
        if new_message:
            conversation.last_message_at = now

    async def create(
        self,
        user_id: str,
        title: str = DEFAULT_TITLE,
        context: ConversationContext | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=Conversation.new_id(),
            user_id=user_id,
            title=title,
            context=copy.deepcopy(context),
        )
        self._save(conversation)
        LOGGER.info(
            "persistence.conversation.created",
            extra={"event": "persistence.conversation.created", "conversation_id": conversation.id},
        )
        return copy.deepcopy(conversation)

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        conversation = self._load(conversation_id)
        return copy.deepcopy(conversation) if conversation is not None else None

    async def add_message(self, conversation_id: str, message: Message) -> None:
        conversation = self._require(conversation_id)
        existing = conversation.index_of(message.id)
        if existing >= 0:
            conversation.messages[existing] = copy.deepcopy(message)
        else:
            conversation.messages.append(copy.deepcopy(message))
        self._touch(conversation, new_message=True)
        self._save(conversation)

    async def update_title(self, conversation_id: str, title: str) -> None:
        conversation = self._require(conversation_id)
        conversation.title = title
        self._touch(conversation)
        self._save(conversation)

    async def record_tools_used(self, conversation_id: str, names: list[str]) -> None:
        conversation = self._require(conversation_id)
        if conversation.context is None:
            conversation.context = ConversationContext()
        conversation.context.record_tools(names)
        self._save(conversation)

    async def create_branch(
        self,
        source_id: str,
        from_message_id: str,
        user_id: str,
        title: str,
        messages: list[Message],
        context: ConversationContext | None,
    ) -> Conversation:
        conversation = Conversation(
            id=Conversation.new_id(),
            user_id=user_id,
            title=title,
            messages=copy.deepcopy(messages),
            context=copy.deepcopy(context),
        )
        self._save(conversation)
        LOGGER.info(
            "persistence.conversation.branched",
            extra={
                "event": "persistence.conversation.branched",
                "source_id": source_id,
                "from_message_id": from_message_id,
                "conversation_id": conversation.id,
            },
        )
        return copy.deepcopy(conversation)

    async def toggle_pin(self, conversation_id: str) -> bool:
        conversation = self._require(conversation_id)
        conversation.is_pinned = not conversation.is_pinned
        self._touch(conversation)
        self._save(conversation)
        return conversation.is_pinned

    async def archive(self, conversation_id: str) -> None:
        await self._set_archived(conversation_id, True)

    async def restore(self, conversation_id: str) -> None:
        await self._set_archived(conversation_id, False)

    async def _set_archived(self, conversation_id: str, archived: bool) -> None:
        conversation = self._require(conversation_id)
        conversation.is_archived = archived
        self._touch(conversation)
        self._save(conversation)

    async def delete_messages_from(self, conversation_id: str, index: int) -> None:
        if index < 0:
            raise PersistenceError("Message index must not be negative.")
        conversation = self._require(conversation_id)
        del conversation.messages[index:]
        self._touch(conversation)
        self._save(conversation)

    async def delete(self, conversation_id: str) -> bool:
        return self._remove(conversation_id)

    async def list_by_user(
        self, user_id: str, include_archived: bool = False
    ) -> list[Conversation]:
        """Return the user's conversations, pinned first, most recent first."""
        rows = [
            conversation
            for conversation in self._all()
            if conversation.user_id == user_id
            and (include_archived or not conversation.is_archived)
        ]
        rows.sort(key=lambda item: item.last_message_at, reverse=True)
        rows.sort(key=lambda item: not item.is_pinned)
        return copy.deepcopy(rows)


class InMemoryConversationGateway(_StoreGateway):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def _load(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def _save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation

    def _remove(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None

    def _all(self) -> list[Conversation]:
        return list(self._conversations.values())


class JsonConversationGateway(_StoreGateway):
    """One private JSON document per conversation under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            pass

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.directory, 0o700)

    def _path_for(self, conversation_id: str) -> Path | None:
        if not _SAFE_ID.match(conversation_id):
            return None
        return self.directory / f"{conversation_id}.json"

    def _read(self, path: Path) -> Conversation:
        try:
            payload: Any = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceFormatError(f"Unable to read {path.name}: {exc}") from exc
        if not isinstance(payload, dict) or "_id" not in payload or "userId" not in payload:
            raise PersistenceFormatError(f"Conversation payload in {path.name} is invalid.")
        return Conversation.from_dict(payload)

    def _load(self, conversation_id: str) -> Conversation | None:
        path = self._path_for(conversation_id)
        if path is None or not path.exists():
            return None
        return self._read(path)

    def _save(self, conversation: Conversation) -> None:
        path = self._path_for(conversation.id)
        if path is None:
            raise PersistenceError(f"Invalid conversation id {conversation.id!r}.")
        self._ensure_directory()
        try:
            path.write_text(
                json.dumps(conversation.to_dict(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            raise PersistenceError(f"Unable to write {path.name}: {exc}") from exc
        self._enforce_permissions(path)

    def _remove(self, conversation_id: str) -> bool:
        path = self._path_for(conversation_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True

    def _all(self) -> list[Conversation]:
        if not self.directory.exists():
            return []
        rows: list[Conversation] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                rows.append(self._read(path))
            except PersistenceFormatError as exc:
                LOGGER.warning(
                    "persistence.conversation.skipped",
                    extra={
                        "event": "persistence.conversation.skipped",
                        "path": str(path),
                        "reason": str(exc),
                    },
                )
        return rows
