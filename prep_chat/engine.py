"""Engine facade wiring the conversation, session, mutations, selector and titles."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .attachments import AttachmentFile, AttachmentManager, FileService, LocalFileService
from .conversation import Conversation, WorkingConversation
from .events import ATTACHMENTS_WARNING, EventBus
from .exceptions import ConversationNotFoundError
from .multi_model import ComparisonTarget, ModelResponse, MultiModelComparison
from .mutations import ConversationMutationService
from .persistence import (
    ConversationGateway,
    InMemoryConversationGateway,
    JsonConversationGateway,
)
from .selector import ModelCatalog, ModelSelection, ModelSelector, PreferenceStore, fetch_catalog
from .session import StreamingSession, StreamingSessionController
from .state import StreamPhase
from .task_manager import TaskManager
from .title import OllamaTitleGenerator, TitleGenerator, TitleSynthesizer
from .transport import ChatTransport, HttpChatTransport

LOGGER = logging.getLogger(__name__)


class ChatEngine:
    """Single entry point a front end drives; events flow out through ``bus``.

    The engine holds exactly one active working conversation. Switching to
    another conversation (or starting a new chat) stops the live session and
    releases staged attachment previews before the switch.
    """

    def __init__(
        self,
        *,
        user_id: str,
        gateway: ConversationGateway,
        transport: ChatTransport,
        compare_transport: ChatTransport | None = None,
        file_service: FileService | None = None,
        title_generator: TitleGenerator | None = None,
        preferences: PreferenceStore | None = None,
        catalog: ModelCatalog | None = None,
        bus: EventBus | None = None,
        require_model_selection: bool = False,
        provisional_title_length: int = 40,
        max_title_length: int = 60,
        catalog_endpoint: str = "",
    ) -> None:
        self.user_id = user_id
        self.gateway = gateway
        self.transport = transport
        self.bus = bus or EventBus()
        self.tasks = TaskManager()
        self.require_model_selection = require_model_selection
        self.catalog_endpoint = catalog_endpoint
        self.attachments = AttachmentManager(file_service or LocalFileService())
        self.selector = ModelSelector(
            user_id,
            preferences=preferences,
            attachments=self.attachments,
            catalog=catalog,
        )
        self.titles = TitleSynthesizer(
            gateway,
            title_generator,
            bus=self.bus,
            tasks=self.tasks,
            provisional_length=provisional_title_length,
            max_length=max_title_length,
        )
        self.comparison = MultiModelComparison(
            compare_transport or transport, bus=self.bus, tasks=self.tasks
        )
        self.controller, self.mutations = self._bind(WorkingConversation())

    @classmethod
    def from_config(
        cls,
        config: dict[str, dict[str, Any]],
        *,
        transport: ChatTransport | None = None,
        gateway: ConversationGateway | None = None,
    ) -> ChatEngine:
        """Build an engine from a validated ``load_config`` result."""
        transport_cfg = config["transport"]
        persistence_cfg = config["persistence"]
        title_cfg = config["title"]
        attachments_cfg = config["attachments"]

        if gateway is None:
            if persistence_cfg["backend"] == "json":
                gateway = JsonConversationGateway(persistence_cfg["directory"])
            else:
                gateway = InMemoryConversationGateway()
        compare_transport = None
        if transport is None:
            timeout = float(transport_cfg["timeout_seconds"])
            transport = HttpChatTransport(
                transport_cfg["endpoint"],
                timeout_seconds=timeout,
                headers=transport_cfg["headers"],
            )
            compare_transport = HttpChatTransport(
                transport_cfg["compare_endpoint"],
                timeout_seconds=timeout,
                headers=transport_cfg["headers"],
            )
        title_generator = None
        if title_cfg["enabled"]:
            title_generator = OllamaTitleGenerator(
                title_cfg["host"], title_cfg["model"], timeout=title_cfg["timeout_seconds"]
            )
        return cls(
            user_id=config["app"]["user_id"],
            gateway=gateway,
            transport=transport,
            compare_transport=compare_transport,
            file_service=LocalFileService(
                max_file_bytes=attachments_cfg["max_file_bytes"],
                allowed_media_types=tuple(attachments_cfg["allowed_media_types"]),
            ),
            title_generator=title_generator,
            preferences=PreferenceStore(Path(config["preferences"]["path"])),
            require_model_selection=config["app"]["require_model_selection"],
            provisional_title_length=title_cfg["provisional_length"],
            max_title_length=title_cfg["max_length"],
            catalog_endpoint=transport_cfg["catalog_endpoint"],
        )

    def _bind(
        self, conversation: WorkingConversation
    ) -> tuple[StreamingSessionController, ConversationMutationService]:
        controller = StreamingSessionController(
            conversation,
            user_id=self.user_id,
            gateway=self.gateway,
            transport=self.transport,
            bus=self.bus,
            tasks=self.tasks,
            titles=self.titles,
        )
        mutations = ConversationMutationService(
            controller,
            gateway=self.gateway,
            user_id=self.user_id,
            bus=self.bus,
            selector=self.selector,
            attachments=self.attachments,
            require_model_selection=self.require_model_selection,
        )
        return controller, mutations

    @property
    def conversation(self) -> WorkingConversation:
        return self.controller.conversation

    @property
    def phase(self) -> StreamPhase:
        return self.controller.phase

    # -- conversation switching ------------------------------------------

    async def _switch(self, conversation: WorkingConversation) -> None:
        await self.controller.stop()
        await self.comparison.reset()
        self.attachments.discard_all()
        self.mutations.close()
        self.controller, self.mutations = self._bind(conversation)
        LOGGER.info(
            "engine.conversation.switched",
            extra={
                "event": "engine.conversation.switched",
                "conversation_id": conversation.conversation_id,
            },
        )

    async def new_chat(self) -> WorkingConversation:
        """Clear the active conversation; nothing is created until the first send."""
        await self._switch(WorkingConversation())
        return self.conversation

    async def _owned(self, conversation_id: str) -> Conversation:
        conversation = await self.gateway.find_by_id(conversation_id)
        if conversation is None or conversation.user_id != self.user_id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found.")
        return conversation

    async def open_conversation(self, conversation_id: str) -> WorkingConversation:
        conversation = await self._owned(conversation_id)
        await self._switch(WorkingConversation.from_conversation(conversation))
        return self.conversation

    async def refresh(self) -> WorkingConversation:
        """Fold the persisted snapshot back into the working copy."""
        conversation_id = self.conversation.conversation_id
        if conversation_id is not None and not self.controller.is_active:
            self.conversation.reconcile(await self._owned(conversation_id))
        return self.conversation

    async def list_conversations(self, include_archived: bool = False) -> list[Conversation]:
        return await self.gateway.list_by_user(self.user_id, include_archived)

    async def toggle_pin(self, conversation_id: str) -> bool:
        await self._owned(conversation_id)
        return await self.gateway.toggle_pin(conversation_id)

    async def archive(self, conversation_id: str) -> None:
        await self._owned(conversation_id)
        await self.gateway.archive(conversation_id)

    async def restore(self, conversation_id: str) -> None:
        await self._owned(conversation_id)
        await self.gateway.restore(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self._owned(conversation_id)
        if self.conversation.conversation_id == conversation_id:
            await self.new_chat()
        return await self.gateway.delete(conversation_id)

    # -- messaging ----------------------------------------------------------

    async def send(self, content: str) -> StreamingSession:
        return await self.mutations.send(content)

    async def edit(self, index: int, content: str) -> StreamingSession:
        return await self.mutations.edit(index, content)

    async def regenerate(self) -> bool:
        return await self.mutations.regenerate()

    async def delete_from(self, index: int) -> int:
        return len(await self.mutations.delete_from(index))

    async def branch(self, message_id: str) -> Conversation:
        return await self.mutations.branch(message_id)

    async def stop(self) -> bool:
        return await self.controller.stop()

    async def wait(self) -> StreamingSession | None:
        return await self.controller.wait()

    # -- model comparison -----------------------------------------------------

    async def compare(
        self, content: str, targets: list[ComparisonTarget]
    ) -> dict[str, ModelResponse]:
        """Stream ``content`` to several models side by side, outside the conversation."""
        self.comparison.conversation_id = self.conversation.conversation_id
        return await self.comparison.send(content, targets)

    async def stop_comparison(self) -> bool:
        return await self.comparison.stop()

    async def reset_comparison(self) -> None:
        await self.comparison.reset()

    # -- attachments and model selection -------------------------------------

    async def stage_files(self, files: list[AttachmentFile]) -> str | None:
        warning = self.attachments.stage(files)
        if warning:
            await self.bus.publish(ATTACHMENTS_WARNING, {"message": warning}, source="engine")
        return warning

    def remove_file(self, index: int) -> AttachmentFile:
        return self.attachments.remove(index)

    def select_model(
        self, model_id: str, provider: str | None = None, supports_images: bool | None = None
    ) -> ModelSelection:
        return self.selector.select(model_id, provider, supports_images)

    async def load_catalog(self) -> ModelCatalog:
        """Fetch the catalog (when configured) and restore the saved model."""
        if self.catalog_endpoint:
            self.selector.catalog = await fetch_catalog(self.catalog_endpoint)
        self.selector.restore()
        return self.selector.catalog

    async def close(self) -> None:
        await self.controller.stop()
        await self.comparison.stop()
        self.attachments.discard_all()
        self.mutations.close()
        await self.tasks.cancel_all()
