"""Best-effort conversation titles derived from the first user message."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from ollama import AsyncClient

from .conversation import WorkingConversation
from .events import CONVERSATION_TITLE, EventBus
from .persistence import ConversationGateway
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

TITLE_SYSTEM_PROMPT = (
    "You are a title generator. Generate a brief, descriptive title (3-6 words) "
    "for a conversation based on the user's first message. Respond with ONLY the "
    "title, no quotes or punctuation."
)
PROMPT_SOURCE_LIMIT = 500
PROVISIONAL_LENGTH = 40


class TitleGenerator(Protocol):
    async def generate(self, first_message: str) -> str: ...


def provisional_title(first_message: str, length: int = PROVISIONAL_LENGTH) -> str:
    """Collapse whitespace and clip to ``length`` characters, marking the cut."""
    text = " ".join(first_message.split())
    if len(text) <= length:
        return text
    return text[:length] + "..."


def build_title_prompt(first_message: str) -> str:
    return f'Generate a title for this conversation: "{first_message[:PROMPT_SOURCE_LIMIT]}"'


class OllamaTitleGenerator:
    """Ask a small local model for a 3-6 word title."""

    def __init__(
        self,
        host: str,
        model: str,
        timeout: int = 30,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)

    async def generate(self, first_message: str) -> str:
        response = await self._client.chat(
            model=self.model,
            messages=[
                {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                {"role": "user", "content": build_title_prompt(first_message)},
            ],
            stream=False,
        )
        content = response["message"]["content"]
        return content if isinstance(content, str) else ""


class TitleSynthesizer:
    """Set a provisional title now and replace it with a generated one later.

    Generation runs as an anonymous background task. Any failure leaves the
    provisional title in place; nothing is retried or surfaced to the user.
    """

    def __init__(
        self,
        gateway: ConversationGateway,
        generator: TitleGenerator | None,
        *,
        bus: EventBus,
        tasks: TaskManager,
        provisional_length: int = PROVISIONAL_LENGTH,
        max_length: int = 60,
    ) -> None:
        self.gateway = gateway
        self.generator = generator
        self.bus = bus
        self.tasks = tasks
        self.provisional_length = provisional_length
        self.max_length = max_length

    def provisional_title(self, first_message: str) -> str:
        return provisional_title(first_message, self.provisional_length)

    def clean(self, generated: str) -> str:
        return generated.strip().strip("\"'").strip()[: self.max_length].strip()

    def start(self, conversation: WorkingConversation, first_message: str) -> str:
        """Apply the provisional title and schedule generation; never blocks."""
        provisional = self.provisional_title(first_message) or conversation.title
        conversation.title = provisional
        if conversation.conversation_id is not None:
            self.tasks.spawn(
                self.synthesize(conversation, first_message, provisional)
            )
        return provisional

    async def synthesize(
        self,
        conversation: WorkingConversation,
        first_message: str,
        provisional: str,
    ) -> str:
        conversation_id = conversation.conversation_id
        if conversation_id is None:
            return provisional
        title = provisional
        try:
            await self._apply(conversation, conversation_id, provisional)
            if self.generator is None:
                return provisional
            generated = self.clean(await self.generator.generate(first_message))
            if not generated:
                raise ValueError("title generator returned an empty title")
            await self._apply(conversation, conversation_id, generated)
            title = generated
        except Exception as exc:
            LOGGER.warning(
                "title.generate.failed",
                extra={
                    "event": "title.generate.failed",
                    "conversation_id": conversation_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        return title

    async def _apply(
        self, conversation: WorkingConversation, conversation_id: str, title: str
    ) -> None:
        await self.gateway.update_title(conversation_id, title)
        if conversation.conversation_id == conversation_id:
            conversation.title = title
        await self.bus.publish(
            CONVERSATION_TITLE,
            {"conversation_id": conversation_id, "title": title},
            source="title",
        )
