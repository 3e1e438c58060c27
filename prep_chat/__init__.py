"""Top-level package for prepchat, the interview-prep conversation streaming engine."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ensure_config_dir, load_config
    from .conversation import Conversation, WorkingConversation
    from .engine import ChatEngine
    from .events import EventBus
    from .exceptions import (
        ChatNetworkError,
        ChatProviderError,
        ChatRateLimitError,
        ChatValidationError,
        ConfigValidationError,
        ConversationNotFoundError,
        ErrorKind,
        PrepChatError,
    )
    from .message import Message
    from .multi_model import ComparisonTarget, MultiModelComparison
    from .mutations import ConversationMutationService
    from .persistence import InMemoryConversationGateway, JsonConversationGateway
    from .selector import ModelSelector
    from .session import StreamingSessionController
    from .state import StreamPhase
    from .title import TitleSynthesizer
    from .tool_tracker import ToolInvocationTracker
    from .transport import HttpChatTransport

_EXPORTS: dict[str, str] = {
    "ChatEngine": "engine",
    "ChatNetworkError": "exceptions",
    "ChatProviderError": "exceptions",
    "ChatRateLimitError": "exceptions",
    "ChatValidationError": "exceptions",
    "ComparisonTarget": "multi_model",
    "ConfigValidationError": "exceptions",
    "Conversation": "conversation",
    "ConversationMutationService": "mutations",
    "ConversationNotFoundError": "exceptions",
    "ErrorKind": "exceptions",
    "EventBus": "events",
    "HttpChatTransport": "transport",
    "InMemoryConversationGateway": "persistence",
    "JsonConversationGateway": "persistence",
    "Message": "message",
    "ModelSelector": "selector",
    "MultiModelComparison": "multi_model",
    "PrepChatError": "exceptions",
    "StreamPhase": "state",
    "StreamingSessionController": "session",
    "TitleSynthesizer": "title",
    "ToolInvocationTracker": "tool_tracker",
    "WorkingConversation": "conversation",
    "ensure_config_dir": "config",
    "load_config": "config",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so transport and title dependencies load on first use."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f".{module_name}", __name__), name)
