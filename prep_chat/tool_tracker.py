"""Tool invocation lifecycle tracking inside a single assistant message."""

from __future__ import annotations

import json
import logging
from typing import Any

from .message import Message, ToolCallPart, ToolCallState, get_tool_calls

LOGGER = logging.getLogger(__name__)

_UNSET: Any = object()


class ToolInvocationTracker:
    """Translate tool-call events into forward-only ``ToolCallPart`` mutations.

    Calls are keyed by ``tool_call_id`` so concurrent calls in one message are
    tracked independently. Once a call reaches ``output-available`` or
    ``output-error`` it is frozen and later events for it are rejected.
    Terminal events for an unknown id fabricate an ``input-available`` part
    first so that no event is silently dropped.
    """

    def __init__(self, message: Message) -> None:
        self._message = message
        self._calls: dict[str, ToolCallPart] = {
            part.tool_call_id: part for part in get_tool_calls(message)
        }

    @property
    def calls(self) -> list[ToolCallPart]:
        return list(self._calls.values())

    def get(self, tool_call_id: str) -> ToolCallPart | None:
        return self._calls.get(tool_call_id)

    def tool_names(self) -> list[str]:
        return [part.name for part in self._calls.values()]

    def start(self, tool_call_id: str, name: str) -> ToolCallPart:
        """Register a new call in ``input-streaming`` state."""
        existing = self._calls.get(tool_call_id)
        if existing is not None:
            LOGGER.debug(
                "tool.start.duplicate",
                extra={"event": "tool.start.duplicate", "tool_call_id": tool_call_id},
            )
            return existing
        return self._create(tool_call_id, name, ToolCallState.INPUT_STREAMING)

    def merge_input(
        self, tool_call_id: str, delta: Any, name: str | None = None
    ) -> bool:
        """Merge a partial input delta and mark the input available."""
        part = self._calls.get(tool_call_id) or self._create(
            tool_call_id, name, ToolCallState.INPUT_STREAMING
        )
        if not self._can_advance(part, ToolCallState.INPUT_AVAILABLE):
            return False
        if isinstance(delta, str):
            part.input_text += delta
            try:
                part.input = json.loads(part.input_text)
            except ValueError:
                pass
        elif isinstance(delta, dict):
            merged = dict(part.input) if isinstance(part.input, dict) else {}
            merged.update(delta)
            part.input = merged
        elif delta is not None:
            part.input = delta
        part.state = ToolCallState.INPUT_AVAILABLE
        return True

    def complete_input(
        self, tool_call_id: str, value: Any = _UNSET, name: str | None = None
    ) -> bool:
        """Finish the input phase, optionally replacing the input wholesale."""
        part = self._calls.get(tool_call_id) or self._create(
            tool_call_id, name, ToolCallState.INPUT_STREAMING
        )
        if not self._can_advance(part, ToolCallState.INPUT_AVAILABLE):
            return False
        if value is not _UNSET and value is not None:
            part.input = value
        elif part.input_text and part.input is None:
            try:
                part.input = json.loads(part.input_text)
            except ValueError:
                part.input = part.input_text
        part.state = ToolCallState.INPUT_AVAILABLE
        return True

    def set_output(self, tool_call_id: str, output: Any, name: str | None = None) -> bool:
        part = self._for_terminal(tool_call_id, name)
        if not self._can_advance(part, ToolCallState.OUTPUT_AVAILABLE):
            return False
        part.output = output
        part.state = ToolCallState.OUTPUT_AVAILABLE
        return True

    def set_error(
        self, tool_call_id: str, error_text: str, name: str | None = None
    ) -> bool:
        part = self._for_terminal(tool_call_id, name)
        if not self._can_advance(part, ToolCallState.OUTPUT_ERROR):
            return False
        part.error_text = error_text
        part.state = ToolCallState.OUTPUT_ERROR
        return True

    def _for_terminal(self, tool_call_id: str, name: str | None) -> ToolCallPart:
        part = self._calls.get(tool_call_id)
        if part is not None:
            return part
        LOGGER.info(
            "tool.terminal.unknown_call",
            extra={"event": "tool.terminal.unknown_call", "tool_call_id": tool_call_id},
        )
        return self._create(tool_call_id, name, ToolCallState.INPUT_AVAILABLE)

    def _create(
        self, tool_call_id: str, name: str | None, state: ToolCallState
    ) -> ToolCallPart:
        part = ToolCallPart(tool_call_id=tool_call_id, name=name or "unknown", state=state)
        self._message.append_part(part)
        self._calls[tool_call_id] = part
        return part

    @staticmethod
    def _can_advance(part: ToolCallPart, target: ToolCallState) -> bool:
        if part.state.is_terminal or target.rank < part.state.rank:
            LOGGER.warning(
                "tool.transition.rejected",
                extra={
                    "event": "tool.transition.rejected",
                    "tool_call_id": part.tool_call_id,
                    "from_state": part.state.value,
                    "to_state": target.value,
                },
            )
            return False
        return True
