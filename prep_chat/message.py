"""Canonical message model: typed parts, pure projections, and document codecs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
import logging
from typing import Any, ClassVar
from uuid import uuid4

from .exceptions import ChatValidationError, ErrorKind, kind_from_code

LOGGER = logging.getLogger(__name__)


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class PartState(str, Enum):
    """Whether a text or reasoning part can still grow."""

    STREAMING = "streaming"
    DONE = "done"


class ToolCallState(str, Enum):
    """Forward-only lifecycle of a tool call nested in an assistant message."""

    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"

    @property
    def rank(self) -> int:
        return _TOOL_STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallState.OUTPUT_AVAILABLE, ToolCallState.OUTPUT_ERROR)


_TOOL_STATE_RANK = {
    ToolCallState.INPUT_STREAMING: 0,
    ToolCallState.INPUT_AVAILABLE: 1,
    ToolCallState.OUTPUT_AVAILABLE: 2,
    ToolCallState.OUTPUT_ERROR: 2,
}


@dataclass
class TextPart:
    content: str = ""
    state: PartState = PartState.DONE

    type: ClassVar[str] = "text"


@dataclass
class ReasoningPart:
    """Model thinking trace; surfaced separately from the message text."""

    content: str = ""
    state: PartState = PartState.DONE

    type: ClassVar[str] = "reasoning"


@dataclass
class FilePart:
    media_type: str
    url: str
    filename: str | None = None

    type: ClassVar[str] = "file"


@dataclass
class ToolCallPart:
    """One provider-initiated tool call and its current lifecycle state."""

    tool_call_id: str
    name: str
    state: ToolCallState = ToolCallState.INPUT_STREAMING
    input: Any = None
    output: Any = None
    error_text: str | None = None
    # Raw JSON text accumulated from string input deltas.
    input_text: str = ""

    type: ClassVar[str] = "tool-call"


@dataclass
class ErrorDetails:
    code: str | None = None
    is_retryable: bool | None = None


@dataclass
class ErrorPart:
    """Persisted terminal failure of an assistant turn."""

    message: str
    details: ErrorDetails | None = None

    type: ClassVar[str] = "error"


Part = TextPart | ReasoningPart | FilePart | ToolCallPart | ErrorPart

_PART_TYPES = (TextPart, ReasoningPart, FilePart, ToolCallPart, ErrorPart)
_USER_PART_TYPES = (TextPart, FilePart)


@dataclass
class MessageMetadata:
    """Token usage and latency figures attached to an assistant message."""

    model: str = ""
    model_name: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    total_tokens: int | None = None
    latency_ms: int | None = None
    ttft: int | None = None
    throughput: int | None = None

    def merge(self, values: dict[str, Any]) -> None:
        """Overwrite fields with every non-null value in ``values``."""
        for item in fields(self):
            value = values.get(item.name)
            if value is not None:
                setattr(self, item.name, value)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name != "model" and value is not None:
                payload[_camel(item.name)] = value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MessageMetadata:
        metadata = cls()
        metadata.merge({_snake(key): value for key, value in payload.items()})
        return metadata


def new_message_id() -> str:
    """Return a fresh message identifier."""
    return uuid4().hex


@dataclass
class Message:
    """One conversation turn made of ordered parts."""

    id: str
    role: Role
    parts: list[Part] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: MessageMetadata | None = None

    @classmethod
    def user(cls, text: str, files: Iterable[FilePart] = ()) -> Message:
        """Build a user message from text and optional file attachments."""
        parts: list[Part] = list(files)
        if text:
            parts.append(TextPart(content=text))
        return cls(id=new_message_id(), role=Role.USER, parts=parts)

    @classmethod
    def assistant(cls) -> Message:
        return cls(id=new_message_id(), role=Role.ASSISTANT)

    def append_part(self, part: Part) -> Part:
        """Append a part, enforcing the role and single-error invariants."""
        if self.role is Role.USER and not isinstance(part, _USER_PART_TYPES):
            raise ChatValidationError(
                f"User messages cannot contain {part.type} parts."
            )
        if isinstance(part, ErrorPart) and is_error(self):
            raise ChatValidationError("A message holds at most one error part.")
        self.parts.append(part)
        return part


def _valid_parts(message: Message) -> Iterable[Part]:
    for part in message.parts:
        if isinstance(part, _PART_TYPES):
            yield part


def get_text(message: Message) -> str:
    """Return the concatenation of all text parts."""
    return "".join(
        part.content
        for part in _valid_parts(message)
        if isinstance(part, TextPart) and isinstance(part.content, str)
    )


def get_reasoning(message: Message) -> str:
    """Return the concatenation of all reasoning parts."""
    return "".join(
        part.content
        for part in _valid_parts(message)
        if isinstance(part, ReasoningPart) and isinstance(part.content, str)
    )


def get_tool_calls(message: Message) -> list[ToolCallPart]:
    return [
        part
        for part in _valid_parts(message)
        if isinstance(part, ToolCallPart) and part.tool_call_id
    ]


def get_files(message: Message) -> list[FilePart]:
    return [
        part
        for part in _valid_parts(message)
        if isinstance(part, FilePart) and part.url
    ]


def is_error(message: Message) -> bool:
    return any(isinstance(part, ErrorPart) for part in _valid_parts(message))


def get_error_details(message: Message) -> ErrorPart | None:
    """Return the message's error part, or None when it completed normally."""
    for part in _valid_parts(message):
        if isinstance(part, ErrorPart):
            return part
    return None


def error_kind(message: Message) -> ErrorKind | None:
    """Return the failure class of an error message, or None."""
    part = get_error_details(message)
    if part is None:
        return None
    code = part.details.code if part.details is not None else None
    return kind_from_code(code)


def finalize_parts(message: Message) -> None:
    """Mark every growing text and reasoning part as done."""
    for part in message.parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            part.state = PartState.DONE


# -- document codecs -------------------------------------------------------


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)


def _snake(name: str) -> str:
    return "".join(f"_{ch.lower()}" if ch.isupper() else ch for ch in name)


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, (TextPart, ReasoningPart)):
        return {"type": part.type, "text": part.content}
    if isinstance(part, FilePart):
        payload: dict[str, Any] = {
            "type": "file",
            "mediaType": part.media_type,
            "url": part.url,
        }
        if part.filename:
            payload["filename"] = part.filename
        return payload
    if isinstance(part, ToolCallPart):
        payload = {
            "type": "tool-call",
            "toolCallId": part.tool_call_id,
            "toolName": part.name,
            "state": part.state.value,
        }
        if part.input is not None:
            payload["input"] = part.input
        if part.output is not None:
            payload["output"] = part.output
        if part.error_text is not None:
            payload["errorText"] = part.error_text
        return payload
    payload = {"type": "error", "error": part.message}
    if part.details is not None:
        payload["errorDetails"] = {
            key: value
            for key, value in (
                ("code", part.details.code),
                ("isRetryable", part.details.is_retryable),
            )
            if value is not None
        }
    return payload


def part_from_dict(payload: Any) -> Part | None:
    """Decode one persisted part; malformed parts decode to None."""
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    try:
        if kind in ("text", "reasoning"):
            text = payload.get("text", payload.get("content", ""))
            if not isinstance(text, str):
                return None
            return TextPart(text) if kind == "text" else ReasoningPart(text)
        if kind == "file":
            url = payload.get("url")
            if not isinstance(url, str) or not url:
                return None
            return FilePart(
                media_type=str(payload.get("mediaType", "application/octet-stream")),
                url=url,
                filename=payload.get("filename"),
            )
        if kind == "tool-call" or (isinstance(kind, str) and kind.startswith("tool-")):
            tool_call_id = payload.get("toolCallId") or payload.get("id")
            if not isinstance(tool_call_id, str) or not tool_call_id:
                return None
            name = payload.get("toolName") or payload.get("name")
            if not name and kind != "tool-call":
                name = kind[len("tool-") :]
            return ToolCallPart(
                tool_call_id=tool_call_id,
                name=str(name or "unknown"),
                state=ToolCallState(payload.get("state", "input-available")),
                input=payload.get("input"),
                output=payload.get("output"),
                error_text=payload.get("errorText"),
            )
        if kind in ("error", "data-error"):
            data = payload.get("data") if kind == "data-error" else payload
            if not isinstance(data, dict):
                return None
            return ErrorPart(
                message=str(data.get("error") or "An error occurred"),
                details=_details_from_dict(data.get("errorDetails")),
            )
    except ValueError:
        LOGGER.warning(
            "message.part.invalid",
            extra={"event": "message.part.invalid", "part_type": kind},
        )
        return None
    return None


def _details_from_dict(payload: Any) -> ErrorDetails | None:
    if not isinstance(payload, dict):
        return None
    retryable = payload.get("isRetryable")
    return ErrorDetails(
        code=payload.get("code"),
        is_retryable=bool(retryable) if retryable is not None else None,
    )


def message_to_dict(message: Message) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": message.id,
        "role": message.role.value,
        "parts": [part_to_dict(part) for part in message.parts],
        "createdAt": message.created_at.isoformat(),
    }
    if message.metadata is not None:
        payload["metadata"] = message.metadata.to_dict()
    return payload


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            pass
    return datetime.now(UTC)


def _legacy_parts(payload: dict[str, Any]) -> list[Part]:
    """Build parts from a flat ``content``/``reasoning``/``toolCalls`` document."""
    if payload.get("role") == "error":
        return [
            ErrorPart(
                message=str(payload.get("content") or "An error occurred"),
                details=_details_from_dict(payload.get("errorDetails")),
            )
        ]
    parts: list[Part] = []
    reasoning = payload.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        parts.append(ReasoningPart(reasoning))
    for raw_call in payload.get("toolCalls") or []:
        decoded = part_from_dict({"type": "tool-call", **raw_call}) if isinstance(raw_call, dict) else None
        if decoded is not None:
            parts.append(decoded)
    content = payload.get("content")
    if isinstance(content, str):
        parts.append(TextPart(content))
    return parts


def message_from_dict(payload: dict[str, Any]) -> Message:
    """Decode a persisted message document.

    Documents with a ``parts`` list decode part by part, dropping malformed
    entries. Flat documents (``content`` plus optional ``reasoning`` and
    ``toolCalls``) are also accepted; a flat ``role: "error"`` document
    becomes an assistant message holding a single error part.
    """
    raw_role = payload.get("role")
    role = Role.USER if raw_role == "user" else Role.ASSISTANT
    if isinstance(payload.get("parts"), list):
        parts = [
            part
            for part in (part_from_dict(item) for item in payload["parts"])
            if part is not None
        ]
    else:
        parts = _legacy_parts(payload)
    if role is Role.USER:
        parts = [part for part in parts if isinstance(part, _USER_PART_TYPES)]
    metadata = payload.get("metadata")
    return Message(
        id=str(payload.get("id") or new_message_id()),
        role=role,
        parts=parts,
        created_at=_parse_timestamp(payload.get("createdAt")),
        metadata=MessageMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
    )
