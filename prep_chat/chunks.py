"""Typed parsing of the chunk sequence delivered by the streaming transport.

Payloads arrive loosely typed (decoded JSON objects). Each one is validated
into exactly one chunk model here; anything unknown or malformed is logged
and dropped so untyped data never reaches the message model.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

LOGGER = logging.getLogger(__name__)


class _ChunkModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )


class StartChunk(_ChunkModel):
    """Leading chunk announcing the server-side conversation and model."""

    type: Literal["start"]
    conversation_id: str | None = None
    is_new_conversation: bool = False
    model_id: str | None = None


class TextDeltaChunk(_ChunkModel):
    type: Literal["text-delta", "text"]
    delta: str = Field(validation_alias=AliasChoices("delta", "textDelta", "text", "content"))


class ReasoningDeltaChunk(_ChunkModel):
    type: Literal["reasoning-delta", "reasoning"]
    delta: str = Field(
        validation_alias=AliasChoices("delta", "reasoningDelta", "text", "content")
    )


class ToolInputStartChunk(_ChunkModel):
    type: Literal["tool-input-start"]
    tool_call_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)


class ToolInputDeltaChunk(_ChunkModel):
    type: Literal["tool-input-delta"]
    tool_call_id: str = Field(min_length=1)
    input_delta: Any = None
    tool_name: str | None = None


class ToolInputCompleteChunk(_ChunkModel):
    type: Literal["tool-input-complete", "tool-input-available"]
    tool_call_id: str = Field(min_length=1)
    input: Any = None
    tool_name: str | None = None


class ToolOutputChunk(_ChunkModel):
    type: Literal["tool-output", "tool-output-available"]
    tool_call_id: str = Field(min_length=1)
    output: Any = None
    tool_name: str | None = None


class ToolErrorChunk(_ChunkModel):
    type: Literal["tool-error", "tool-output-error"]
    tool_call_id: str = Field(min_length=1)
    error_text: str = "Tool execution failed"
    tool_name: str | None = None


class FileChunk(_ChunkModel):
    type: Literal["file"]
    media_type: str
    url: str = Field(min_length=1)
    filename: str | None = None


class MetadataChunk(_ChunkModel):
    """Token usage and timing figures reported by the provider."""

    type: Literal["metadata"]
    model: str | None = None
    model_name: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    total_tokens: int | None = None
    latency_ms: int | None = None
    ttft: int | None = None
    throughput: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested(cls, data: Any) -> Any:
        # Comparison streams wrap the figures in a "metadata" object.
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            return {**data["metadata"], "type": data.get("type")}
        return data

    def values(self) -> dict[str, Any]:
        return self.model_dump(exclude={"type"}, exclude_none=True)


class ErrorChunk(_ChunkModel):
    type: Literal["error"]
    error_text: str = Field(
        default="An error occurred",
        validation_alias=AliasChoices("errorText", "error_text", "message", "error"),
    )
    code: str | None = None


class DoneChunk(_ChunkModel):
    type: Literal["done", "finish"]


Chunk = Annotated[
    Union[
        StartChunk,
        TextDeltaChunk,
        ReasoningDeltaChunk,
        ToolInputStartChunk,
        ToolInputDeltaChunk,
        ToolInputCompleteChunk,
        ToolOutputChunk,
        ToolErrorChunk,
        FileChunk,
        MetadataChunk,
        ErrorChunk,
        DoneChunk,
    ],
    Field(discriminator="type"),
]

_CHUNK_ADAPTER: TypeAdapter[Any] = TypeAdapter(Chunk)


def parse_chunk(raw: Any) -> Any | None:
    """Validate one decoded payload into a chunk model, or return None."""
    if not isinstance(raw, dict):
        LOGGER.warning(
            "session.chunk.rejected",
            extra={
                "event": "session.chunk.rejected",
                "reason": "not_an_object",
                "payload_type": type(raw).__name__,
            },
        )
        return None
    try:
        return _CHUNK_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        LOGGER.warning(
            "session.chunk.rejected",
            extra={
                "event": "session.chunk.rejected",
                "chunk_type": raw.get("type"),
                "reason": exc.errors(include_url=False)[0]["msg"],
            },
        )
        return None
