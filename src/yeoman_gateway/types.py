"""Provider-agnostic request/response models."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, computed_field, model_validator

Role = Literal["system", "user", "assistant", "tool"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence"]
# Streams can also end because of a mid-stream failure or a cooperative cancel.
StreamStopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence", "error", "cancelled"]


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """The caller's answer to a previous tool call."""

    tool_call_id: str
    content: str
    is_error: bool = False


class ToolSpec(BaseModel):
    """JSON-schema tool definition offered to the model."""

    name: str
    description: str | None = None
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_result: ToolResult | None = None

    @model_validator(mode="after")
    def _check_tool_shape(self) -> Message:
        if self.role == "tool" and self.tool_result is None:
            raise ValueError("a tool message must carry tool_result")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages may carry tool_calls")
        return self


class ChatRequest(BaseModel):
    """Normalized request shared by all providers."""

    messages: list[Message]
    stream: bool = False
    stop_sequences: list[str] | None = None
    tools: list[ToolSpec] | None = None
    max_tokens: int | None = None
    temperature: float | None = None


class TokenUsage(BaseModel):
    """Token counters for one call. ``cached_input_tokens`` is a subset of ``input_tokens``."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ChatResponse(BaseModel):
    """Normalized non-streaming completion."""

    content: str
    tool_calls: list[ToolCall] | None = None
    stop_reason: StopReason = "end_turn"
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: str
    model: str
    id: str | None = None


class ContentDelta(BaseModel):
    type: Literal["content_delta"] = "content_delta"
    content: str


class ToolCallDelta(BaseModel):
    """Incremental tool-call data; ``id`` and ``name`` arrive on the first delta of a call."""

    type: Literal["tool_call_delta"] = "tool_call_delta"
    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


class StreamError(BaseModel):
    kind: str
    message: str


class Done(BaseModel):
    """Terminal chunk of every stream."""

    type: Literal["done"] = "done"
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: StreamStopReason = "end_turn"
    error: StreamError | None = None


StreamChunk = Annotated[Union[ContentDelta, ToolCallDelta, Done], Field(discriminator="type")]


class ModelInfo(BaseModel):
    """One entry of a backend's model listing."""

    id: str
    size: int | None = None
    display_name: str | None = None
    owned_by: str | None = None
