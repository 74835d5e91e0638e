"""Core type definitions for the conversation engine.

Messages, tool calls and tool results are immutable dataclasses so the turn
loops can hand snapshots to the validator, the cache annotator and the
persistence buffer without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    "JsonValue",
    "MessageRole",
    "CacheControl",
    "ContentBlock",
    "MessageContent",
    "ToolCall",
    "Message",
    "ToolResult",
    "ToolCallDelta",
    "StreamEvent",
    "Usage",
    "ModelResponse",
    "ChatRequest",
]


# Arbitrary JSON value as produced by ``json.loads``.
JsonValue = Union[str, int, float, bool, None, list["JsonValue"], dict[str, "JsonValue"]]

MessageRole = Literal["system", "user", "assistant", "tool"]


# -----------------------------------------------------------------------------
# Content blocks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CacheControl:
    """Provider cache hint attached to a content block."""

    type: str = "ephemeral"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type}


@dataclass(slots=True, frozen=True)
class ContentBlock:
    """Structured text block, used when a message needs a cache hint."""

    text: str
    type: str = "text"
    cache_control: CacheControl | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "text": self.text}
        if self.cache_control is not None:
            payload["cache_control"] = self.cache_control.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContentBlock:
        cache = data.get("cache_control")
        return cls(
            text=str(data.get("text") or ""),
            type=str(data.get("type") or "text"),
            cache_control=CacheControl(type=str(cache.get("type", "ephemeral")))
            if isinstance(cache, Mapping)
            else None,
        )


MessageContent = Union[str, tuple[ContentBlock, ...], None]


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A model-issued request to invoke a named tool.

    Attributes:
        id: Provider-assigned call identifier.
        name: Name of the tool to invoke.
        arguments: Raw JSON text of the arguments (opaque to the engine).
    """

    id: str
    name: str
    arguments: str = ""

    @property
    def is_well_formed(self) -> bool:
        return bool(self.id and self.id.strip()) and bool(self.name and self.name.strip())

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, data: Mapping[str, Any]) -> ToolCall:
        function = data.get("function") or {}
        if not isinstance(function, Mapping):
            function = {}
        arguments = function.get("arguments")
        return cls(
            id=str(data.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments if isinstance(arguments, str) else "",
        )


# -----------------------------------------------------------------------------
# Message
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message, the conversation's unit of record.

    Attributes:
        role: The role of the message sender.
        content: Plain text, an ordered tuple of content blocks, or None.
        name: Tool name (tool-role messages only).
        tool_call_id: ID of the assistant tool call this result answers.
        tool_calls: Tool calls issued by the assistant.
        metadata: Local bookkeeping, never sent to the model.
    """

    role: MessageRole
    content: MessageContent = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Content rendered as plain text."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def has_content(self) -> bool:
        if self.content is None:
            return False
        if isinstance(self.content, str):
            return bool(self.content.strip())
        return any(block.text for block in self.content)

    def with_content(self, content: MessageContent) -> Message:
        return replace(self, content=content)

    def with_metadata(self, **updates: Any) -> Message:
        merged = dict(self.metadata)
        merged.update(updates)
        return replace(self, metadata=merged)

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI-compatible chat message format."""
        payload: dict[str, Any] = {"role": self.role}
        if self.content is None or isinstance(self.content, str):
            payload["content"] = self.content
        else:
            payload["content"] = [block.to_dict() for block in self.content]
        if self.name is not None and self.role == "tool":
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        return payload

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        raw_content = param.get("content")
        content: MessageContent
        if isinstance(raw_content, list):
            content = tuple(
                ContentBlock.from_dict(item) for item in raw_content if isinstance(item, Mapping)
            )
        elif raw_content is None:
            content = None
        else:
            content = str(raw_content)
        raw_calls = param.get("tool_calls")
        tool_calls = None
        if raw_calls:
            tool_calls = tuple(
                ToolCall.from_chat_param(item) for item in raw_calls if isinstance(item, Mapping)
            )
        return cls(
            role=param.get("role") or "assistant",  # type: ignore[arg-type]
            content=content,
            name=param.get("name"),
            tool_call_id=param.get("tool_call_id"),
            tool_calls=tool_calls,
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: MessageContent,
        tool_calls: Sequence[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: MessageContent,
        tool_call_id: str,
        name: str | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata=metadata,
        )


# -----------------------------------------------------------------------------
# Tool results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Outcome of one tool call, produced exactly once per ToolCall.

    Attributes:
        success: Whether the tool completed successfully.
        formatted_output: Text surfaced to the model as the tool message.
        error: Error message when the call failed.
        duration_ms: Wall-clock execution time in milliseconds.
        raw_data: Tool-specific payload, never sent to the model.
    """

    success: bool
    formatted_output: str
    error: str | None = None
    duration_ms: int = 0
    raw_data: Any = None

    @classmethod
    def ok(cls, formatted_output: str, *, raw_data: Any = None, duration_ms: int = 0) -> ToolResult:
        return cls(
            success=True,
            formatted_output=formatted_output,
            raw_data=raw_data,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        formatted_output: str | None = None,
        duration_ms: int = 0,
    ) -> ToolResult:
        return cls(
            success=False,
            formatted_output=formatted_output if formatted_output is not None else f"Error: {error}",
            error=error,
            duration_ms=duration_ms,
        )

    def with_duration(self, duration_ms: int) -> ToolResult:
        return replace(self, duration_ms=duration_ms)


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """One fragment of a streamed tool call.

    Attributes:
        index: Position of the call in the provider's tool_calls array.
        id: Call id, usually only present on the first fragment.
        name: Name fragment, usually only present on the first fragment.
        arguments: Argument JSON fragment.
    """

    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Event delivered to the caller's sink during ``execute_stream``.

    Sequence numbers are strictly increasing within one call. Exactly one
    event per call carries ``finished=True`` and it is always the last.
    """

    sequence: int
    text_delta: str | None = None
    tool_call_delta: ToolCallDelta | None = None
    notice: str | None = None
    finished: bool = False
    cancelled: bool = False


# -----------------------------------------------------------------------------
# Provider request/response
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Usage:
    """Token accounting reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None

    def __add__(self, other: Usage) -> Usage:
        cost: float | None = None
        if self.cost is not None or other.cost is not None:
            cost = (self.cost or 0.0) + (other.cost or 0.0)
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost=cost,
        )

    @classmethod
    def from_payload(cls, payload: Any) -> Usage | None:
        if payload is None:
            return None
        getter = payload.get if isinstance(payload, Mapping) else lambda key: getattr(payload, key, None)
        prompt = int(getter("prompt_tokens") or 0)
        completion = int(getter("completion_tokens") or 0)
        total = int(getter("total_tokens") or (prompt + completion))
        raw_cost = getter("cost")
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            cost=float(raw_cost) if isinstance(raw_cost, (int, float)) else None,
        )


@dataclass(slots=True, frozen=True)
class ModelResponse:
    """Provider reply carrying zero-or-one assistant message."""

    message: Message | None = None
    usage: Usage | None = None
    finish_reason: str | None = None
    model: str | None = None


@dataclass(slots=True, frozen=True)
class ChatRequest:
    """Outbound request handed to the LLM client."""

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: tuple[str, ...] | None = None
    tools: tuple[Mapping[str, Any], ...] | None = None
    tool_choice: str | None = None
    include_usage: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if self.tools is not None and not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    def message_params(self) -> list[dict[str, Any]]:
        return [message.to_chat_param() for message in self.messages]
