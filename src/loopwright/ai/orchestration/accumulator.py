"""Reassembly of streamed text and tool-call fragments.

Providers deliver tool calls as a sequence of deltas: the first fragment for a
call usually carries its index, id and name, later fragments only carry slices
of the JSON arguments. Fragments are folded into a keyed table so chunked
arguments concatenate into one ``arguments`` string per call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Hashable

from .json_repair import DEFAULT_MAX_BUFFER_SIZE, JsonStreamAccumulator
from .types import Message, ToolCall, ToolCallDelta, Usage

__all__ = [
    "StreamingToolCall",
    "ToolCallAccumulator",
    "StreamAccumulator",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamingToolCall:
    """Tool call under construction while its fragments arrive."""

    id: str = ""
    name: str = ""
    index: int | None = None
    arguments: JsonStreamAccumulator = field(default_factory=JsonStreamAccumulator)

    @property
    def is_complete(self) -> bool:
        return self.arguments.is_complete

    def to_tool_call(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            name=self.name,
            arguments=self.arguments.get_complete_or_repaired(),
        )


class ToolCallAccumulator:
    """Keyed accumulation table for streamed tool-call fragments.

    The key is the delta index when present, otherwise the call id. A
    fragment with neither belongs to the most recently opened call.
    """

    def __init__(self, *, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        self._calls: dict[Hashable, StreamingToolCall] = {}
        self._ids: dict[str, Hashable] = {}
        self._last_key: Hashable | None = None
        self._max_buffer_size = max_buffer_size

    def __len__(self) -> int:
        return len(self._calls)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def add(self, delta: ToolCallDelta) -> StreamingToolCall:
        key = self._resolve_key(delta)
        entry = self._calls.get(key)
        if entry is None:
            entry = StreamingToolCall(
                index=delta.index,
                arguments=JsonStreamAccumulator(self._max_buffer_size),
            )
            self._calls[key] = entry
        if delta.id and not entry.id:
            entry.id = delta.id
            self._ids.setdefault(delta.id, key)
        if delta.name and not entry.name:
            entry.name = delta.name
        entry.arguments.append(delta.arguments)
        self._last_key = key
        return entry

    def finalize(self) -> list[ToolCall]:
        """Return the accumulated calls in first-seen order."""
        return [entry.to_tool_call() for entry in self._calls.values()]

    def clear(self) -> None:
        self._calls.clear()
        self._ids.clear()
        self._last_key = None

    def _resolve_key(self, delta: ToolCallDelta) -> Hashable:
        if delta.index is not None:
            return ("index", delta.index)
        if delta.id:
            return self._ids.get(delta.id, ("id", delta.id))
        if self._last_key is not None:
            return self._last_key
        LOGGER.debug("Tool call fragment without index or id; opening anonymous entry")
        return ("anonymous", len(self._calls))


class StreamAccumulator:
    """Collects one streamed assistant reply: text, tool calls and usage."""

    def __init__(self, *, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        self._text_parts: list[str] = []
        self._tool_calls = ToolCallAccumulator(max_buffer_size=max_buffer_size)
        self.usage: Usage | None = None
        self.finish_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def tool_calls(self) -> ToolCallAccumulator:
        return self._tool_calls

    @property
    def is_empty(self) -> bool:
        return not self._text_parts and not self._tool_calls

    def add_text(self, delta: str | None) -> None:
        if delta:
            self._text_parts.append(delta)

    def add_tool_call(self, delta: ToolCallDelta) -> None:
        self._tool_calls.add(delta)

    def add_usage(self, usage: Usage | None) -> None:
        if usage is None:
            return
        self.usage = usage if self.usage is None else self.usage + usage

    def to_message(self) -> Message | None:
        """Build the assistant message, or None when nothing arrived."""
        if self.is_empty:
            return None
        calls = self._tool_calls.finalize()
        return Message.assistant(self.text, tool_calls=calls or None)
