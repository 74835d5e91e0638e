"""Bounded conversation history with a pinned system prompt."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol, Sequence

from .types import Message, MessageContent, ToolCall

__all__ = ["ConversationHistory", "MessageWriter"]

LOGGER = logging.getLogger(__name__)


class MessageWriter(Protocol):
    """Anything that can queue a message for persistence."""

    def save_message(self, message: Message) -> str | None:
        ...


class ConversationHistory:
    """Ordered message window owned by a single agent.

    The system prompt, when given, is pinned at index 0 and survives every
    trim. Trimming is plain FIFO eviction of the oldest non-system messages
    and does not look at tool-call pairing; callers must repair the outbound
    copy before sending it.

    Args:
        system_prompt: Text of the pinned system message, or None.
        max_messages: Ceiling on the message count, system message
            included. ``None`` disables trimming.
        writer: Optional persistence sink; every append is forwarded to it.
    """

    def __init__(
        self,
        system_prompt: str | None = None,
        max_messages: int | None = None,
        *,
        writer: MessageWriter | None = None,
    ) -> None:
        if max_messages is not None and max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._system: Message | None = Message.system(system_prompt) if system_prompt else None
        self._max_messages = max_messages
        self._writer = writer
        self._messages: list[Message] = []
        self._reset(keep_system=True)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def system_message(self) -> Message | None:
        return self._system

    @property
    def max_messages(self) -> int | None:
        return self._max_messages

    @property
    def writer(self) -> MessageWriter | None:
        return self._writer

    @writer.setter
    def writer(self, writer: MessageWriter | None) -> None:
        self._writer = writer

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------
    def append_user(self, text: str) -> Message:
        return self.append_message(Message.user(text))

    def append_assistant(
        self,
        text: MessageContent,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> Message:
        return self.append_message(Message.assistant(text, tool_calls=tool_calls))

    def append_tool(self, name: str | None, tool_call_id: str, result: MessageContent) -> Message:
        return self.append_message(Message.tool(result, tool_call_id=tool_call_id, name=name))

    def append_message(self, message: Message) -> Message:
        """Append *message* and forward it to the writer.

        Returns the stored message, which carries the writer's reference in
        ``metadata["persist_ref"]`` when a writer is attached.

        Raises:
            ValueError: If *message* would be a second system message.
        """
        if message.role == "system":
            if self._system is not None or self._messages:
                raise ValueError("History already has a system message or conversation turns")
            stored = self._persist(message)
            self._system = stored
            self._messages.append(stored)
            return stored
        stored = self._persist(message)
        self._messages.append(stored)
        return stored

    def extend(self, messages: Iterable[Message]) -> list[Message]:
        return [self.append_message(message) for message in messages]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def trim(self) -> int:
        """Evict the oldest non-system messages down to the ceiling.

        Returns the number of evicted messages; a history already within
        the ceiling is left untouched.
        """
        if self._max_messages is None or len(self._messages) <= self._max_messages:
            return 0
        keep = self._max_messages - (1 if self._system is not None else 0)
        conversation = [message for message in self._messages if message.role != "system"]
        retained = conversation[-keep:] if keep > 0 else []
        evicted = len(conversation) - len(retained)
        self._messages = ([self._system] if self._system is not None else []) + retained
        LOGGER.debug("Trimmed %d message(s) from history (ceiling %d)", evicted, self._max_messages)
        return evicted

    def clear(self, *, keep_system: bool = True) -> None:
        self._reset(keep_system=keep_system)

    def snapshot(self) -> list[Message]:
        """Return a copy of the current window, oldest first."""
        return list(self._messages)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _reset(self, *, keep_system: bool) -> None:
        if not keep_system:
            self._system = None
        self._messages = [self._system] if self._system is not None else []

    def _persist(self, message: Message) -> Message:
        if self._writer is None:
            return message
        try:
            ref = self._writer.save_message(message)
        except Exception:  # pragma: no cover
            LOGGER.warning("Failed to queue %s message for persistence", message.role, exc_info=True)
            return message
        if ref is None:
            return message
        return message.with_metadata(persist_ref=ref)
