"""Best-effort, fire-and-forget persistence of the conversation.

The turn loop never awaits a store write. History appends and tool-call
records are queued on a :class:`PendingWriteBuffer` and drained by a single
background task. Writes are at-most-once: an operation that fails is logged
and dropped, and whatever is still queued when the process dies is lost.
In-memory ordering is never affected.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from .types import Message, ToolCall, ToolResult

__all__ = [
    "ChatSession",
    "ChatMessageRecord",
    "ToolCallRecord",
    "ChatRepository",
    "PendingWriteBuffer",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ChatSession:
    id: str
    title: str
    chat_type: str = "Agent"
    parent_session_id: str | None = None
    agent_name: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    is_active: bool = True


@dataclass(slots=True, frozen=True)
class ChatMessageRecord:
    id: str
    session_id: str
    role: str
    content: str | None
    sequence_number: int
    tool_calls: str | None = None
    tool_call_id: str | None = None
    name: str | None = None
    agent_name: str | None = None
    created_at: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    id: str
    message_id: str
    session_id: str
    tool_name: str
    arguments: str
    result: str | None = None
    error: str | None = None
    duration_ms: int | None = None
    agent_name: str | None = None
    created_at: str | None = None


# -----------------------------------------------------------------------------
# Repository contract
# -----------------------------------------------------------------------------


@runtime_checkable
class ChatRepository(Protocol):
    """Async store for sessions, messages and tool-call records."""

    async def create_session(
        self,
        title: str,
        *,
        chat_type: str = "Agent",
        parent_session_id: str | None = None,
        agent_name: str | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatSession:
        ...

    async def save_message(
        self,
        session_id: str,
        message: Message,
        *,
        agent_name: str | None = None,
    ) -> str:
        ...

    async def save_message_batch(
        self,
        session_id: str,
        messages: Sequence[Message],
        *,
        agent_name: str | None = None,
    ) -> list[str]:
        ...

    async def save_tool_call(
        self,
        message_id: str,
        session_id: str,
        tool_name: str,
        arguments: str,
        *,
        agent_name: str | None = None,
    ) -> str:
        ...

    async def update_tool_call_result(
        self,
        tool_call_id: str,
        result: str | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        ...


# -----------------------------------------------------------------------------
# Write buffer
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _MessageWrite:
    ref: str
    message: Message


@dataclass(slots=True)
class _ToolCallWrite:
    ref: str
    message_ref: str | None
    tool_call: ToolCall


@dataclass(slots=True)
class _ToolResultWrite:
    call_ref: str
    result: ToolResult


MAX_TRACKED_REFS = 1024

_WriteOp = _MessageWrite | _ToolCallWrite | _ToolResultWrite
SessionFactory = Callable[[ChatRepository], Awaitable[ChatSession]]


@dataclass(slots=True)
class _BufferStats:
    written: int = 0
    dropped: int = 0
    batches: int = 0


class PendingWriteBuffer:
    """FIFO of pending store writes drained by one background task.

    Enqueue methods are synchronous and return a local reference. The
    reference is mapped to the persisted id once the write lands, so a
    tool-call record can point at its assistant message and a result can
    point at its tool-call record regardless of when the store catches up.
    A resolved id is kept only while a later write still needs it: an
    assistant message id until each of its tool calls is recorded, a
    tool-call id until its result is written. At most ``MAX_TRACKED_REFS``
    ids are held per map; the oldest are forgotten first.

    Args:
        repository: Destination store.
        session_id: Existing session to append to. When omitted the
            session is created lazily, on the first write.
        session_factory: Coroutine used to create that session; defaults
            to ``repository.create_session("New Chat")``.
        agent_name: Stamped on every message and tool-call record.
    """

    def __init__(
        self,
        repository: ChatRepository,
        *,
        session_id: str | None = None,
        session_factory: SessionFactory | None = None,
        agent_name: str | None = None,
    ) -> None:
        self._repository = repository
        self._session_id = session_id
        self._session_factory = session_factory
        self._agent_name = agent_name
        self._pending: deque[_WriteOp] = deque()
        self._ids: dict[str, str] = {}
        self._awaiting_calls: dict[str, int] = {}
        self._counter = itertools.count(1)
        self._queue_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._stats = _BufferStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def written_count(self) -> int:
        return self._stats.written

    @property
    def dropped_count(self) -> int:
        return self._stats.dropped

    @property
    def batch_count(self) -> int:
        """Number of coalesced ``save_message_batch`` calls issued."""
        return self._stats.batches

    def persisted_id(self, ref: str) -> str | None:
        """Return the store id for *ref* while it is still tracked."""
        return self._ids.get(ref)

    @property
    def tracked_ref_count(self) -> int:
        return len(self._ids) + len(self._awaiting_calls)

    def save_message(self, message: Message) -> str:
        ref = self._next_ref("msg")
        if message.tool_calls:
            self._awaiting_calls[ref] = len(message.tool_calls)
            _cap(self._awaiting_calls)
        self._enqueue(_MessageWrite(ref=ref, message=message))
        return ref

    def save_tool_call(self, message_ref: str | None, tool_call: ToolCall) -> str:
        ref = self._next_ref("tool")
        self._enqueue(_ToolCallWrite(ref=ref, message_ref=message_ref, tool_call=tool_call))
        return ref

    def update_tool_call_result(self, call_ref: str, result: ToolResult) -> None:
        self._enqueue(_ToolResultWrite(call_ref=call_ref, result=result))

    async def flush(self) -> None:
        """Wait until every operation queued so far has been attempted."""
        if not self._pending and self._idle.is_set():
            return
        self._ensure_worker()
        await self._idle.wait()

    async def aclose(self) -> None:
        if self._closed:
            return
        await self.flush()
        self._closed = True
        self._queue_event.set()
        if self._worker_task is not None:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------
    def _next_ref(self, prefix: str) -> str:
        return f"{prefix}-{next(self._counter)}"

    def _enqueue(self, op: _WriteOp) -> None:
        if self._closed:
            LOGGER.debug("Write buffer closed; dropping %s", type(op).__name__)
            self._stats.dropped += 1
            return
        self._pending.append(op)
        self._idle.clear()
        self._queue_event.set()
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker_task is not None and not self._worker_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started on the next flush() from inside a loop.
            return
        self._worker_task = loop.create_task(self._drain_queue())

    def _take_batch(self) -> list[_WriteOp]:
        first = self._pending.popleft()
        batch: list[_WriteOp] = [first]
        if isinstance(first, _MessageWrite):
            while self._pending and isinstance(self._pending[0], _MessageWrite):
                batch.append(self._pending.popleft())
        return batch

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------
    async def _drain_queue(self) -> None:
        try:
            while not self._closed:
                if not self._pending:
                    self._idle.set()
                    await self._queue_event.wait()
                self._queue_event.clear()
                while self._pending:
                    batch = self._take_batch()
                    await self._apply(batch)
        except asyncio.CancelledError:
            self._idle.set()
            raise

    async def _apply(self, batch: list[_WriteOp]) -> None:
        head = batch[0]
        try:
            if isinstance(head, _MessageWrite):
                await self._write_messages(batch)  # type: ignore[arg-type]
            elif isinstance(head, _ToolCallWrite):
                await self._write_tool_call(head)
            else:
                await self._write_tool_result(head)
        except Exception as exc:
            self._stats.dropped += len(batch)
            LOGGER.warning(
                "Dropped %d pending write(s) after store failure: %s",
                len(batch),
                exc,
                exc_info=LOGGER.isEnabledFor(logging.DEBUG),
            )

    async def _require_session(self) -> str:
        if self._session_id is None:
            if self._session_factory is not None:
                session = await self._session_factory(self._repository)
            else:
                session = await self._repository.create_session("New Chat", agent_name=self._agent_name)
            self._session_id = session.id
            LOGGER.debug("Created chat session %s", session.id)
        return self._session_id

    async def _write_messages(self, batch: Sequence[_MessageWrite]) -> None:
        session_id = await self._require_session()
        messages = [op.message for op in batch]
        if len(messages) == 1:
            ids = [await self._repository.save_message(session_id, messages[0], agent_name=self._agent_name)]
        else:
            ids = list(
                await self._repository.save_message_batch(session_id, messages, agent_name=self._agent_name)
            )
            self._stats.batches += 1
        for op, persisted_id in zip(batch, ids):
            if op.ref in self._awaiting_calls:
                self._remember(op.ref, persisted_id)
        self._stats.written += len(batch)

    async def _write_tool_call(self, op: _ToolCallWrite) -> None:
        message_id = self._ids.get(op.message_ref) if op.message_ref else None
        self._release_message(op.message_ref)
        if message_id is None:
            LOGGER.debug("Skipping tool call %s: parent message was not persisted", op.tool_call.id)
            self._stats.dropped += 1
            return
        session_id = await self._require_session()
        persisted_id = await self._repository.save_tool_call(
            message_id,
            session_id,
            op.tool_call.name,
            op.tool_call.arguments,
            agent_name=self._agent_name,
        )
        self._remember(op.ref, persisted_id)
        self._stats.written += 1

    async def _write_tool_result(self, op: _ToolResultWrite) -> None:
        persisted_id = self._ids.pop(op.call_ref, None)
        if persisted_id is None:
            LOGGER.debug("Skipping tool result for %s: call record was not persisted", op.call_ref)
            self._stats.dropped += 1
            return
        await self._repository.update_tool_call_result(
            persisted_id,
            op.result.formatted_output,
            op.result.error,
            op.result.duration_ms,
        )
        self._stats.written += 1

    # ------------------------------------------------------------------
    # Reference tracking
    # ------------------------------------------------------------------
    def _remember(self, ref: str, persisted_id: str) -> None:
        self._ids[ref] = persisted_id
        _cap(self._ids)

    def _release_message(self, message_ref: str | None) -> None:
        if message_ref is None or message_ref not in self._awaiting_calls:
            return
        remaining = self._awaiting_calls[message_ref] - 1
        if remaining > 0:
            self._awaiting_calls[message_ref] = remaining
            return
        del self._awaiting_calls[message_ref]
        self._ids.pop(message_ref, None)


def _cap(mapping: dict[str, Any]) -> None:
    while len(mapping) > MAX_TRACKED_REFS:
        del mapping[next(iter(mapping))]
