"""Fakes shared by the test modules."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, AsyncIterator, Iterable, Sequence

from loopwright.ai.client import AIStreamEvent
from loopwright.ai.orchestration.persistence import ChatSession
from loopwright.ai.orchestration.types import (
    ChatRequest,
    Message,
    ModelResponse,
    ToolCall,
    ToolCallDelta,
    Usage,
)

# Marker placed in a scripted stream: the provider stops sending but keeps
# the connection open.
HANG = object()


def text_event(delta: str) -> AIStreamEvent:
    return AIStreamEvent(type="text", text_delta=delta)


def tool_event(
    index: int | None,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> AIStreamEvent:
    return AIStreamEvent(
        type="tool_call",
        tool_call_delta=ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments),
    )


def usage_event(prompt: int, completion: int) -> AIStreamEvent:
    return AIStreamEvent(type="usage", usage=Usage(prompt_tokens=prompt, completion_tokens=completion))


def tool_reply(*calls: ToolCall, content: str | None = None) -> Message:
    return Message.assistant(content, tool_calls=list(calls))


class ScriptedClient:
    """Model client that replays scripted replies.

    ``responses`` feed :meth:`complete`; each item is a ``Message``, a
    ``ModelResponse`` or an exception to raise. ``streams`` feed
    :meth:`stream_chat`; each item is a list of events (which may contain
    exceptions or :data:`HANG`) or an exception raised on open.
    """

    def __init__(
        self,
        responses: Iterable[Any] = (),
        streams: Iterable[Any] = (),
    ) -> None:
        self.responses = list(responses)
        self.streams = list(streams)
        self.requests: list[ChatRequest] = []
        self.stream_requests: list[ChatRequest] = []
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    async def complete(self, request: ChatRequest) -> ModelResponse:
        self.requests.append(request)
        if not self.responses:
            return ModelResponse(message=Message.assistant("done"))
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Message):
            return ModelResponse(message=item)
        return item

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[AIStreamEvent]:
        self.stream_requests.append(request)
        item = self.streams.pop(0) if self.streams else [text_event("done")]
        if isinstance(item, BaseException):
            raise item
        for event in item:
            if event is HANG:
                await asyncio.sleep(3600)
            if isinstance(event, BaseException):
                raise event
            yield event


class MemoryRepository:
    """In-memory chat store recording every call it receives."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.sessions: list[ChatSession] = []
        self.messages: list[tuple[str, str, Message]] = []
        self.tool_calls: dict[str, dict[str, Any]] = {}
        self.single_saves = 0
        self.batch_saves: list[int] = []
        self.fail_messages = False

    def _next(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    async def create_session(self, title: str, **kwargs: Any) -> ChatSession:
        session = ChatSession(id=self._next("session-"), title=title, **kwargs)
        self.sessions.append(session)
        return session

    async def save_message(self, session_id: str, message: Message, *, agent_name: str | None = None) -> str:
        if self.fail_messages:
            raise RuntimeError("database is locked")
        self.single_saves += 1
        message_id = self._next("m")
        self.messages.append((message_id, session_id, message))
        return message_id

    async def save_message_batch(
        self,
        session_id: str,
        messages: Sequence[Message],
        *,
        agent_name: str | None = None,
    ) -> list[str]:
        if self.fail_messages:
            raise RuntimeError("database is locked")
        self.batch_saves.append(len(messages))
        ids = []
        for message in messages:
            message_id = self._next("m")
            self.messages.append((message_id, session_id, message))
            ids.append(message_id)
        return ids

    async def save_tool_call(
        self,
        message_id: str,
        session_id: str,
        tool_name: str,
        arguments: str,
        *,
        agent_name: str | None = None,
    ) -> str:
        record_id = self._next("t")
        self.tool_calls[record_id] = {
            "message_id": message_id,
            "session_id": session_id,
            "tool_name": tool_name,
            "arguments": arguments,
            "result": None,
            "error": None,
        }
        return record_id

    async def update_tool_call_result(
        self,
        tool_call_id: str,
        result: str | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.tool_calls[tool_call_id].update(result=result, error=error, duration_ms=duration_ms)

    def roles(self) -> list[str]:
        return [message.role for _, _, message in self.messages]
