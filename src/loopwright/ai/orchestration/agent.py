"""The agent turn loop.

One call to :meth:`Agent.execute` or :meth:`Agent.execute_stream` is a turn:
the user input goes into history, then the model is asked for a reply until
it answers without tool calls. Each round repairs the outbound history,
sends it, and either finishes or dispatches the requested tools in order,
appends their results and goes around again.

The streaming variant reads provider events on a producer task, forwards
text and tool-call fragments to the caller's sink as they arrive, and falls
back to the non-streaming loop when the provider rejects streaming.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, Mapping, Protocol, Sequence, TypeVar

from ...services.telemetry import emit as telemetry_emit
from ...utils.logging import agent_scope
from ..tools.registry import ToolRegistry
from . import validation
from .accumulator import StreamAccumulator
from .cache_control import annotate_tool_results
from .config import FALLBACK_RESPONSE, AgentConfiguration
from .dispatcher import ToolDispatcher, parse_tool_arguments
from .errors import AgentError, TurnCancelledError, is_streaming_unsupported
from .history import ConversationHistory
from .persistence import ChatRepository, ChatSession, PendingWriteBuffer
from .types import ChatRequest, Message, ModelResponse, StreamEvent, ToolCallDelta, Usage

__all__ = [
    "Agent",
    "ModelClient",
    "StreamSink",
    "ToolCallback",
    "STREAMING_FALLBACK_NOTICE",
    "CANCELLED_NOTICE",
    "CANCELLED_TOOL_RESULT",
]

LOGGER = logging.getLogger(__name__)

STREAMING_FALLBACK_NOTICE = "Streaming is not available for this model; continuing without streaming."
CANCELLED_NOTICE = "Request cancelled."
CANCELLED_TOOL_RESULT = "Tool call was cancelled; no result is available."

T = TypeVar("T")

# Callback invoked right before a tool call is dispatched: (call_id, name, params).
ToolCallback = Callable[[str, str, Mapping[str, Any]], Any]

# Receives every StreamEvent of an execute_stream call; may be sync or async.
StreamSink = Callable[[StreamEvent], Any]


class ModelClient(Protocol):
    """What the agent needs from an LLM client. :class:`AIClient` conforms."""

    async def complete(self, request: ChatRequest) -> ModelResponse:
        ...

    def stream_chat(self, request: ChatRequest) -> AsyncIterator[Any]:
        ...


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


class _StreamEnd:
    """Sentinel queued by the producer after the last provider event."""


_STREAM_END = _StreamEnd()


class _EventEmitter:
    """Numbers and delivers stream events; at most one finished event."""

    def __init__(self, sink: StreamSink) -> None:
        self._sink = sink
        self._sequence = 0
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    async def emit(
        self,
        *,
        text_delta: str | None = None,
        tool_call_delta: ToolCallDelta | None = None,
        notice: str | None = None,
        finished: bool = False,
        cancelled: bool = False,
    ) -> None:
        if self._finished:
            return
        self._sequence += 1
        event = StreamEvent(
            sequence=self._sequence,
            text_delta=text_delta,
            tool_call_delta=tool_call_delta,
            notice=notice,
            finished=finished,
            cancelled=cancelled,
        )
        if finished:
            self._finished = True
        try:
            result = self._sink(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.warning("Stream sink raised while handling event %d", event.sequence, exc_info=True)

    async def finish(self, *, cancelled: bool = False, notice: str | None = None) -> None:
        await self.emit(finished=True, cancelled=cancelled, notice=notice)


@dataclass(slots=True)
class _TurnState:
    history: ConversationHistory
    cancel_event: asyncio.Event | None
    tool_callback: ToolCallback | None
    iterations: int = 0
    tool_calls: int = 0
    usage: Usage | None = None
    streamed: bool = False

    def add_usage(self, usage: Usage | None) -> None:
        if usage is not None:
            self.usage = usage if self.usage is None else self.usage + usage


# -----------------------------------------------------------------------------
# Agent
# -----------------------------------------------------------------------------


class Agent:
    """Single-agent conversation engine.

    Calls on one agent must not overlap; the agent owns its history and
    refuses a second concurrent turn.

    Args:
        config: Agent configuration.
        client: LLM client (see :class:`ModelClient`).
        registry: Tools the model may call.
        repository: Optional chat store; writes go through a
            :class:`PendingWriteBuffer` and never block the turn.
        session_id: Existing session to append to; a new session is
            created on the first write when omitted.
        dispatcher: Custom tool dispatcher; defaults to one built on
            *registry*.
        owned_resources: Objects closed by :meth:`aclose`, last first. Each
            needs an ``aclose`` coroutine or a ``close`` method.

    Example:
        >>> async with Agent(config, client, registry) as agent:
        ...     reply = await agent.execute("List the files in src/")
    """

    def __init__(
        self,
        config: AgentConfiguration,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        repository: ChatRepository | None = None,
        session_id: str | None = None,
        dispatcher: ToolDispatcher | None = None,
        owned_resources: Sequence[Any] = (),
    ) -> None:
        self._config = config
        self._client = client
        self._registry = registry
        self._writes: PendingWriteBuffer | None = None
        if repository is not None:
            self._writes = PendingWriteBuffer(
                repository,
                session_id=session_id,
                session_factory=self._create_session,
                agent_name=config.name,
            )
        self._dispatcher = dispatcher or ToolDispatcher(registry, timeout=config.tool_timeout)
        if self._writes is not None and self._dispatcher.recorder is None:
            self._dispatcher.recorder = self._writes
        self._history = ConversationHistory(
            config.system_prompt,
            config.max_history_messages,
            writer=self._writes,
        )
        self._streaming_rejected = False
        self._busy = False
        self._last_usage: Usage | None = None
        self._owned_resources = list(owned_resources)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> AgentConfiguration:
        return self._config

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def session_id(self) -> str | None:
        return self._writes.session_id if self._writes is not None else None

    @property
    def streaming_rejected(self) -> bool:
        """True once the provider has refused a streaming request."""
        return self._streaming_rejected

    @property
    def last_usage(self) -> Usage | None:
        """Usage summed over every model call of the most recent turn."""
        return self._last_usage

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def execute(
        self,
        text: str,
        *,
        cancel_event: asyncio.Event | None = None,
        tool_callback: ToolCallback | None = None,
    ) -> Message:
        """Run a full turn without streaming and return the final message.

        Raises:
            TurnCancelledError: If *cancel_event* is set before the turn ends.
        """
        started = time.perf_counter()
        with self._turn_guard():
            state = self._start_turn(text, cancel_event, tool_callback)
            result = await self._run_sync(state)
            self._finish_turn(state, started)
            return result

    async def execute_stream(
        self,
        text: str,
        sink: StreamSink,
        *,
        cancel_event: asyncio.Event | None = None,
        tool_callback: ToolCallback | None = None,
    ) -> Message:
        """Run a turn, forwarding incremental output to *sink*.

        *sink* receives :class:`StreamEvent` objects with strictly increasing
        sequence numbers. The last event always has ``finished=True``,
        whether the turn completed, fell back to the non-streaming loop, was
        cancelled or failed.

        Raises:
            TurnCancelledError: If *cancel_event* is set before the turn ends.
        """
        started = time.perf_counter()
        emitter = _EventEmitter(sink)
        with self._turn_guard():
            try:
                state = self._start_turn(text, cancel_event, tool_callback)
                if not self._config.enable_streaming or self._streaming_rejected:
                    result = await self._run_sync(state)
                    if result.text:
                        await emitter.emit(text_delta=result.text)
                else:
                    result = await self._run_streaming(state, emitter)
            except TurnCancelledError:
                telemetry_emit("stream.cancelled", {"agent": self._config.name, "model": self._config.model})
                await emitter.finish(cancelled=True, notice=CANCELLED_NOTICE)
                raise
            except asyncio.CancelledError:
                await emitter.finish(cancelled=True, notice=CANCELLED_NOTICE)
                raise
            except Exception as exc:
                await emitter.finish(notice=f"Request failed: {exc}")
                raise
            await emitter.finish()
            self._finish_turn(state, started)
            return result

    def get_history(self) -> list[Message]:
        return self._history.snapshot()

    def clear_history(self) -> None:
        self._history.clear()

    async def flush(self) -> None:
        """Wait for queued persistence writes to be attempted."""
        if self._writes is not None:
            await self._writes.flush()

    async def aclose(self) -> None:
        """Drain pending writes, then close the resources this agent owns."""
        if self._writes is not None:
            await self._writes.aclose()
        owned, self._owned_resources = self._owned_resources, []
        for resource in reversed(owned):
            await _close_resource(resource)

    async def __aenter__(self) -> Agent:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Turn setup
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _turn_guard(self) -> Iterator[None]:
        if self._busy:
            raise AgentError("Agent is already running a turn")
        self._busy = True
        try:
            with agent_scope(self._config.name):
                yield
        finally:
            self._busy = False

    def _start_turn(
        self,
        text: str,
        cancel_event: asyncio.Event | None,
        tool_callback: ToolCallback | None,
    ) -> _TurnState:
        if self._config.maintain_history:
            history = self._history
        else:
            # Scratch window: system prompt plus this input only.
            history = ConversationHistory(self._config.system_prompt, None, writer=self._writes)
        history.append_user(text)
        history.trim()
        return _TurnState(history=history, cancel_event=cancel_event, tool_callback=tool_callback)

    def _finish_turn(self, state: _TurnState, started: float) -> None:
        self._last_usage = state.usage
        usage = state.usage or Usage()
        telemetry_emit(
            "turn.completed",
            {
                "agent": self._config.name,
                "model": self._config.model,
                "streamed": state.streamed,
                "iterations": state.iterations,
                "tool_calls": state.tool_calls,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "cost": usage.cost,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            },
        )

    async def _create_session(self, repository: ChatRepository) -> ChatSession:
        return await repository.create_session(
            self._config.name,
            chat_type="Agent",
            agent_name=self._config.name,
            model=self._config.model,
            system_prompt=self._config.system_prompt,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )

    def _build_request(self, history: ConversationHistory) -> ChatRequest:
        messages = validation.repair(history.snapshot())
        tools = None
        if self._config.enable_tools:
            allowlist = self._config.tool_names or None
            tools = tuple(self._registry.list_schemas(allowlist)) or None
        return ChatRequest(
            model=self._config.model,
            messages=tuple(messages),
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            top_p=self._config.top_p,
            frequency_penalty=self._config.frequency_penalty,
            presence_penalty=self._config.presence_penalty,
            stop=self._config.stop_sequences or None,
            tools=tools,
            tool_choice="auto" if tools else None,
            include_usage=self._config.include_usage,
        )

    # ------------------------------------------------------------------
    # Synchronous loop
    # ------------------------------------------------------------------
    async def _run_sync(self, state: _TurnState) -> Message:
        while True:
            _raise_if_cancelled(state.cancel_event)
            request = self._build_request(state.history)
            response = await _until_cancelled(self._client.complete(request), state.cancel_event)
            state.add_usage(response.usage)
            done, result = await self._handle_reply(state, response.message)
            if done:
                return result if result is not None else Message.assistant(FALLBACK_RESPONSE)

    # ------------------------------------------------------------------
    # Streaming loop
    # ------------------------------------------------------------------
    async def _run_streaming(self, state: _TurnState, emitter: _EventEmitter) -> Message:
        state.streamed = True
        while True:
            _raise_if_cancelled(state.cancel_event)
            request = self._build_request(state.history)
            try:
                message = await self._consume_stream(request, state, emitter)
            except TurnCancelledError:
                raise
            except Exception as exc:
                if not is_streaming_unsupported(exc):
                    raise
                return await self._fall_back(state, emitter, exc)
            done, result = await self._handle_reply(state, message)
            if done:
                return result if result is not None else Message.assistant(FALLBACK_RESPONSE)

    async def _fall_back(self, state: _TurnState, emitter: _EventEmitter, exc: Exception) -> Message:
        self._streaming_rejected = True
        LOGGER.warning("Provider rejected streaming for %s; falling back: %s", self._config.model, exc)
        telemetry_emit(
            "stream.fallback",
            {"agent": self._config.name, "model": self._config.model, "error": str(exc)},
        )
        await emitter.emit(notice=STREAMING_FALLBACK_NOTICE)
        result = await self._run_sync(state)
        if result.text:
            await emitter.emit(text_delta=result.text)
        return result

    async def _consume_stream(
        self,
        request: ChatRequest,
        state: _TurnState,
        emitter: _EventEmitter,
    ) -> Message | None:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        producer = asyncio.create_task(self._pump_stream(request, queue))
        accumulator = StreamAccumulator()
        try:
            while True:
                item = await _until_cancelled(queue.get(), state.cancel_event)
                if item is _STREAM_END:
                    break
                if isinstance(item, BaseException):
                    raise item
                kind = getattr(item, "type", None)
                if kind == "text" and item.text_delta:
                    accumulator.add_text(item.text_delta)
                    await emitter.emit(text_delta=item.text_delta)
                elif kind == "tool_call" and item.tool_call_delta is not None:
                    accumulator.add_tool_call(item.tool_call_delta)
                    await emitter.emit(tool_call_delta=item.tool_call_delta)
                elif kind == "usage":
                    accumulator.add_usage(item.usage)
                elif kind == "finish":
                    accumulator.finish_reason = item.finish_reason
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
        state.add_usage(accumulator.usage)
        return accumulator.to_message()

    async def _pump_stream(self, request: ChatRequest, queue: asyncio.Queue[Any]) -> None:
        try:
            async for event in self._client.stream_chat(request):
                await queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(exc)
            return
        await queue.put(_STREAM_END)

    # ------------------------------------------------------------------
    # Shared round handling
    # ------------------------------------------------------------------
    async def _handle_reply(self, state: _TurnState, message: Message | None) -> tuple[bool, Message | None]:
        """Process one assistant reply; returns (turn done, final message)."""
        if message is None:
            LOGGER.debug("Model returned no assistant message")
            return True, None

        if not message.tool_calls:
            return True, state.history.append_message(replace(message, metadata={}))

        valid_calls = tuple(call for call in message.tool_calls if call.is_well_formed)
        if not valid_calls:
            LOGGER.warning("Model returned %d tool call(s), none well-formed; ending turn", len(message.tool_calls))
            return True, None

        limit = self._config.max_tool_iterations
        if limit is not None and state.iterations >= limit:
            LOGGER.warning("Reached max tool iterations (%d); returning last reply", limit)
            final = replace(message, tool_calls=None, metadata={})
            if final.has_content:
                final = state.history.append_message(final)
            return True, final

        state.iterations += 1
        placeholder = state.history.append_assistant(message.content, valid_calls)
        message_ref = placeholder.metadata.get("persist_ref")

        tool_messages: list[Message] = []
        try:
            for call in valid_calls:
                _raise_if_cancelled(state.cancel_event)
                await self._notify_tool_callback(state.tool_callback, call.id, call.name, call.arguments)
                result = await self._dispatcher.execute(call, message_ref=message_ref)
                state.tool_calls += 1
                tool_messages.append(Message.tool(result.formatted_output, tool_call_id=call.id, name=call.name))
        except (TurnCancelledError, asyncio.CancelledError):
            # The placeholder already lists every call; each id needs an answer.
            answered = len(tool_messages)
            tool_messages.extend(
                Message.tool(CANCELLED_TOOL_RESULT, tool_call_id=call.id, name=call.name)
                for call in valid_calls[answered:]
            )
            state.history.extend(tool_messages)
            raise

        annotated = annotate_tool_results(
            tool_messages,
            self._config.model,
            threshold_chars=self._config.cache_threshold_chars,
            max_breakpoints=self._config.max_cache_breakpoints,
            prefixes=self._config.cache_model_prefixes,
        )
        state.history.extend(annotated)
        state.history.trim()
        return False, None

    async def _notify_tool_callback(
        self,
        callback: ToolCallback | None,
        call_id: str,
        name: str,
        arguments: str,
    ) -> None:
        if callback is None:
            return
        try:
            params: Mapping[str, Any] = parse_tool_arguments(arguments)
        except ValueError:
            params = {}
        try:
            result = callback(call_id, name, params)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.warning("Tool callback raised for %s", name, exc_info=True)


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelledError()


async def _until_cancelled(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await *awaitable* unless *cancel_event* fires first."""
    if cancel_event is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise
    if waiter.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnCancelledError()
    waiter.cancel()
    return task.result()


async def _close_resource(resource: Any) -> None:
    closer = getattr(resource, "aclose", None) or getattr(resource, "close", None)
    if closer is None:
        return
    try:
        result = closer()
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.warning("Failed to close %s", type(resource).__name__, exc_info=True)
