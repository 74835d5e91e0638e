"""Tests for the streaming agent turn loop.

Covers delta forwarding, event sequencing, the non-streaming fallback,
cancellation, and failure handling of ``Agent.execute_stream``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from helpers import HANG, ScriptedClient, text_event, tool_event, usage_event
from loopwright.ai.orchestration.agent import CANCELLED_NOTICE, STREAMING_FALLBACK_NOTICE, Agent
from loopwright.ai.orchestration.config import FALLBACK_RESPONSE, AgentConfiguration
from loopwright.ai.orchestration.errors import StreamingUnsupportedError, TurnCancelledError
from loopwright.ai.orchestration.types import Message, StreamEvent, Usage
from loopwright.ai.tools.registry import ToolRegistry
from loopwright.ai.tools.types import ToolSpec


class _Tools:
    """Registry wrapper that counts dispatches."""

    def __init__(self) -> None:
        self.calls: list[Mapping[str, Any]] = []
        self.registry = ToolRegistry()
        self.registry.register_function(ToolSpec("read_file", "Read a file"), self._read)

    def _read(self, params: Mapping[str, Any]) -> str:
        self.calls.append(params)
        return f"<{params.get('path')}>"


@pytest.fixture
def tools() -> _Tools:
    return _Tools()


def _config(**overrides: Any) -> AgentConfiguration:
    values: dict[str, Any] = {"system_prompt": "sys", "enable_tools": True}
    values.update(overrides)
    return AgentConfiguration(**values)


def _finished(events: list[StreamEvent]) -> list[StreamEvent]:
    return [event for event in events if event.finished]


def _assert_well_sequenced(events: list[StreamEvent]) -> None:
    sequences = [event.sequence for event in events]
    assert sequences == sorted(set(sequences))
    assert len(_finished(events)) == 1
    assert events[-1].finished


class TestStreamingTurn:
    @pytest.mark.asyncio
    async def test_text_deltas_are_forwarded(self, tools: _Tools) -> None:
        client = ScriptedClient(streams=[[text_event("Hel"), text_event("lo"), usage_event(7, 2)]])
        agent = Agent(_config(), client, tools.registry)
        events: list[StreamEvent] = []

        result = await agent.execute_stream("hi", events.append)

        assert result.text == "Hello"
        assert [e.text_delta for e in events if e.text_delta] == ["Hel", "lo"]
        assert events[0].sequence == 1
        _assert_well_sequenced(events)
        assert events[-1].cancelled is False
        assert agent.last_usage == Usage(prompt_tokens=7, completion_tokens=2)
        assert [m.role for m in agent.get_history()] == ["system", "user", "assistant"]
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_streamed_tool_call_fragments_are_merged(self, tools: _Tools) -> None:
        client = ScriptedClient(
            streams=[
                [
                    tool_event(0, call_id="c1", name="read_file", arguments='{"pa'),
                    tool_event(0, arguments='th": "a.py"}'),
                ],
                [text_event("done")],
            ]
        )
        agent = Agent(_config(), client, tools.registry)
        events: list[StreamEvent] = []

        result = await agent.execute_stream("read a", events.append)

        assert result.text == "done"
        assert tools.calls == [{"path": "a.py"}]
        assert len([e for e in events if e.tool_call_delta is not None]) == 2
        history = agent.get_history()
        assert history[2].tool_calls is not None
        assert history[2].tool_calls[0].arguments == '{"path": "a.py"}'
        assert history[3].text == "<a.py>"
        _assert_well_sequenced(events)

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self, tools: _Tools) -> None:
        received: list[StreamEvent] = []

        async def sink(event: StreamEvent) -> None:
            await asyncio.sleep(0)
            received.append(event)

        agent = Agent(_config(), ScriptedClient(streams=[[text_event("ok")]]), tools.registry)

        await agent.execute_stream("hi", sink)

        assert received[-1].finished

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_turn(self, tools: _Tools) -> None:
        def sink(event: StreamEvent) -> None:
            raise RuntimeError("closed socket")

        agent = Agent(_config(), ScriptedClient(streams=[[text_event("ok")]]), tools.registry)

        result = await agent.execute_stream("hi", sink)

        assert result.text == "ok"

    @pytest.mark.asyncio
    async def test_empty_stream_returns_fallback(self, tools: _Tools) -> None:
        agent = Agent(_config(), ScriptedClient(streams=[[]]), tools.registry)
        events: list[StreamEvent] = []

        result = await agent.execute_stream("hi", events.append)

        assert result.text == FALLBACK_RESPONSE
        _assert_well_sequenced(events)

    @pytest.mark.asyncio
    async def test_turn_telemetry_marks_streamed(self, tools: _Tools, telemetry_events: list) -> None:
        agent = Agent(_config(), ScriptedClient(streams=[[text_event("ok")]]), tools.registry)

        await agent.execute_stream("hi", lambda event: None)

        (turn,) = [e for e in telemetry_events if e["event"] == "turn.completed"]
        assert turn["streamed"] is True


class TestStreamingDisabled:
    @pytest.mark.asyncio
    async def test_disabled_streaming_matches_sync_result(self, tools: _Tools) -> None:
        script = [Message.assistant("same answer")]
        streaming_off = ScriptedClient(list(script))
        sync_client = ScriptedClient(list(script))
        events: list[StreamEvent] = []

        streamed = await Agent(_config(enable_streaming=False), streaming_off, tools.registry).execute_stream(
            "hi", events.append
        )
        direct = await Agent(_config(), sync_client, tools.registry).execute("hi")

        assert streamed.text == direct.text == "same answer"
        assert streaming_off.stream_requests == []
        assert [e.text_delta for e in events if e.text_delta] == ["same answer"]
        _assert_well_sequenced(events)


class TestFallback:
    @pytest.mark.asyncio
    async def test_rejected_stream_falls_back_to_sync(self, tools: _Tools, telemetry_events: list) -> None:
        client = ScriptedClient(
            responses=[Message.assistant("sync answer"), Message.assistant("second answer")],
            streams=[RuntimeError("The 'stream' parameter is not supported for this model")],
        )
        agent = Agent(_config(), client, tools.registry)
        events: list[StreamEvent] = []

        result = await agent.execute_stream("hi", events.append)

        assert result.text == "sync answer"
        assert agent.streaming_rejected
        assert [e.notice for e in events if e.notice] == [STREAMING_FALLBACK_NOTICE]
        assert [e.text_delta for e in events if e.text_delta] == ["sync answer"]
        _assert_well_sequenced(events)
        assert [e["event"] for e in telemetry_events].count("stream.fallback") == 1

        later: list[StreamEvent] = []
        second = await agent.execute_stream("again", later.append)

        assert second.text == "second answer"
        assert len(client.stream_requests) == 1
        assert [e.notice for e in later if e.notice] == []

    @pytest.mark.asyncio
    async def test_structured_signal_triggers_fallback(self, tools: _Tools) -> None:
        client = ScriptedClient(
            responses=[Message.assistant("sync")],
            streams=[StreamingUnsupportedError("nope")],
        )
        agent = Agent(_config(), client, tools.registry)

        result = await agent.execute_stream("hi", lambda event: None)

        assert result.text == "sync"
        assert agent.streaming_rejected

    @pytest.mark.asyncio
    async def test_fallback_result_equals_sync_result(self, tools: _Tools) -> None:
        script = [Message.assistant("identical")]
        rejecting = ScriptedClient(list(script), streams=[StreamingUnsupportedError("no streaming")])

        via_fallback = await Agent(_config(), rejecting, tools.registry).execute_stream("hi", lambda e: None)
        via_sync = await Agent(_config(), ScriptedClient(list(script)), tools.registry).execute("hi")

        assert via_fallback.text == via_sync.text


class TestStreamingCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_three_deltas(self, tools: _Tools, telemetry_events: list) -> None:
        client = ScriptedClient(
            streams=[
                [
                    text_event("a"),
                    text_event("b"),
                    text_event("c"),
                    HANG,
                    tool_event(0, call_id="c1", name="read_file", arguments='{"path": "x"}'),
                ]
            ]
        )
        agent = Agent(_config(), client, tools.registry)
        cancel = asyncio.Event()
        events: list[StreamEvent] = []

        def sink(event: StreamEvent) -> None:
            events.append(event)
            if len([e for e in events if e.text_delta]) == 3:
                cancel.set()

        with pytest.raises(TurnCancelledError):
            await agent.execute_stream("hi", sink, cancel_event=cancel)

        assert [e.text_delta for e in events if e.text_delta] == ["a", "b", "c"]
        finished = _finished(events)
        assert len(finished) == 1
        assert finished[0].cancelled
        assert finished[0].notice == CANCELLED_NOTICE
        assert events[-1] is finished[0]
        assert tools.calls == []
        assert [e["event"] for e in telemetry_events].count("stream.cancelled") == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_still_finishes_stream(self, tools: _Tools) -> None:
        client = ScriptedClient(streams=[[text_event("a"), HANG]])
        agent = Agent(_config(), client, tools.registry)
        first_delta = asyncio.Event()
        events: list[StreamEvent] = []

        def sink(event: StreamEvent) -> None:
            events.append(event)
            if event.text_delta:
                first_delta.set()

        task = asyncio.create_task(agent.execute_stream("hi", sink))
        await first_delta.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        _assert_well_sequenced(events)
        assert events[-1].cancelled


class TestStreamingFailure:
    @pytest.mark.asyncio
    async def test_mid_stream_error_emits_single_finished_event(self, tools: _Tools) -> None:
        client = ScriptedClient(streams=[[text_event("partial"), ConnectionResetError("connection reset")]])
        agent = Agent(_config(), client, tools.registry)
        events: list[StreamEvent] = []

        with pytest.raises(ConnectionResetError):
            await agent.execute_stream("hi", events.append)

        _assert_well_sequenced(events)
        assert events[-1].notice == "Request failed: connection reset"
        assert not agent.streaming_rejected
        assert client.requests == []
