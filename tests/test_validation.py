"""Tests for tool-call pairing validation and repair."""

from __future__ import annotations

from loopwright.ai.orchestration import validation
from loopwright.ai.orchestration.types import Message, ToolCall


def _call(call_id: str, name: str = "read_file") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments="{}")


def test_orphaned_result_is_dropped() -> None:
    messages = [
        Message.system("sys"),
        Message.tool("stale", tool_call_id="A"),
        Message.assistant(None, tool_calls=[_call("B")]),
        Message.tool("fresh", tool_call_id="B"),
    ]

    assert not validation.is_valid(messages)
    repaired = validation.repair(messages)

    assert [m.role for m in repaired] == ["system", "assistant", "tool"]
    assert repaired[2].tool_call_id == "B"
    assert validation.is_valid(repaired)


def test_repair_leaves_input_untouched() -> None:
    messages = [Message.tool("stale", tool_call_id="A")]

    validation.repair(messages)

    assert len(messages) == 1


def test_result_before_its_call_is_orphaned() -> None:
    messages = [
        Message.tool("early", tool_call_id="A"),
        Message.assistant(None, tool_calls=[_call("A")]),
    ]

    assert validation.find_orphaned_tool_results(messages) == [0]


def test_result_without_call_id_is_orphaned() -> None:
    messages = [
        Message.assistant(None, tool_calls=[_call("A")]),
        Message(role="tool", content="x"),
    ]

    assert validation.find_orphaned_tool_results(messages) == [1]


def test_malformed_calls_are_removed() -> None:
    messages = [
        Message.assistant("thinking", tool_calls=[_call("A"), ToolCall(id="", name="ls")]),
        Message.tool("ok", tool_call_id="A"),
    ]

    assert not validation.is_valid(messages)
    repaired = validation.repair(messages)

    assert repaired[0].tool_calls == (_call("A"),)
    assert validation.is_valid(repaired)


def test_assistant_with_only_malformed_calls_keeps_content() -> None:
    messages = [Message.assistant("let me check", tool_calls=[ToolCall(id="x", name="")])]

    repaired = validation.repair(messages)

    assert len(repaired) == 1
    assert repaired[0].tool_calls is None
    assert repaired[0].text == "let me check"


def test_assistant_with_only_malformed_calls_and_no_content_is_dropped() -> None:
    messages = [
        Message.user("hi"),
        Message.assistant(None, tool_calls=[ToolCall(id="", name="")]),
    ]

    repaired = validation.repair(messages)

    assert [m.role for m in repaired] == ["user"]


def test_valid_history_passes_through_unchanged() -> None:
    messages = [
        Message.system("sys"),
        Message.user("hi"),
        Message.assistant(None, tool_calls=[_call("A"), _call("B")]),
        Message.tool("1", tool_call_id="A"),
        Message.tool("2", tool_call_id="B"),
        Message.assistant("done"),
    ]

    assert validation.is_valid(messages)
    assert validation.repair(messages) == messages


def test_id_helpers() -> None:
    messages = [
        Message.assistant(None, tool_calls=[_call("A"), ToolCall(id="bad", name="")]),
        Message.tool("1", tool_call_id="A"),
        Message.tool("2", tool_call_id="Z"),
    ]

    assert validation.introduced_tool_call_ids(messages) == {"A"}
    assert validation.referenced_tool_call_ids(messages) == {"A", "Z"}
