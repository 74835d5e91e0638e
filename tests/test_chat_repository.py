"""Tests for the SQLite chat repository."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

from loopwright.ai.orchestration.persistence import ChatRepository, PendingWriteBuffer
from loopwright.ai.orchestration.types import Message, ToolCall, ToolResult
from loopwright.services.chat_repository import SqliteChatRepository


@pytest.fixture
def store(tmp_path: Path):
    repo = SqliteChatRepository(tmp_path / "history" / "chat.db")
    yield repo
    repo.close()


def test_repository_satisfies_protocol(store: SqliteChatRepository) -> None:
    assert isinstance(store, ChatRepository)
    assert store.path.exists()


@pytest.mark.asyncio
async def test_session_round_trip(store: SqliteChatRepository) -> None:
    session = await store.create_session(
        "Refactor",
        agent_name="Assistant",
        model="gpt-4.1",
        system_prompt="sys",
        temperature=0.2,
        max_tokens=256,
    )

    loaded = await store.get_session(session.id)

    assert loaded == session
    assert await store.get_session("missing") is None


@pytest.mark.asyncio
async def test_messages_get_sequence_numbers(store: SqliteChatRepository) -> None:
    session = await store.create_session("Chat")

    first = await store.save_message(session.id, Message.user("hello"), agent_name="Assistant")
    batch = await store.save_message_batch(
        session.id,
        [
            Message.assistant(None, tool_calls=[ToolCall(id="c1", name="ls", arguments="{}")]),
            Message.tool("a.py", tool_call_id="c1", name="ls"),
        ],
    )

    records = await store.get_messages(session.id)

    assert [record.id for record in records] == [first, *batch]
    assert [record.sequence_number for record in records] == [1, 2, 3]
    assert [record.role for record in records] == ["user", "assistant", "tool"]
    assert records[0].agent_name == "Assistant"
    assert json.loads(records[1].tool_calls or "[]")[0]["function"]["name"] == "ls"
    assert records[2].tool_call_id == "c1"
    assert records[2].name == "ls"


@pytest.mark.asyncio
async def test_empty_batch_is_noop(store: SqliteChatRepository) -> None:
    session = await store.create_session("Chat")

    assert await store.save_message_batch(session.id, []) == []
    assert await store.get_messages(session.id) == []


@pytest.mark.asyncio
async def test_tool_call_records(store: SqliteChatRepository) -> None:
    session = await store.create_session("Chat")
    message_id = await store.save_message(session.id, Message.assistant("calling"))

    record_id = await store.save_tool_call(message_id, session.id, "read_file", '{"path": "a"}', agent_name="A")
    await store.update_tool_call_result(record_id, "Error: nope", "nope", 12)

    (record,) = await store.get_tool_calls(session.id)
    assert record.id == record_id
    assert record.message_id == message_id
    assert record.arguments == '{"path": "a"}'
    assert record.result == "Error: nope"
    assert record.error == "nope"
    assert record.duration_ms == 12
    assert record.agent_name == "A"


@pytest.mark.asyncio
async def test_session_listing_and_children(store: SqliteChatRepository) -> None:
    parent = await store.create_session("Main")
    child = await store.create_session("Sub", chat_type="SubAgent", parent_session_id=parent.id)

    assert [s.id for s in await store.get_sessions(chat_type="SubAgent")] == [child.id]
    assert {s.id for s in await store.get_sessions()} == {parent.id, child.id}
    assert [s.id for s in await store.get_sub_agent_sessions(parent.id)] == [child.id]

    await store.set_session_inactive(child.id)
    refreshed = await store.get_session(child.id)
    assert refreshed is not None
    assert refreshed.is_active is False


def test_orphans_are_removed_on_open(tmp_path: Path) -> None:
    path = tmp_path / "chat.db"
    SqliteChatRepository(path).close()
    conn = sqlite3.connect(path)
    with conn:
        conn.execute(
            "INSERT INTO chat_messages (id, session_id, role, content, created_at, sequence_number)"
            " VALUES ('m1', 'gone', 'user', 'x', 'now', 1)"
        )
    conn.close()

    reopened = SqliteChatRepository(path)
    try:
        rows = reopened._conn.execute("SELECT COUNT(*) FROM chat_messages").fetchone()
    finally:
        reopened.close()

    assert rows[0] == 0


@pytest.mark.asyncio
async def test_pending_buffer_writes_through_to_sqlite(store: SqliteChatRepository) -> None:
    buffer = PendingWriteBuffer(store, agent_name="Assistant")
    call = ToolCall(id="c1", name="ls", arguments="{}")

    buffer.save_message(Message.user("list files"))
    message_ref = buffer.save_message(Message.assistant(None, tool_calls=[call]))
    call_ref = buffer.save_tool_call(message_ref, call)
    buffer.update_tool_call_result(call_ref, ToolResult.ok("a.py"))
    buffer.save_message(Message.tool("a.py", tool_call_id="c1", name="ls"))
    await buffer.aclose()

    assert buffer.session_id is not None
    messages = await store.get_messages(buffer.session_id)
    (record,) = await store.get_tool_calls(buffer.session_id)
    assert [m.role for m in messages] == ["user", "assistant", "tool"]
    assert record.message_id == messages[1].id
    assert record.result == "a.py"
    assert buffer.dropped_count == 0
