"""SQLite-backed chat history repository."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Sequence

from ..ai.orchestration.persistence import ChatMessageRecord, ChatSession, ToolCallRecord
from ..ai.orchestration.types import Message

__all__ = ["SqliteChatRepository"]

LOGGER = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        chat_type TEXT NOT NULL,
        parent_session_id TEXT,
        agent_name TEXT,
        model TEXT,
        system_prompt TEXT,
        temperature REAL,
        max_tokens INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES chat_sessions(id),
        role TEXT NOT NULL,
        content TEXT,
        name TEXT,
        agent_name TEXT,
        created_at TEXT NOT NULL,
        sequence_number INTEGER NOT NULL,
        tool_calls TEXT,
        tool_call_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tool_calls (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL REFERENCES chat_messages(id),
        session_id TEXT NOT NULL REFERENCES chat_sessions(id),
        tool_name TEXT NOT NULL,
        arguments TEXT NOT NULL,
        result TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        agent_name TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id, sequence_number)",
    "CREATE INDEX IF NOT EXISTS idx_tool_calls_session ON tool_calls(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_tool_calls_message ON tool_calls(message_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_sessions_type ON chat_sessions(chat_type)",
    "CREATE INDEX IF NOT EXISTS idx_chat_sessions_parent ON chat_sessions(parent_session_id)",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


class SqliteChatRepository:
    """Stores chat sessions, messages and tool-call records in SQLite.

    Messages get per-session sequence numbers so a session replays in the
    order it was written. Blocking work runs on the default executor.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._path = Path(db_path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = RLock()
        self._create_schema()
        self._cleanup_orphans()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def _create_schema(self) -> None:
        with self._lock:
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)

    def _cleanup_orphans(self) -> None:
        with self._lock:
            try:
                with self._conn:
                    removed_calls = self._conn.execute(
                        """
                        DELETE FROM tool_calls
                        WHERE session_id NOT IN (SELECT id FROM chat_sessions)
                           OR message_id NOT IN (SELECT id FROM chat_messages)
                        """
                    ).rowcount
                    removed_messages = self._conn.execute(
                        "DELETE FROM chat_messages WHERE session_id NOT IN (SELECT id FROM chat_sessions)"
                    ).rowcount
            except sqlite3.DatabaseError:
                LOGGER.warning("Failed to clean up orphaned chat records", exc_info=True)
                return
        if removed_calls or removed_messages:
            LOGGER.info(
                "Removed %d orphaned tool call(s) and %d orphaned message(s)",
                removed_calls,
                removed_messages,
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
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
        now = _now()
        session = ChatSession(
            id=_new_id(),
            title=title,
            chat_type=chat_type,
            parent_session_id=parent_session_id,
            agent_name=agent_name,
            model=model,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            created_at=now,
            updated_at=now,
            is_active=True,
        )
        await self._run_blocking(self._insert_session, session)
        return session

    async def save_message(
        self,
        session_id: str,
        message: Message,
        *,
        agent_name: str | None = None,
    ) -> str:
        ids = await self._run_blocking(self._insert_messages, session_id, [message], agent_name)
        return ids[0]

    async def save_message_batch(
        self,
        session_id: str,
        messages: Sequence[Message],
        *,
        agent_name: str | None = None,
    ) -> list[str]:
        if not messages:
            return []
        return await self._run_blocking(self._insert_messages, session_id, list(messages), agent_name)

    async def save_tool_call(
        self,
        message_id: str,
        session_id: str,
        tool_name: str,
        arguments: str,
        *,
        agent_name: str | None = None,
    ) -> str:
        record_id = _new_id()
        await self._run_blocking(
            self._execute_write,
            """
            INSERT INTO tool_calls (id, message_id, session_id, tool_name, arguments, created_at, agent_name)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (record_id, message_id, session_id, tool_name, arguments or "", _now(), agent_name),
        )
        return record_id

    async def update_tool_call_result(
        self,
        tool_call_id: str,
        result: str | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        await self._run_blocking(
            self._execute_write,
            "UPDATE tool_calls SET result = ?, error = ?, duration_ms = ? WHERE id = ?",
            (result, error, int(duration_ms), tool_call_id),
        )

    async def set_session_inactive(self, session_id: str) -> None:
        await self._run_blocking(
            self._execute_write,
            "UPDATE chat_sessions SET is_active = 0, updated_at = ? WHERE id = ?",
            (_now(), session_id),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_session(self, session_id: str) -> ChatSession | None:
        rows = await self._run_blocking(self._query, "SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
        return _row_to_session(rows[0]) if rows else None

    async def get_sessions(self, chat_type: str | None = None, limit: int = 100) -> list[ChatSession]:
        if chat_type is None:
            sql = "SELECT * FROM chat_sessions ORDER BY updated_at DESC LIMIT ?"
            params: tuple[Any, ...] = (limit,)
        else:
            sql = "SELECT * FROM chat_sessions WHERE chat_type = ? ORDER BY updated_at DESC LIMIT ?"
            params = (chat_type, limit)
        rows = await self._run_blocking(self._query, sql, params)
        return [_row_to_session(row) for row in rows]

    async def get_sub_agent_sessions(self, parent_session_id: str) -> list[ChatSession]:
        rows = await self._run_blocking(
            self._query,
            "SELECT * FROM chat_sessions WHERE parent_session_id = ? ORDER BY created_at",
            (parent_session_id,),
        )
        return [_row_to_session(row) for row in rows]

    async def get_messages(self, session_id: str) -> list[ChatMessageRecord]:
        rows = await self._run_blocking(
            self._query,
            "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY sequence_number",
            (session_id,),
        )
        return [_row_to_message(row) for row in rows]

    async def get_tool_calls(self, session_id: str) -> list[ToolCallRecord]:
        rows = await self._run_blocking(
            self._query,
            "SELECT * FROM tool_calls WHERE session_id = ? ORDER BY created_at, rowid",
            (session_id,),
        )
        return [_row_to_tool_call(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:  # pragma: no cover
                LOGGER.debug("Failed to close chat repository", exc_info=True)

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------
    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args))

    def _insert_session(self, session: ChatSession) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO chat_sessions (
                        id, title, chat_type, parent_session_id, agent_name, model,
                        system_prompt, temperature, max_tokens, created_at, updated_at, is_active
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.title,
                        session.chat_type,
                        session.parent_session_id,
                        session.agent_name,
                        session.model,
                        session.system_prompt,
                        session.temperature,
                        session.max_tokens,
                        session.created_at,
                        session.updated_at,
                        1 if session.is_active else 0,
                    ),
                )

    def _insert_messages(
        self,
        session_id: str,
        messages: Sequence[Message],
        agent_name: str | None,
    ) -> list[str]:
        ids: list[str] = []
        now = _now()
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "SELECT COALESCE(MAX(sequence_number), 0) FROM chat_messages WHERE session_id = ?",
                    (session_id,),
                )
                sequence = int(cursor.fetchone()[0])
                for message in messages:
                    sequence += 1
                    message_id = _new_id()
                    tool_calls = (
                        json.dumps([call.to_chat_param() for call in message.tool_calls])
                        if message.tool_calls
                        else None
                    )
                    self._conn.execute(
                        """
                        INSERT INTO chat_messages (
                            id, session_id, role, content, name, agent_name,
                            created_at, sequence_number, tool_calls, tool_call_id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            message_id,
                            session_id,
                            message.role,
                            message.text,
                            message.name,
                            agent_name,
                            now,
                            sequence,
                            tool_calls,
                            message.tool_call_id,
                        ),
                    )
                    ids.append(message_id)
                self._conn.execute(
                    "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
                    (now, session_id),
                )
        return ids

    def _execute_write(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(sql, params)

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        with self._lock:
            return list(self._conn.execute(sql, params).fetchall())


def _row_to_session(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        title=row["title"],
        chat_type=row["chat_type"],
        parent_session_id=row["parent_session_id"],
        agent_name=row["agent_name"],
        model=row["model"],
        system_prompt=row["system_prompt"],
        temperature=row["temperature"],
        max_tokens=row["max_tokens"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_active=bool(row["is_active"]),
    )


def _row_to_message(row: sqlite3.Row) -> ChatMessageRecord:
    return ChatMessageRecord(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        sequence_number=int(row["sequence_number"]),
        tool_calls=row["tool_calls"],
        tool_call_id=row["tool_call_id"],
        name=row["name"],
        agent_name=row["agent_name"],
        created_at=row["created_at"],
    )


def _row_to_tool_call(row: sqlite3.Row) -> ToolCallRecord:
    return ToolCallRecord(
        id=row["id"],
        message_id=row["message_id"],
        session_id=row["session_id"],
        tool_name=row["tool_name"],
        arguments=row["arguments"],
        result=row["result"],
        error=row["error"],
        duration_ms=row["duration_ms"],
        agent_name=row["agent_name"],
        created_at=row["created_at"],
    )
