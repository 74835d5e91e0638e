"""Tool-call pairing validation and repair.

Some providers reject a request when a tool-role message references a call id
that no retained assistant message issued. History trimming is FIFO and not
pairing-aware, so the outbound working copy is checked and repaired right
before every request.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

from .types import Message

__all__ = [
    "introduced_tool_call_ids",
    "referenced_tool_call_ids",
    "find_orphaned_tool_results",
    "is_valid",
    "repair",
]

LOGGER = logging.getLogger(__name__)


def introduced_tool_call_ids(messages: Sequence[Message]) -> set[str]:
    ids: set[str] = set()
    for message in messages:
        if message.role != "assistant" or not message.tool_calls:
            continue
        ids.update(call.id for call in message.tool_calls if call.is_well_formed)
    return ids


def referenced_tool_call_ids(messages: Sequence[Message]) -> set[str]:
    return {
        message.tool_call_id or ""
        for message in messages
        if message.role == "tool"
    }


def find_orphaned_tool_results(messages: Sequence[Message]) -> list[int]:
    """Return indexes of tool messages whose call was not issued earlier."""
    seen: set[str] = set()
    orphans: list[int] = []
    for position, message in enumerate(messages):
        if message.role == "assistant" and message.tool_calls:
            seen.update(call.id for call in message.tool_calls if call.is_well_formed)
        elif message.role == "tool":
            if not message.tool_call_id or message.tool_call_id not in seen:
                orphans.append(position)
    return orphans


def is_valid(messages: Sequence[Message]) -> bool:
    """Check the pairing invariant over *messages*.

    Valid means every tool result answers a well-formed call issued by a
    preceding assistant message, and no assistant carries a malformed call.
    """
    for message in messages:
        if message.role == "assistant" and message.tool_calls:
            if any(not call.is_well_formed for call in message.tool_calls):
                return False
    return not find_orphaned_tool_results(messages)


def repair(messages: Sequence[Message]) -> list[Message]:
    """Return a repaired copy of *messages*; the input is left untouched.

    Orphaned tool results are dropped. Assistant messages lose malformed tool
    calls; an assistant left with no calls is kept only if it has content.
    """
    repaired: list[Message] = []
    seen: set[str] = set()
    dropped_results = 0
    dropped_calls = 0

    for message in messages:
        if message.role == "assistant" and message.tool_calls:
            valid_calls = tuple(call for call in message.tool_calls if call.is_well_formed)
            dropped_calls += len(message.tool_calls) - len(valid_calls)
            if valid_calls:
                seen.update(call.id for call in valid_calls)
                if len(valid_calls) != len(message.tool_calls):
                    message = replace(message, tool_calls=valid_calls)
                repaired.append(message)
            elif message.has_content:
                repaired.append(replace(message, tool_calls=None))
            continue
        if message.role == "tool":
            if not message.tool_call_id or message.tool_call_id not in seen:
                dropped_results += 1
                continue
        repaired.append(message)

    if dropped_results or dropped_calls:
        LOGGER.debug(
            "Repaired history: dropped %d orphaned tool result(s), %d malformed tool call(s)",
            dropped_results,
            dropped_calls,
        )
    return repaired
