"""Validation and repair of partial JSON assembled from streamed fragments."""

from __future__ import annotations

import json
from typing import Any

from .errors import BufferOverflowError

__all__ = [
    "DEFAULT_MAX_BUFFER_SIZE",
    "is_complete_json",
    "try_parse_json",
    "repair_streamed_json",
    "JsonStreamAccumulator",
]

DEFAULT_MAX_BUFFER_SIZE = 1_048_576


def _scan(text: str) -> tuple[int, int, bool, bool]:
    """Return (open braces, open brackets, inside string, went negative)."""
    braces = 0
    brackets = 0
    in_string = False
    escaped = False
    negative = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            braces += 1
        elif char == "}":
            braces -= 1
        elif char == "[":
            brackets += 1
        elif char == "]":
            brackets -= 1
        if braces < 0 or brackets < 0:
            negative = True
    return braces, brackets, in_string, negative


def is_complete_json(text: str | None) -> bool:
    """Return True when *text* is balanced, non-blank and parses as JSON."""
    if not text or not text.strip():
        return False
    braces, brackets, in_string, negative = _scan(text)
    if negative or braces or brackets or in_string:
        return False
    try:
        json.loads(text)
    except (ValueError, RecursionError):
        return False
    return True


def try_parse_json(text: str | None) -> Any | None:
    if not is_complete_json(text):
        return None
    try:
        return json.loads(text)  # type: ignore[arg-type]
    except (ValueError, RecursionError):
        return None


def repair_streamed_json(text: str | None) -> str:
    """Close unterminated strings, arrays and objects in streamed JSON.

    Returns ``"{}"`` for blank input or when the closed-off text still does
    not parse.
    """
    if not text or not text.strip():
        return "{}"
    trimmed = text.strip()
    if is_complete_json(trimmed):
        return trimmed

    closers: list[str] = []
    in_string = False
    escaped = False
    for char in trimmed:
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            closers.append("}" if char == "{" else "]")
        elif char in "}]":
            if not closers or closers.pop() != char:
                return "{}"

    repaired = trimmed
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired += "".join(reversed(closers))
    return repaired if is_complete_json(repaired) else "{}"


class JsonStreamAccumulator:
    """Accumulates JSON fragments from a stream and reports completeness."""

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        self._parts: list[str] = []
        self._length = 0
        self._max_buffer_size = max_buffer_size

    @property
    def buffer(self) -> str:
        return "".join(self._parts)

    @property
    def is_complete(self) -> bool:
        return is_complete_json(self.buffer)

    def __len__(self) -> int:
        return self._length

    def append(self, fragment: str | None) -> None:
        if not fragment:
            return
        if self._length + len(fragment) > self._max_buffer_size:
            raise BufferOverflowError(self._max_buffer_size)
        self._parts.append(fragment)
        self._length += len(fragment)

    def clear(self) -> None:
        self._parts.clear()
        self._length = 0

    def try_get_complete(self) -> Any | None:
        return try_parse_json(self.buffer)

    def get_complete_or_repaired(self) -> str:
        current = self.buffer
        if is_complete_json(current):
            return current
        return repair_streamed_json(current)
