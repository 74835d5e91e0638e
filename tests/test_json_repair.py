"""Tests for streamed JSON completeness checks and repair."""

from __future__ import annotations

import json

import pytest

from loopwright.ai.orchestration.errors import BufferOverflowError
from loopwright.ai.orchestration.json_repair import (
    JsonStreamAccumulator,
    is_complete_json,
    repair_streamed_json,
    try_parse_json,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"a": 1}', True),
        ("[1, 2]", True),
        ('{"a": "}"}', True),
        ('{"a": 1', False),
        ('{"a": "unterminated', False),
        ("", False),
        ("   ", False),
        (None, False),
        ("}{", False),
    ],
)
def test_is_complete_json(text: str | None, expected: bool) -> None:
    assert is_complete_json(text) is expected


def test_try_parse_json_returns_none_for_partial() -> None:
    assert try_parse_json('{"a": [1, 2]}') == {"a": [1, 2]}
    assert try_parse_json('{"a": [1, 2') is None


@pytest.mark.parametrize(
    "partial, expected",
    [
        ('{"path": "src/ma', {"path": "src/ma"}),
        ('{"items": [1, 2', {"items": [1, 2]}),
        ('{"outer": {"inner": [{"x": 1', {"outer": {"inner": [{"x": 1}]}}),
        ('{"a": "line\\', {"a": "line"}),
    ],
)
def test_repair_closes_open_structures(partial: str, expected: dict) -> None:
    assert json.loads(repair_streamed_json(partial)) == expected


def test_repair_returns_complete_input_unchanged() -> None:
    assert repair_streamed_json('  {"a": 1}  ') == '{"a": 1}'


@pytest.mark.parametrize("text", ["", "   ", None, '{"a": ]', '{"a": 1,'])
def test_repair_falls_back_to_empty_object(text: str | None) -> None:
    assert repair_streamed_json(text) == "{}"


class TestJsonStreamAccumulator:
    def test_fragments_concatenate(self) -> None:
        accumulator = JsonStreamAccumulator()
        for fragment in ('{"pa', 'th": "a.', 'py"}'):
            accumulator.append(fragment)

        assert accumulator.is_complete
        assert accumulator.try_get_complete() == {"path": "a.py"}
        assert len(accumulator) == len('{"path": "a.py"}')

    def test_repaired_output_for_truncated_stream(self) -> None:
        accumulator = JsonStreamAccumulator()
        accumulator.append('{"path": "a.py"')

        assert not accumulator.is_complete
        assert json.loads(accumulator.get_complete_or_repaired()) == {"path": "a.py"}

    def test_overflow_raises(self) -> None:
        accumulator = JsonStreamAccumulator(max_buffer_size=8)
        accumulator.append("12345")

        with pytest.raises(BufferOverflowError) as excinfo:
            accumulator.append("6789")

        assert excinfo.value.limit == 8
        assert accumulator.buffer == "12345"

    def test_clear_and_empty_fragments(self) -> None:
        accumulator = JsonStreamAccumulator()
        accumulator.append(None)
        accumulator.append("")
        assert accumulator.buffer == ""

        accumulator.append("{}")
        accumulator.clear()
        assert len(accumulator) == 0


def test_excessive_nesting_is_not_complete() -> None:
    nested = "[" * 100_000 + "]" * 100_000

    assert not is_complete_json(nested)
    assert try_parse_json(nested) is None
    assert repair_streamed_json(nested) == "{}"
