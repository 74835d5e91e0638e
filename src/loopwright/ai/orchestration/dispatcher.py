"""Tool dispatch: resolve, parse arguments, execute, time and record.

:meth:`ToolDispatcher.execute` never raises for tool-level problems. Missing
tools, bad arguments, timeouts and exceptions raised by the tool all come
back as failed :class:`ToolResult` objects that are surfaced to the model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

import jsonschema

from ...services.telemetry import emit as telemetry_emit
from ..tools.registry import ToolRegistry
from .types import JsonValue, ToolCall, ToolResult

__all__ = [
    "ToolCallRecorder",
    "ToolDispatcher",
    "format_tool_output",
    "parse_tool_arguments",
    "schema_errors",
]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ToolCallRecorder(Protocol):
    """Receives tool-call records for best-effort persistence."""

    def save_tool_call(self, message_ref: str | None, tool_call: ToolCall) -> str | None:
        ...

    def update_tool_call_result(self, call_ref: str, result: ToolResult) -> None:
        ...


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def format_tool_output(result: Any) -> str:
    """Render an arbitrary tool return value as model-facing text."""
    if result is None:
        return "null"
    if isinstance(result, str):
        return result
    if isinstance(result, bool):
        return "true" if result else "false"
    if isinstance(result, (int, float)):
        return str(result)
    if isinstance(result, (dict, list)):
        try:
            return json.dumps(result, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            return str(result)
    to_dict = getattr(result, "to_dict", None)
    if callable(to_dict):
        try:
            return json.dumps(to_dict(), ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            pass
    return str(result)


def parse_tool_arguments(arguments: str | None) -> dict[str, JsonValue]:
    """Parse a tool's raw argument text into a parameter map.

    Blank text and JSON values that are not objects yield an empty map.

    Raises:
        ValueError: If the text is not valid JSON or nests too deeply to decode.
    """
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in tool arguments: {exc}") from exc
    except RecursionError as exc:
        raise ValueError("Tool arguments are nested too deeply") from exc
    if not isinstance(parsed, dict):
        LOGGER.debug("Tool arguments are %s, not an object; using empty map", type(parsed).__name__)
        return {}
    return {str(key): value for key, value in parsed.items()}


MAX_SCHEMA_ERRORS = 5


def schema_errors(schema: Mapping[str, Any] | None, params: Mapping[str, Any]) -> list[str]:
    """Validate *params* against a tool's JSON Schema; returns readable problems."""
    if not schema:
        return []
    try:
        jsonschema.Draft202012Validator.check_schema(dict(schema))
    except jsonschema.exceptions.SchemaError as exc:
        LOGGER.debug("Tool schema is invalid; skipping argument validation: %s", exc.message)
        return []
    validator = jsonschema.Draft202012Validator(dict(schema))
    problems: list[str] = []
    for issue in validator.iter_errors(dict(params)):
        path = ".".join(str(part) for part in issue.absolute_path)
        problems.append(f"{path}: {issue.message}" if path else issue.message)
        if len(problems) >= MAX_SCHEMA_ERRORS:
            break
    return problems


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Executes tool calls against a :class:`ToolRegistry`.

    Args:
        registry: Tool lookup table.
        recorder: Optional sink for tool-call records (usually the
            agent's ``PendingWriteBuffer``).
        timeout: Per-call timeout in seconds; ``None`` or non-positive
            disables it.
        validate_arguments: Check parameters against the tool's JSON
            Schema before running it.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        recorder: ToolCallRecorder | None = None,
        timeout: float | None = None,
        validate_arguments: bool = True,
    ) -> None:
        self._registry = registry
        self._validate_arguments = validate_arguments
        self._recorder = recorder
        self._timeout = timeout if timeout and timeout > 0 else None

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def recorder(self) -> ToolCallRecorder | None:
        return self._recorder

    @recorder.setter
    def recorder(self, recorder: ToolCallRecorder | None) -> None:
        self._recorder = recorder

    async def execute(self, tool_call: ToolCall, *, message_ref: str | None = None) -> ToolResult:
        """Run one tool call and return its result."""
        call_ref = self._record_call(message_ref, tool_call)
        result = await self._run(tool_call)
        self._record_result(call_ref, result)
        telemetry_emit(
            "tool_call.completed",
            {
                "tool_call_id": tool_call.id,
                "tool_name": tool_call.name,
                "success": result.success,
                "duration_ms": result.duration_ms,
                "error": result.error,
            },
        )
        return result

    async def execute_all(
        self,
        tool_calls: Sequence[ToolCall],
        *,
        message_ref: str | None = None,
    ) -> list[ToolResult]:
        """Run *tool_calls* one after another, in the order given."""
        results: list[ToolResult] = []
        for call in tool_calls:
            results.append(await self.execute(call, message_ref=message_ref))
        return results

    async def _run(self, tool_call: ToolCall) -> ToolResult:
        started = time.perf_counter()
        tool = self._registry.resolve(tool_call.name)
        if tool is None:
            LOGGER.warning("Model requested unknown tool %s", tool_call.name)
            return ToolResult.failure(
                f"Tool '{tool_call.name}' not found",
                duration_ms=_elapsed_ms(started),
            )

        try:
            params = self._checked_params(tool, tool_call)
        except ValueError as exc:
            LOGGER.warning("Rejected arguments for tool %s: %s", tool_call.name, exc)
            return ToolResult.failure(f"Invalid arguments: {exc}", duration_ms=_elapsed_ms(started))

        try:
            if self._timeout is not None:
                raw = await asyncio.wait_for(tool.execute(params), timeout=self._timeout)
            else:
                raw = await tool.execute(params)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", tool_call.name, self._timeout)
            return ToolResult.failure(
                f"Tool execution timed out after {self._timeout}s",
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Tool %s failed: %s", tool_call.name, message)
            return ToolResult.failure(message, duration_ms=_elapsed_ms(started))

        duration_ms = _elapsed_ms(started)
        if isinstance(raw, ToolResult):
            return raw.with_duration(duration_ms)
        return ToolResult.ok(format_tool_output(raw), raw_data=raw, duration_ms=duration_ms)

    def _checked_params(self, tool: Any, tool_call: ToolCall) -> dict[str, JsonValue]:
        """Parse and, when enabled, schema-check the call's arguments.

        Raises:
            ValueError: With the message reported back to the model.
        """
        params = parse_tool_arguments(tool_call.arguments)
        if not self._validate_arguments:
            return params
        schema = getattr(getattr(tool, "spec", None), "parameters", None)
        try:
            problems = schema_errors(schema, params)
        except RecursionError as exc:
            raise ValueError("Tool arguments are nested too deeply") from exc
        if problems:
            raise ValueError("; ".join(problems))
        return params

    def _record_call(self, message_ref: str | None, tool_call: ToolCall) -> str | None:
        if self._recorder is None:
            return None
        try:
            return self._recorder.save_tool_call(message_ref, tool_call)
        except Exception:  # pragma: no cover
            LOGGER.warning("Failed to record tool call %s", tool_call.id, exc_info=True)
            return None

    def _record_result(self, call_ref: str | None, result: ToolResult) -> None:
        if self._recorder is None or call_ref is None:
            return
        try:
            self._recorder.update_tool_call_result(call_ref, result)
        except Exception:  # pragma: no cover
            LOGGER.warning("Failed to record tool result for %s", call_ref, exc_info=True)
