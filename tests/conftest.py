"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Iterator

import pytest

from helpers import MemoryRepository
from loopwright.services import telemetry

_ENV_VARS = (
    "LOOPWRIGHT_API_KEY",
    "LOOPWRIGHT_BASE_URL",
    "LOOPWRIGHT_MODEL",
    "LOOPWRIGHT_ORGANIZATION",
    "LOOPWRIGHT_ENABLE_STREAMING",
    "LOOPWRIGHT_DEBUG_LOGGING",
    "LOOPWRIGHT_REQUEST_TIMEOUT",
    "LOOPWRIGHT_TEMPERATURE",
    "LOOPWRIGHT_MAX_HISTORY_MESSAGES",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOOPWRIGHT_LOG_DIR", str(tmp_path / "logs"))
    telemetry.clear_event_listeners()
    yield
    telemetry.clear_event_listeners()


@pytest.fixture
def repository() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def telemetry_events() -> list[dict[str, Any]]:
    """Collect every telemetry event emitted by the engine during a test."""
    events: list[dict[str, Any]] = []
    for name in ("tool_call.completed", "turn.completed", "stream.fallback", "stream.cancelled"):
        telemetry.register_event_listener(name, events.append)
    return events
