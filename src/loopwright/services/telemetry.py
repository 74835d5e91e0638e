"""In-process telemetry bus for engine events.

The agent emits ``tool_call.completed``, ``turn.completed``,
``stream.fallback`` and ``stream.cancelled``. Listeners receive a fresh
``dict`` with the event name under ``"event"``; registering for ``"*"``
receives every event.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping

__all__ = [
    "ALL_EVENTS",
    "TelemetryBus",
    "TelemetryListener",
    "register_event_listener",
    "unregister_event_listener",
    "clear_event_listeners",
    "emit",
]

LOGGER = logging.getLogger(__name__)

ALL_EVENTS = "*"

TelemetryListener = Callable[[dict[str, Any]], None]


class TelemetryBus:
    """Fan-out of named events to registered callbacks."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[TelemetryListener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, callback: TelemetryListener) -> None:
        if not event_name:
            return
        with self._lock:
            bucket = self._listeners.setdefault(event_name, [])
            if callback not in bucket:
                bucket.append(callback)

    def unsubscribe(self, event_name: str, callback: TelemetryListener) -> None:
        with self._lock:
            bucket = self._listeners.get(event_name, [])
            if callback in bucket:
                bucket.remove(callback)
            if not bucket:
                self._listeners.pop(event_name, None)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def publish(self, event_name: str, payload: Mapping[str, Any] | None = None) -> None:
        if not event_name:
            return
        record = {"event": event_name, **(payload or {})}
        with self._lock:
            targets = [*self._listeners.get(event_name, ()), *self._listeners.get(ALL_EVENTS, ())]
        LOGGER.debug("telemetry %s %s", event_name, record)
        for callback in targets:
            try:
                callback(dict(record))
            except Exception:
                # A broken listener is reported and skipped; the emitter carries on.
                LOGGER.warning("Telemetry listener %r failed on %s", callback, event_name, exc_info=True)


_BUS = TelemetryBus()


def register_event_listener(event_name: str, callback: TelemetryListener) -> None:
    """Call *callback* for every :func:`emit` of *event_name* (or ``"*"``)."""
    _BUS.subscribe(event_name, callback)


def unregister_event_listener(event_name: str, callback: TelemetryListener) -> None:
    _BUS.unsubscribe(event_name, callback)


def clear_event_listeners() -> None:
    _BUS.clear()


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    _BUS.publish(event_name, payload)
