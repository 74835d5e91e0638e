"""Exceptions raised by the turn loops and provider error classification."""

from __future__ import annotations

from typing import Any

__all__ = [
    "AgentError",
    "TurnCancelledError",
    "StreamingUnsupportedError",
    "BufferOverflowError",
    "STREAMING_UNSUPPORTED_CODE",
    "is_streaming_unsupported",
]

STREAMING_UNSUPPORTED_CODE = "streaming_unsupported"


class AgentError(Exception):
    """Base class for conversation engine errors."""


class TurnCancelledError(AgentError):
    """Raised when the caller's cancellation signal is observed mid-turn."""

    def __init__(self, message: str = "Turn cancelled") -> None:
        super().__init__(message)


class StreamingUnsupportedError(AgentError):
    """Structured signal that the provider rejected a streaming request."""

    code = STREAMING_UNSUPPORTED_CODE


class BufferOverflowError(AgentError):
    """Raised when a streamed argument buffer grows past its size limit."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"JSON buffer exceeded maximum size of {limit} bytes")


def is_streaming_unsupported(exc: BaseException) -> bool:
    """Return True when *exc* looks like a provider rejecting streaming.

    A structured error code wins when the provider abstraction supplies one;
    otherwise the message is matched against known phrasings. The substring
    match is best effort and may need new phrasings for new providers.
    """

    if isinstance(exc, StreamingUnsupportedError):
        return True
    if _error_code(exc) == STREAMING_UNSUPPORTED_CODE:
        return True
    message = str(exc).lower()
    if not message:
        return False
    if "must be verified" in message:
        return True
    return "stream" in message and ("param" in message or "unsupported" in message)


def _error_code(exc: BaseException) -> str | None:
    code: Any = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and isinstance(error.get("code"), str):
            return error["code"]
    return None
