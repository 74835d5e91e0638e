"""Async LLM client built around OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Mapping

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .orchestration.errors import is_streaming_unsupported
from .orchestration.types import ChatRequest, Message, ModelResponse, ToolCall, ToolCallDelta, Usage

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ..services.settings import Settings

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "is_transient_error"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> ClientSettings:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers) or None,
            metadata={str(k): str(v) for k, v in settings.metadata.items()} or None,
            debug_logging=settings.debug_logging,
        )


@dataclass(slots=True, frozen=True)
class AIStreamEvent:
    """Normalized streaming delta.

    ``type`` is one of ``"text"``, ``"tool_call"``, ``"finish"`` or
    ``"usage"``; only the matching payload field is set.
    """

    type: str
    text_delta: str | None = None
    tool_call_delta: ToolCallDelta | None = None
    finish_reason: str | None = None
    usage: Usage | None = None


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying (network, 429, 5xx)."""
    if is_streaming_unsupported(exc):
        return False
    if isinstance(exc, (APIConnectionError, RateLimitError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    return False


class AIClient:
    """Async client with retrying request helpers.

    ``complete`` issues a regular request; ``stream_chat`` yields
    :class:`AIStreamEvent` objects parsed from raw ``stream=True`` chunks.
    Only opening a request is retried. Once chunks have been delivered a
    failure propagates to the caller.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(self, request: ChatRequest) -> ModelResponse:
        """Send *request* without streaming and normalize the reply."""

        payload = self._build_payload(request, stream=False)
        LOGGER.debug(
            "Starting chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response: Any = None
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)

        choices = getattr(response, "choices", None) or []
        choice = choices[0] if choices else None
        message = _message_from_payload(getattr(choice, "message", None)) if choice is not None else None
        return ModelResponse(
            message=message,
            usage=Usage.from_payload(getattr(response, "usage", None)),
            finish_reason=getattr(choice, "finish_reason", None) if choice is not None else None,
            model=getattr(response, "model", None),
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[AIStreamEvent]:
        """Stream *request*, yielding text, tool-call, finish and usage events."""

        payload = self._build_payload(request, stream=True)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream: Any = None
        async for attempt in self._retrying():
            with attempt:
                stream = await self._client.chat.completions.create(**payload)

        try:
            async for chunk in stream:
                for event in self._normalize_chunk(chunk):
                    yield event
        finally:
            await _close_quietly(stream)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        await _close_quietly(self._client)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(is_transient_error),
        )

    def _build_payload(self, request: ChatRequest, *, stream: bool) -> Dict[str, Any]:
        messages = request.message_params()
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": request.model or self._settings.model,
            "messages": messages,
        }
        optional = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if request.stop:
            payload["stop"] = list(request.stop)
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
            payload["tool_choice"] = request.tool_choice or "auto"
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        if request.include_usage:
            payload["extra_body"] = {"usage": {"include": True}}
        if stream:
            payload["stream"] = True
            if request.include_usage:
                payload["stream_options"] = {"include_usage": True}
        return payload

    def _normalize_chunk(self, chunk: Any) -> list[AIStreamEvent]:
        events: list[AIStreamEvent] = []
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is not None:
                content = getattr(delta, "content", None)
                if content:
                    events.append(AIStreamEvent(type="text", text_delta=str(content)))
                for fragment in getattr(delta, "tool_calls", None) or []:
                    function = getattr(fragment, "function", None)
                    events.append(
                        AIStreamEvent(
                            type="tool_call",
                            tool_call_delta=ToolCallDelta(
                                index=getattr(fragment, "index", None),
                                id=getattr(fragment, "id", None),
                                name=getattr(function, "name", None) if function is not None else None,
                                arguments=getattr(function, "arguments", None) if function is not None else None,
                            ),
                        )
                    )
            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                events.append(AIStreamEvent(type="finish", finish_reason=str(finish_reason)))
        usage = Usage.from_payload(getattr(chunk, "usage", None))
        if usage is not None:
            events.append(AIStreamEvent(type="usage", usage=usage))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _message_from_payload(raw: Any) -> Message | None:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        return Message.from_chat_param(raw)
    calls = []
    for item in getattr(raw, "tool_calls", None) or []:
        function = getattr(item, "function", None)
        calls.append(
            ToolCall(
                id=getattr(item, "id", None) or "",
                name=(getattr(function, "name", None) or "") if function is not None else "",
                arguments=(getattr(function, "arguments", None) or "") if function is not None else "",
            )
        )
    return Message.assistant(getattr(raw, "content", None), tool_calls=calls or None)


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # pragma: no cover
        LOGGER.debug("Closing %s failed: %s", type(resource).__name__, exc)
