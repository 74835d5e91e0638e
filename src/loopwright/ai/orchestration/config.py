"""Agent configuration."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

from .cache_control import (
    DEFAULT_CACHE_MODEL_PREFIXES,
    DEFAULT_CACHE_THRESHOLD_CHARS,
    DEFAULT_MAX_CACHE_BREAKPOINTS,
)

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ...services.settings import Settings

__all__ = ["AgentConfiguration", "FALLBACK_RESPONSE"]

FALLBACK_RESPONSE = "I'm sorry, I couldn't process your request."


@dataclass(slots=True, frozen=True)
class AgentConfiguration:
    """Configuration for one :class:`~loopwright.ai.orchestration.agent.Agent`.

    Attributes:
        name: Agent name, stamped on persisted records.
        system_prompt: Pinned system message text.
        model: Model id sent with every request.
        temperature: Sampling temperature.
        max_tokens: Completion token cap.
        top_p: Nucleus sampling parameter.
        frequency_penalty: Frequency penalty.
        presence_penalty: Presence penalty.
        stop_sequences: Stop sequences.
        max_history_messages: History ceiling (system message included);
            ``None`` disables trimming.
        maintain_history: Keep the conversation between calls. When False
            each call sees only the system prompt and the new input.
        enable_tools: Send tool schemas with requests.
        tool_names: Allow-list of tools; empty means all registered tools.
        enable_streaming: Use the provider's streaming API in ``execute_stream``.
        include_usage: Ask the provider for usage accounting.
        max_tool_iterations: Cap on tool rounds per call; ``None`` is unbounded.
        tool_timeout: Per-tool timeout in seconds; ``None`` disables it.
        cache_threshold_chars: Tool results longer than this get cache hints.
        max_cache_breakpoints: Cache hints per tool batch.
        cache_model_prefixes: Model-id prefixes of prompt-caching providers.
    """

    name: str = "Assistant"
    system_prompt: str = "You are a helpful coding assistant."
    model: str = "gpt-4.1"
    temperature: float | None = 0.2
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: tuple[str, ...] = ()
    max_history_messages: int | None = 20
    maintain_history: bool = True
    enable_tools: bool = False
    tool_names: tuple[str, ...] = ()
    enable_streaming: bool = True
    include_usage: bool = True
    max_tool_iterations: int | None = None
    tool_timeout: float | None = None
    cache_threshold_chars: int = DEFAULT_CACHE_THRESHOLD_CHARS
    max_cache_breakpoints: int = DEFAULT_MAX_CACHE_BREAKPOINTS
    cache_model_prefixes: tuple[str, ...] = DEFAULT_CACHE_MODEL_PREFIXES

    def __post_init__(self) -> None:
        for name in ("stop_sequences", "tool_names", "cache_model_prefixes"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value or ()))
        if self.max_history_messages is not None and self.max_history_messages < 1:
            raise ValueError("max_history_messages must be at least 1")
        if self.max_tool_iterations is not None and self.max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be at least 1")

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> AgentConfiguration:
        """Build a configuration from persisted :class:`Settings`."""
        values: dict[str, Any] = {
            "name": settings.agent_name,
            "system_prompt": settings.system_prompt,
            "model": settings.model,
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
            "top_p": settings.top_p,
            "frequency_penalty": settings.frequency_penalty,
            "presence_penalty": settings.presence_penalty,
            "stop_sequences": tuple(settings.stop_sequences),
            "max_history_messages": settings.max_history_messages,
            "maintain_history": settings.maintain_history,
            "enable_tools": settings.enable_tools,
            "tool_names": tuple(settings.tool_names),
            "enable_streaming": settings.enable_streaming,
            "include_usage": settings.include_usage,
            "max_tool_iterations": settings.max_tool_iterations,
        }
        values.update(overrides)
        return cls(**values)

    def with_updates(self, **changes: Any) -> AgentConfiguration:
        """Return a copy with *changes* applied; unknown keys raise TypeError."""
        known = {item.name for item in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise TypeError(f"Unknown configuration field(s): {', '.join(unknown)}")
        return replace(self, **changes)
