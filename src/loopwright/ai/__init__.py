"""LLM client, agent orchestration and tool wiring."""

from .client import AIClient, AIStreamEvent, ClientSettings

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings"]
