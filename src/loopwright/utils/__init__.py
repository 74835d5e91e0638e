"""Utility helpers shared across the Loopwright package."""

from .logging import agent_scope, current_agent, get_log_path, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "get_log_path", "agent_scope", "current_agent"]
