"""Bootstrap helpers that wire settings, logging, client and agent together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .ai.client import AIClient, ClientSettings
from .ai.orchestration.agent import Agent, ModelClient
from .ai.orchestration.config import AgentConfiguration
from .ai.orchestration.persistence import ChatRepository
from .ai.tools.registry import ToolRegistry
from .services.chat_repository import SqliteChatRepository
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils

__all__ = ["configure_logging", "load_settings", "build_agent"]

_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False, console: bool = True) -> Path:
    """Configure structured logging for the engine."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force, console=console)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_agent(
    settings: Settings,
    registry: ToolRegistry | None = None,
    *,
    client: ModelClient | None = None,
    repository: ChatRepository | None = None,
    session_id: str | None = None,
    **config_overrides: Any,
) -> Agent:
    """Construct an :class:`Agent` from *settings*.

    A chat repository is opened at ``settings.history_db_path`` unless one is
    passed in; with neither, the agent runs without persistence. Whatever is
    created here, rather than passed in, is closed by ``Agent.aclose``.
    """

    owned: list[Any] = []
    model_client = client
    if model_client is None:
        model_client = AIClient(ClientSettings.from_settings(settings))
        owned.append(model_client)
    store = repository
    if store is None and settings.history_db_path:
        store = SqliteChatRepository(settings.history_db_path)
        owned.append(store)
    config = AgentConfiguration.from_settings(settings, **config_overrides)
    _LOGGER.debug(
        "Building agent %s (model=%s, streaming=%s, tools=%s)",
        config.name,
        config.model,
        config.enable_streaming,
        config.enable_tools,
    )
    return Agent(
        config,
        model_client,
        registry or ToolRegistry(),
        repository=store,
        session_id=session_id,
        owned_resources=owned,
    )
