"""Logging bootstrap for the engine.

Every record passes through :class:`AgentScopeFilter`, which stamps it with
the name of the agent whose turn is currently running (``-`` outside a
turn). Agents enter :func:`agent_scope` for the duration of a turn, so tool
handlers and the model client get the tag without threading it through.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterable, Iterator

__all__ = [
    "AgentScopeFilter",
    "agent_scope",
    "current_agent",
    "get_log_path",
    "get_logger",
    "setup_logging",
]

LOG_FILE_NAME = "loopwright.log"
LOG_DIR_ENV = "LOOPWRIGHT_LOG_DIR"
RECORD_FORMAT = "%(asctime)s %(levelname)-8s [%(agent)s] %(name)s: %(message)s"
_HOME_LOG_DIR = Path("~/.loopwright/logs")
# HTTP chatter from the model client stays at WARNING unless the root is quieter.
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "asyncio")

_agent_var: contextvars.ContextVar[str] = contextvars.ContextVar("loopwright_agent", default="-")
_LOG_PATH: Path | None = None


class AgentScopeFilter(logging.Filter):
    """Adds an ``agent`` attribute to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "agent"):
            record.agent = _agent_var.get()
        return True


@contextlib.contextmanager
def agent_scope(name: str) -> Iterator[None]:
    """Tag log records emitted inside the block with *name*."""
    token = _agent_var.set(name or "-")
    try:
        yield
    finally:
        _agent_var.reset(token)


def current_agent() -> str:
    return _agent_var.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the engine's handlers on the root logger and return the log file.

    Later calls are no-ops returning the first path unless *force* is set.
    The directory comes from *log_dir*, then ``LOOPWRIGHT_LOG_DIR``, then
    ``~/.loopwright/logs``.
    """
    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    directory = _log_directory(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME

    rotating = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handlers: list[logging.Handler] = [rotating]
    if console:
        handlers.append(logging.StreamHandler())
    _prepare(handlers, level)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet(_QUIET_LOGGERS, level)

    _LOG_PATH = path
    return path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the file chosen by the last :func:`setup_logging` call."""
    return _LOG_PATH


def _log_directory(explicit: Path | str | None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(LOG_DIR_ENV, "").strip()
    if from_env:
        return Path(from_env).expanduser()
    return _HOME_LOG_DIR.expanduser()


def _prepare(handlers: Iterable[logging.Handler], level: int) -> None:
    formatter = logging.Formatter(RECORD_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(AgentScopeFilter())


def _quiet(names: Iterable[str], root_level: int) -> None:
    floor = max(root_level, logging.WARNING)
    for name in names:
        logging.getLogger(name).setLevel(floor)
