"""Prompt-cache hints for large tool results.

Providers that support prompt caching cap the number of cache breakpoints
per request, so only the biggest tool outputs of a turn are marked.
"""

from __future__ import annotations

import logging
from typing import Sequence

from .types import CacheControl, ContentBlock, Message

__all__ = [
    "DEFAULT_CACHE_THRESHOLD_CHARS",
    "DEFAULT_MAX_CACHE_BREAKPOINTS",
    "DEFAULT_CACHE_MODEL_PREFIXES",
    "supports_prompt_caching",
    "annotate_tool_results",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_THRESHOLD_CHARS = 10_000
DEFAULT_MAX_CACHE_BREAKPOINTS = 3
DEFAULT_CACHE_MODEL_PREFIXES: tuple[str, ...] = ("anthropic/", "claude")


def supports_prompt_caching(
    model: str | None,
    prefixes: Sequence[str] = DEFAULT_CACHE_MODEL_PREFIXES,
) -> bool:
    if not model:
        return False
    lowered = model.strip().lower()
    return any(lowered.startswith(prefix.lower()) for prefix in prefixes)


def annotate_tool_results(
    messages: Sequence[Message],
    model: str | None,
    *,
    threshold_chars: int = DEFAULT_CACHE_THRESHOLD_CHARS,
    max_breakpoints: int = DEFAULT_MAX_CACHE_BREAKPOINTS,
    prefixes: Sequence[str] = DEFAULT_CACHE_MODEL_PREFIXES,
) -> list[Message]:
    """Return *messages* with the largest tool results rewritten as cached blocks.

    Only tool-role messages whose text is longer than *threshold_chars* are
    candidates; the *max_breakpoints* longest of them get a single
    ``ContentBlock`` carrying an ephemeral cache hint. Everything else, and
    the relative order, is unchanged. Models outside the caching families
    get the list back as-is.
    """
    annotated = list(messages)
    if max_breakpoints <= 0 or not supports_prompt_caching(model, prefixes):
        return annotated

    candidates = [
        (len(message.text), position)
        for position, message in enumerate(annotated)
        if message.role == "tool" and len(message.text) > threshold_chars
    ]
    if not candidates:
        return annotated

    # Stable on ties: earlier results win.
    candidates.sort(key=lambda item: (-item[0], item[1]))
    for _, position in candidates[:max_breakpoints]:
        message = annotated[position]
        block = ContentBlock(text=message.text, cache_control=CacheControl())
        annotated[position] = message.with_content((block,))
    LOGGER.debug(
        "Added cache hints to %d of %d large tool result(s)",
        min(len(candidates), max_breakpoints),
        len(candidates),
    )
    return annotated
