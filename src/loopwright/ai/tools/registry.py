"""Explicitly constructed tool registry injected into the agent."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .types import SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when a tool name is registered twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised by :meth:`ToolRegistry.require` for unknown or disabled tools."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    name: str
    tool: Tool
    spec: ToolSpec
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Read-mostly lookup table of the tools an agent may call.

    Names are matched case-insensitively on lookup, but schemas are always
    rendered with the name the tool was registered under.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower()

    def register(
        self,
        tool: Tool,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register *tool* under its own name.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        key = self._key(tool.name)
        if key in self._tools and not allow_override:
            raise DuplicateToolError(tool.name)
        registration = ToolRegistration(
            name=tool.name,
            tool=tool,
            spec=tool.spec,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[key] = registration
        LOGGER.debug("Registered tool: %s", tool.name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Wrap a sync or async callable in :class:`SimpleTool` and register it."""
        return self.register(
            SimpleTool(spec=spec, handler=handler),
            enabled=enabled,
            allow_override=allow_override,
            metadata=metadata,
        )

    def unregister(self, name: str) -> bool:
        if self._tools.pop(self._key(name), None) is None:
            return False
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    def resolve(self, name: str | None) -> Tool | None:
        """Return the enabled tool called *name*, or None."""
        if not name:
            return None
        registration = self._tools.get(self._key(name))
        if registration is None or not registration.enabled:
            return None
        return registration.tool

    def require(self, name: str) -> Tool:
        tool = self.resolve(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return self.resolve(name) is not None

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [
            registration.name
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def list_schemas(self, allowlist: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Return OpenAI tool definitions for enabled tools.

        With an *allowlist*, only the named tools are included, in
        allow-list order; names that are not registered are skipped.
        """
        if allowlist is None:
            return [
                registration.spec.to_openai_tool()
                for registration in self._tools.values()
                if registration.enabled
            ]
        schemas: list[dict[str, Any]] = []
        seen: set[str] = set()
        for name in allowlist:
            key = self._key(name)
            if key in seen:
                continue
            seen.add(key)
            registration = self._tools.get(key)
            if registration is None or not registration.enabled:
                LOGGER.debug("Allow-listed tool %s is not available", name)
                continue
            schemas.append(registration.spec.to_openai_tool())
        return schemas

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(self._key(name))
        if registration is None:
            return False
        registration.enabled = enabled
        return True

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._key(name) in self._tools
