"""Tool contract types.

Tools are either classes conforming to :class:`Tool` or plain callables
wrapped in :class:`SimpleTool`. Either way the engine only sees
``await tool.execute(params)``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union, runtime_checkable

__all__ = [
    "ToolCategory",
    "ToolSpec",
    "ToolHandler",
    "Tool",
    "SimpleTool",
]


class ToolCategory:
    """Standard categories for coding-assistant tools."""

    FILESYSTEM = "filesystem"
    SHELL = "shell"
    SEARCH = "search"
    WEB = "web"
    UTILITY = "utility"


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Model-facing description of a tool.

    Attributes:
        name: Unique identifier the model uses to call the tool.
        description: What the tool does, shown to the model.
        parameters: JSON Schema of the parameter object.
        category: Grouping used by allow-lists and UIs.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.UTILITY

    def to_openai_tool(self) -> dict[str, Any]:
        """Render the OpenAI ``tools`` array entry."""
        schema = dict(self.parameters) if self.parameters else {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


ToolHandler = Callable[[Mapping[str, Any]], Union[Any, Awaitable[Any]]]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, params: Mapping[str, Any]) -> Any:
        """Run the tool; may return a ``ToolResult`` or any value."""
        ...


@dataclass
class SimpleTool:
    """Tool backed by a sync or async callable.

    Example:
        tool = SimpleTool(
            spec=ToolSpec(name="read_file", description="Read a file"),
            handler=lambda params: Path(params["path"]).read_text(),
        )
    """

    spec: ToolSpec
    handler: ToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = asyncio.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, params: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(params)  # type: ignore[misc]
        return self.handler(params)
