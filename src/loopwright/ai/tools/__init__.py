"""Tool contract and registry consumed by the turn loop."""

from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistration, ToolRegistry
from .types import SimpleTool, Tool, ToolCategory, ToolHandler, ToolSpec

__all__ = [
    "DuplicateToolError",
    "SimpleTool",
    "Tool",
    "ToolCategory",
    "ToolHandler",
    "ToolNotFoundError",
    "ToolRegistration",
    "ToolRegistry",
    "ToolSpec",
]
