"""Tests for the tool registry and tool contract types."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from loopwright.ai.tools.registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from loopwright.ai.tools.types import SimpleTool, Tool, ToolCategory, ToolSpec


def _spec(name: str, **kwargs: Any) -> ToolSpec:
    kwargs.setdefault("description", f"{name} tool")
    return ToolSpec(name=name, **kwargs)


def _echo(params: Mapping[str, Any]) -> Any:
    return dict(params)


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(_spec("read_file", category=ToolCategory.FILESYSTEM), _echo)
    registry.register_function(_spec("run_shell", category=ToolCategory.SHELL), _echo)
    registry.register_function(_spec("web_search", category=ToolCategory.WEB), _echo)
    return registry


class TestRegistration:
    def test_duplicate_names_are_rejected(self, registry: ToolRegistry) -> None:
        with pytest.raises(DuplicateToolError):
            registry.register_function(_spec("READ_FILE"), _echo)

    def test_override_replaces_tool(self, registry: ToolRegistry) -> None:
        registration = registry.register_function(
            _spec("read_file", description="v2"),
            _echo,
            allow_override=True,
            metadata={"version": 2},
        )

        assert registration.metadata == {"version": 2}
        assert registry.require("read_file").spec.description == "v2"
        assert len(registry) == 3

    def test_unregister(self, registry: ToolRegistry) -> None:
        assert registry.unregister("run_shell")
        assert not registry.unregister("run_shell")
        assert "run_shell" not in registry

    def test_simple_tool_satisfies_protocol(self) -> None:
        assert isinstance(SimpleTool(spec=_spec("x"), handler=_echo), Tool)


class TestLookup:
    def test_resolve_is_case_insensitive(self, registry: ToolRegistry) -> None:
        assert registry.resolve("Read_File") is not None
        assert registry.resolve("unknown") is None
        assert registry.resolve(None) is None

    def test_disabled_tools_are_hidden(self, registry: ToolRegistry) -> None:
        registry.disable("web_search")

        assert registry.resolve("web_search") is None
        assert not registry.has("web_search")
        assert "web_search" in registry
        assert registry.list_names() == ["read_file", "run_shell"]
        assert registry.list_names(include_disabled=True) == ["read_file", "run_shell", "web_search"]

        registry.enable("web_search")
        assert registry.has("web_search")

    def test_require_raises_for_unknown(self, registry: ToolRegistry) -> None:
        with pytest.raises(ToolNotFoundError):
            registry.require("missing")


class TestSchemas:
    def test_all_enabled_schemas(self, registry: ToolRegistry) -> None:
        schemas = registry.list_schemas()

        assert [schema["function"]["name"] for schema in schemas] == ["read_file", "run_shell", "web_search"]
        assert schemas[0]["type"] == "function"
        assert schemas[0]["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_allowlist_order_and_unknown_names(self, registry: ToolRegistry) -> None:
        schemas = registry.list_schemas(["web_search", "nope", "READ_FILE", "web_search"])

        assert [schema["function"]["name"] for schema in schemas] == ["web_search", "read_file"]

    def test_custom_parameters_are_rendered(self) -> None:
        registry = ToolRegistry()
        parameters = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}
        registry.register_function(_spec("grep", parameters=parameters), _echo)

        (schema,) = registry.list_schemas()

        assert schema["function"]["parameters"] == parameters
        assert schema["function"]["description"] == "grep tool"


class TestSimpleTool:
    @pytest.mark.asyncio
    async def test_sync_handler(self) -> None:
        tool = SimpleTool(spec=_spec("echo"), handler=_echo)

        assert await tool.execute({"a": 1}) == {"a": 1}
        assert tool.name == "echo"

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        async def handler(params: Mapping[str, Any]) -> str:
            return "async"

        tool = SimpleTool(spec=_spec("a"), handler=handler)

        assert await tool.execute({}) == "async"
