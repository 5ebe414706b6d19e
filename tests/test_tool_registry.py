from __future__ import annotations

import asyncio

import pytest

from kb_agent.domain.models.errors import ToolExecutionError, ToolNotFoundError, ToolValidationError
from kb_agent.domain.tool.tool_executor import ToolExecutor
from kb_agent.domain.tool.tool_registry import InMemoryToolRegistry
from kb_agent.domain.tool.tool_validator import ToolParameterValidator


def test_describe_lists_schemas_in_registration_order(registry):
    names = [schema["name"] for schema in registry.describe()]

    assert names == ["search_project_code", "submit_candidate", "read_project_file", "broken_tool"]
    assert set(registry.describe()[0]) == {"name", "description", "parameters"}
    assert registry.has("submit_candidate")
    assert registry.tool_names() == names
    assert registry.get_tool_info("broken_tool")["category"] == "general"
    assert not registry.has("ghost")


def test_duplicate_registration_is_rejected(registry):
    with pytest.raises(ValueError, match="already registered"):
        registry.register_tool("search_project_code", "again", lambda args, ctx: None)


def test_decorator_registration_and_categories():
    registry = InMemoryToolRegistry()

    @registry.tool("list_recipes", "List stored recipes", category="recipes")
    def list_recipes(args, ctx):
        return ["a", "b"]

    assert registry.get_tools_by_category("recipes")[0]["name"] == "list_recipes"
    assert [tool["name"] for tool in registry.search_tools("RECIPES")] == ["list_recipes"]
    assert asyncio.run(registry.execute("list_recipes", {})) == ["a", "b"]


def test_execute_sync_and_async_handlers(registry):
    async def scenario():
        found = await registry.execute("search_project_code", {"query": "cache"}, {"session_id": "s"})
        read = await registry.execute("read_project_file", {"path": "a.py"})
        return found, read

    found, read = asyncio.run(scenario())

    assert found["matches"][0]["code"] == "cache"
    assert read["path"] == "a.py"


def test_execute_errors(registry):
    with pytest.raises(ToolNotFoundError):
        asyncio.run(registry.execute("ghost", {}))

    with pytest.raises(ToolValidationError) as info:
        asyncio.run(registry.execute("search_project_code", {"query": 3}))
    assert info.value.details["errors"] == ["Schema validation failed at 'query': 3 is not of type 'string'"]

    with pytest.raises(ToolExecutionError, match="disk on fire"):
        asyncio.run(registry.execute("broken_tool", {}))


def test_validator_reports_missing_required_field():
    schema = {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]}

    result = ToolParameterValidator.validate_tool_call(schema, {})

    assert not result.is_valid
    assert result.errors == ["Schema validation failed: 'title' is a required property"]
    assert ToolParameterValidator.validate_tool_call(schema, {"title": "x"}).is_valid


def test_executor_turns_failures_into_observations(registry):
    executor = ToolExecutor(registry)

    async def scenario():
        ok = await executor.execute_tool("search_project_code", {"query": "x"})
        missing = await executor.execute_tool("ghost", {})
        broken = await executor.execute_tool("broken_tool", {})
        return ok, missing, broken

    ok, missing, broken = asyncio.run(scenario())

    assert ok.success and ok.observation["total"] == 1
    assert not missing.success
    assert missing.observation == {"error": "ghost: tool is not registered", "tool": "ghost"}
    assert broken.observation["error"] == "broken_tool: disk on fire"


def test_executor_timeout():
    registry = InMemoryToolRegistry()

    async def slow(args, ctx):
        await asyncio.sleep(1)

    registry.register_tool("slow", "Takes a while", slow)
    executor = ToolExecutor(registry, timeout_seconds=0.01)

    result = asyncio.run(executor.execute_tool("slow", {}))

    assert not result.success
    assert "timed out" in result.observation["error"]
