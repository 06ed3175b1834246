"""
Basic sanity tests for the tool registry and executor.

Run with:
$ pytest -q
"""

import pytest

from agentflow.agent.tool_executor import (
    RegistryToolExecutor,
    ToolExecutionError,
    execute_tool,
)
from agentflow.core.schema import UserContext
from agentflow.tools import (
    DELEGATE_TOOL_NAME,
    describe_tool,
    get_tool_schemas,
    register_tool,
)

from conftest import tool_call


# These are stub tools for testing purposes.
@register_tool("add")
def _add(a: int, b: int) -> int:
    """Return the sum of two integers (used only for tests)."""

    return a + b


@register_tool("whoami", description="Report the calling user")
async def _whoami(greeting: str = "hi", user_id: str = "", context: UserContext | None = None) -> dict:
    return {"greeting": greeting, "user_id": user_id, "has_context": context is not None}


@register_tool("explode")
def _explode() -> None:
    raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_execute_tool_success() -> None:
    """Executor should return the correct value when the tool is valid."""

    assert await execute_tool("add", {"a": 2, "b": 3}) == 5


@pytest.mark.asyncio
async def test_execute_tool_missing() -> None:
    """Executor should raise *ToolExecutionError* for an unknown tool."""

    with pytest.raises(ToolExecutionError) as exc_info:
        await execute_tool("not_a_tool", {})
    assert "not_a_tool" in str(exc_info.value)


@pytest.mark.asyncio
async def test_execute_tool_bad_args() -> None:
    """Executor should raise *ToolExecutionError* for wrong arguments."""

    with pytest.raises(ToolExecutionError) as exc_info:
        await execute_tool("add", {"a": 2})  # missing 'b'
    assert "Invalid arguments" in str(exc_info.value)


@pytest.mark.asyncio
async def test_injected_params_only_reach_tools_that_declare_them() -> None:
    """``user_id`` and ``context`` come from the conversation, not from the model."""

    injected = {"user_id": "u1", "context": UserContext(user_id="u1")}

    assert await execute_tool("whoami", {"greeting": "hello"}, injected=injected) == {
        "greeting": "hello",
        "user_id": "u1",
        "has_context": True,
    }
    assert await execute_tool("add", {"a": 1, "b": 1}, injected=injected) == 2


@pytest.mark.asyncio
async def test_registry_executor_wraps_failures() -> None:
    executor = RegistryToolExecutor()

    ok = await executor.execute(tool_call("add", a=1, b=2), "u1")
    failed = await executor.execute(tool_call("explode"), "u1")

    assert ok.success and ok.result == 3
    assert not failed.success
    assert "boom" in failed.error
    assert failed.duration_ms >= 0


@pytest.mark.asyncio
async def test_registry_executor_with_private_registry() -> None:
    executor = RegistryToolExecutor(registry={"double": lambda x: x * 2})

    result = await executor.execute(tool_call("double", x=21), "u1")
    missing = await executor.execute(tool_call("add", a=1, b=2), "u1")

    assert result.result == 42
    assert "not registered" in missing.error


def test_register_duplicate_or_reserved_name() -> None:
    with pytest.raises(ValueError):
        register_tool("add")
    with pytest.raises(ValueError):
        register_tool(DELEGATE_TOOL_NAME)


def test_schema_hides_injected_params() -> None:
    schema = describe_tool("whoami", _whoami)

    assert schema.description == "Report the calling user"
    assert schema.parameters == {
        "type": "object",
        "properties": {"greeting": {"type": "string"}},
        "required": [],
    }
    assert describe_tool("add", _add).parameters["required"] == ["a", "b"]
    assert describe_tool("add", _add).parameters["properties"]["a"] == {"type": "integer"}


def test_get_tool_schemas_skips_unknown_and_reserved() -> None:
    schemas = get_tool_schemas(["add", "missing_tool", DELEGATE_TOOL_NAME])
    assert list(schemas) == ["add"]
    assert schemas["add"].to_openai()["function"]["name"] == "add"
