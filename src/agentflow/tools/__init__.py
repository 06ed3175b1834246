"""
Tool registry for agentflow.

This module provides a decorator to register tools and a registry to look them up by name.
Tools are plain or ``async`` functions called with keyword arguments.  Their JSON-schema
parameter description is derived from the function signature, so a tool is advertised to the
model exactly as it can be called.
"""

import inspect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    get_type_hints,
)

from agentflow.core.schema import ToolDefinition

logger = logging.getLogger(__name__)

TOOL_REGISTRY: Dict[str, Callable] = {}
"""Global registry of tool functions."""

DELEGATE_TOOL_NAME = "delegate_to_agent"
"""Reserved tool name; never executed, interpreted by the workflow engine as a hand-off."""

INJECTED_PARAMS = frozenset({"user_id", "context"})
"""Parameters filled by the executor from the conversation, never by the model."""

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def register_tool(name: str, description: Optional[str] = None) -> Callable:
    """
    Register a tool function with the given name.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("search_schools")
        async def search_schools(query: str, limit: int = 10):
            ...

    Parameters
    ----------
    name: str
        The name of the tool.  This must be unique and is used to look up the
        function in the registry.
    description: str, optional
        Text shown to the model.  Defaults to the function's docstring.
    Returns
    -------
    Callable
        A decorator that registers the function with the given name.
    Raises
    ------
    ValueError
        If a function with the same name is already registered, or the name is reserved.
    """
    if name == DELEGATE_TOOL_NAME:
        raise ValueError(f"Tool name '{name}' is reserved.")
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(fn: Callable) -> Callable:
        if description is not None:
            fn.__tool_description__ = description  # type: ignore[attr-defined]
        TOOL_REGISTRY[name] = fn
        return fn

    return wrapper


def unregister_tool(name: str) -> None:
    """Remove *name* from the registry if present."""
    TOOL_REGISTRY.pop(name, None)


def _json_type(annotation: Any) -> str:
    origin = getattr(annotation, "__origin__", None)
    if origin is not None:
        annotation = origin
    return _JSON_TYPES.get(annotation, "string")


def describe_tool(name: str, func: Callable) -> ToolDefinition:
    """Build the :class:`ToolDefinition` of *func* from its signature and docstring."""
    sig = inspect.signature(func)
    type_hints = get_type_hints(func)
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if param_name in INJECTED_PARAMS:
            continue
        properties[param_name] = {"type": _json_type(type_hints.get(param_name, str))}
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    text = getattr(func, "__tool_description__", None) or inspect.getdoc(func) or ""
    return ToolDefinition(
        name=name,
        description=text,
        parameters={"type": "object", "properties": properties, "required": required},
    )


def get_tool_schemas(names: Optional[Iterable[str]] = None) -> Dict[str, ToolDefinition]:
    """
    Definitions of registered tools, optionally limited to *names*.

    Unknown names are skipped with a warning so an agent's allow-list may mention tools that are
    not deployed.
    """
    if names is None:
        names = list(TOOL_REGISTRY)
    schemas: Dict[str, ToolDefinition] = {}
    for name in names:
        if name == DELEGATE_TOOL_NAME:
            continue
        func = TOOL_REGISTRY.get(name)
        if func is None:
            logger.warning("Tool '%s' is not registered; not advertised", name)
            continue
        schemas[name] = describe_tool(name, func)
    return schemas


DELEGATE_TOOL = ToolDefinition(
    name=DELEGATE_TOOL_NAME,
    description=(
        "Hand the request over to a specialist agent when it is better suited to answer. "
        "Use only when the task clearly belongs to another agent's domain."
    ),
    parameters={
        "type": "object",
        "properties": {
            "agent": {"type": "string", "description": "Target agent type"},
            "task": {"type": "string", "description": "What the target agent should do"},
            "context": {"type": "string", "description": "Relevant context to pass along"},
        },
        "required": ["agent", "task"],
    },
)
