"""Dispatches tool calls registered in ``agentflow.tools`` and wraps errors."""

import asyncio
import inspect
import logging
import time
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
)

from agentflow.core.errors import ToolExecutionError
from agentflow.core.schema import (
    ToolCall,
    ToolExecutionResult,
    UserContext,
)
from agentflow.tools import (
    INJECTED_PARAMS,
    TOOL_REGISTRY,
)

logger = logging.getLogger(__name__)


async def execute_tool(
    name: str,
    args: Dict[str, Any] | None = None,
    injected: Dict[str, Any] | None = None,
    registry: Mapping[str, Callable] | None = None,
) -> Any:
    """
    Look up *name* in the registry and invoke it with *args*.

    Parameters
    ----------
    name:
        The registered tool name.
    args:
        Keyword arguments to pass verbatim to the tool function.  If *None*,
        an empty dict is assumed.
    injected:
        Conversation values (``user_id``, ``context``) passed only to tools whose signature
        declares them.
    registry:
        Registry to look *name* up in; defaults to the global ``TOOL_REGISTRY``.

    Returns
    -------
    Any
        Whatever the tool function returns.  Synchronous tools run in a worker thread so a
        timeout around the call can still fire.

    Raises
    ------
    ToolExecutionError
        If the tool is missing or its invocation raises an exception.
    """

    if args is None:
        args = {}
    registry = TOOL_REGISTRY if registry is None else registry

    tool_fn = registry.get(name)
    if tool_fn is None:
        raise ToolExecutionError(f"Tool '{name}' is not registered.")

    kwargs = dict(args)
    params = inspect.signature(tool_fn).parameters
    for key, value in (injected or {}).items():
        if key in INJECTED_PARAMS and key in params:
            kwargs[key] = value

    try:
        logger.debug("Executing tool '%s' with args=%s", name, args)
        if inspect.iscoroutinefunction(tool_fn):
            return await tool_fn(**kwargs)
        return await asyncio.to_thread(tool_fn, **kwargs)
    except TypeError as exc:
        # Argument mismatch: give the caller a clean exception.
        logger.exception("Argument error while executing tool '%s'", name)
        raise ToolExecutionError(f"Invalid arguments for tool '{name}': {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", name)
        raise ToolExecutionError(f"Tool '{name}' raised an error: {exc}") from exc


class ToolExecutor(ABC):
    """Runs one tool call for a user; failures come back as data, never as exceptions."""

    @abstractmethod
    async def execute(
        self, tool_call: ToolCall, user_id: str, context: Optional[UserContext] = None
    ) -> ToolExecutionResult:
        ...


class RegistryToolExecutor(ToolExecutor):
    """Executes tools registered with :func:`agentflow.tools.register_tool`."""

    def __init__(self, registry: Mapping[str, Callable] | None = None) -> None:
        self.registry = registry

    async def execute(
        self, tool_call: ToolCall, user_id: str, context: Optional[UserContext] = None
    ) -> ToolExecutionResult:
        start = time.perf_counter()
        try:
            result = await execute_tool(
                tool_call.name,
                tool_call.arguments,
                injected={"user_id": user_id, "context": context},
                registry=self.registry,
            )
        except ToolExecutionError as exc:
            logger.warning("Tool failure: %s", exc)
            return ToolExecutionResult(
                success=False, error=str(exc), duration_ms=(time.perf_counter() - start) * 1000
            )
        return ToolExecutionResult(
            success=True, result=result, duration_ms=(time.perf_counter() - start) * 1000
        )
