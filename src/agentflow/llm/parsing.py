"""Helpers for reading chat-completion payloads: tool-call arguments, SSE lines, fragments."""

import json
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from agentflow.core.schema import ToolCall

logger = logging.getLogger(__name__)

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    """Decode a JSON argument string; anything unparsable or non-object becomes ``{}``."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparsable tool arguments, using {}: %.200s", raw)
        return {}
    return value if isinstance(value, dict) else {}


def sse_payload(line: str) -> Optional[str]:
    """Return the payload of a ``data: `` line, or *None* for any other line."""
    if not line.startswith(SSE_PREFIX):
        return None
    return line[len(SSE_PREFIX) :]


def dedupe_tool_calls(calls: List[ToolCall]) -> List[ToolCall]:
    """Keep the first call per tool name; at most one call per name survives a turn."""
    seen = set()
    unique: List[ToolCall] = []
    for call in calls:
        if call.name in seen:
            continue
        seen.add(call.name)
        unique.append(call)
    if len(unique) < len(calls):
        logger.warning("Deduplicated tool calls: %d -> %d", len(calls), len(unique))
    return unique


@dataclass
class _PartialCall:
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: List[str] = field(default_factory=list)


class ToolCallAccumulator:
    """
    Collects streamed tool-call fragments keyed by their positional ``index``.

    The id and name come from whichever fragment supplies them first.  Argument text is
    concatenated raw and parsed only in :meth:`finalize`, because partial JSON is invalid.
    """

    def __init__(self) -> None:
        self._calls: Dict[int, _PartialCall] = {}

    def add(self, fragment: Dict[str, Any]) -> None:
        """
        Merge one fragment.

        Raises
        ------
        TypeError
            If the fragment or one of its fields has the wrong shape.  Nothing is merged then.
        """
        if not isinstance(fragment, dict):
            raise TypeError(f"tool call fragment is {type(fragment).__name__}, not an object")
        index = fragment.get("index", 0)
        function = fragment.get("function") or {}
        if not isinstance(index, int) or not isinstance(function, dict):
            raise TypeError("tool call fragment has a malformed index or function")
        call_id, name, arguments = fragment.get("id"), function.get("name"), function.get("arguments")
        for value in (call_id, name, arguments):
            if value is not None and not isinstance(value, str):
                raise TypeError("tool call fragment fields must be strings")

        partial = self._calls.setdefault(index, _PartialCall())
        if call_id and partial.id is None:
            partial.id = call_id
        if name and partial.name is None:
            partial.name = name
        if arguments:
            partial.arguments.append(arguments)

    def finalize(self) -> List[ToolCall]:
        """Completed calls in index order, de-duplicated by name."""
        calls = [
            ToolCall(id=p.id, name=p.name, arguments=parse_tool_arguments("".join(p.arguments)))
            for _, p in sorted(self._calls.items())
            if p.id and p.name
        ]
        return dedupe_tool_calls(calls)

    def __len__(self) -> int:
        return len(self._calls)
