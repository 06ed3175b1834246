"""
Shrinks tool results before they are replayed to the model.

Arrays keep a short prefix and objects a few keys; nested containers get tighter limits.
Anything cut is annotated so the model knows more data exists than it is shown::

    >>> summarize_tool_result(list(range(8)))
    {'items': [0, 1, 2, 3, 4], 'total': 8, 'shown': 5}
"""

from typing import (
    Any,
    Dict,
    Tuple,
)

# (max list items, max object keys) per nesting depth; the last entry applies below
LIMITS: Tuple[Tuple[int, int], ...] = ((5, 10), (3, 5), (3, 3))
MAX_DEPTH = 4


def _limits(depth: int) -> Tuple[int, int]:
    return LIMITS[min(depth, len(LIMITS) - 1)]


def summarize_tool_result(data: Any, depth: int = 0) -> Any:
    """Return a bounded copy of the JSON value *data*."""
    if isinstance(data, list):
        if depth >= MAX_DEPTH:
            return f"[{len(data)} items]"
        max_items, _ = _limits(depth)
        shown = [summarize_tool_result(item, depth + 1) for item in data[:max_items]]
        if len(data) > max_items:
            return {"items": shown, "total": len(data), "shown": max_items}
        return shown

    if isinstance(data, dict):
        if depth >= MAX_DEPTH:
            return f"{{{len(data)} keys}}"
        _, max_keys = _limits(depth)
        result: Dict[str, Any] = {}
        for key in list(data)[:max_keys]:
            result[key] = summarize_tool_result(data[key], depth + 1)
        if len(data) > max_keys:
            result["_truncated"] = {"total_keys": len(data), "shown_keys": max_keys}
        return result

    return data
