"""Common utility classes for the project."""

import time
from collections import OrderedDict
from typing import (
    Callable,
    Generic,
    Optional,
    Tuple,
    TypeVar,
)

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Bounded in-process cache with per-entry expiry.

    Entries expire ``ttl_s`` seconds after they were *written*; reads do not extend their life.
    When ``max_size`` is reached the least recently written entry is evicted.

    Args:
        max_size: Maximum number of live entries
        ttl_s: Time to live of an entry in seconds
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size
        self.ttl_s = ttl_s
        self._clock = clock
        self._data: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        """Return the live value for *key* or *None*."""
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def set(self, key: K, value: V) -> None:
        """Store *value* under *key*, evicting the oldest entry when full."""
        self._data.pop(key, None)
        self._data[key] = (value, self._clock() + self.ttl_s)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def delete(self, key: K) -> bool:
        """Remove *key*; return whether it was present."""
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, expires_at in self._data.values() if now < expires_at)
