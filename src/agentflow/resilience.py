"""
Resilience layer: retry with exponential backoff, per-service circuit breaking and timeouts.

The layer knows nothing about LLMs or tools.  Domain code hands it a zero-argument coroutine
factory and a service key (``"llm"``, ``"tool:search_schools"``, ...)::

    result = await resilience.execute(
        "llm",
        lambda: client.post(...),
        retry=RetryConfig(max_attempts=3),
        circuit=CircuitBreakerConfig(failure_threshold=5),
        timeout_ms=30_000,
    )

Composition order is breaker(retry(timeout(op))).  Every attempt gets its own timeout, and a call
that still fails after its retries counts once toward the breaker's failures.
"""

import asyncio
import logging
import time
from abc import (
    ABC,
    abstractmethod,
)
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    TypeVar,
)

import httpx
from pydantic import (
    BaseModel,
    Field,
)

from agentflow.core.errors import (
    CircuitOpenError,
    OperationTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DEFAULT_RETRYABLE_ERRORS = ["ECONNRESET", "ETIMEDOUT", "429", "500", "502", "503", "504"]


class RetryConfig(BaseModel):
    """Retry policy for one call site."""

    max_attempts: int = Field(3, ge=1)
    base_delay_ms: float = 1000
    max_delay_ms: float = 10_000
    retryable_errors: List[str] = Field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker policy for one service key."""

    failure_threshold: int = 5
    reset_timeout_ms: float = 30_000
    half_open_requests: int = 2


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerState(BaseModel):
    """Mutable breaker state of one service key."""

    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: float = 0.0
    last_failure_time: float = 0.0
    half_open_allowed: int = 0


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------
class CircuitStateStore(ABC):
    """Where breaker state lives.  Keys are service names."""

    @abstractmethod
    def get(self, key: str) -> CircuitBreakerState:
        """Return the state for *key*, creating a CLOSED one if needed."""

    @abstractmethod
    def peek(self, key: str) -> Optional[CircuitBreakerState]:
        """Return the state for *key* without creating it."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Forget *key* (next access starts CLOSED)."""

    @abstractmethod
    def keys(self) -> List[str]:
        """All known service keys."""


class InMemoryCircuitStore(CircuitStateStore):
    """Process-local breaker state.  Safe under a single event loop."""

    def __init__(self) -> None:
        self._states: Dict[str, CircuitBreakerState] = {}

    def get(self, key: str) -> CircuitBreakerState:
        if key not in self._states:
            self._states[key] = CircuitBreakerState()
        return self._states[key]

    def peek(self, key: str) -> Optional[CircuitBreakerState]:
        return self._states.get(key)

    def delete(self, key: str) -> None:
        self._states.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._states)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------
def error_code(exc: BaseException) -> Optional[str]:
    """
    Return the short code used to match *exc* against a retry allow-list.

    Errors raised by agentflow carry an explicit ``code``.  Transport errors from httpx and the
    built-in connection/timeout errors are mapped onto the classic socket codes.
    """
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError)):
        return "ECONNRESET"
    if isinstance(exc, ConnectionError):
        return "ECONNRESET"
    return None


def is_retryable(exc: BaseException, retryable_errors: List[str]) -> bool:
    """True when the code or class name of *exc* is in *retryable_errors*."""
    code = error_code(exc)
    if code is not None and code in retryable_errors:
        return True
    return type(exc).__name__ in retryable_errors


# ---------------------------------------------------------------------------
# Resilience layer
# ---------------------------------------------------------------------------
class ResilienceLayer:
    """
    Retry, circuit breaker and timeout primitives plus their composition.

    Parameters
    ----------
    store:
        Circuit breaker state store.  Defaults to an in-process store.
    clock:
        Monotonic time source in seconds, used for the breaker's reset timeout.
    sleep:
        Coroutine used to wait between retries.
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store or InMemoryCircuitStore()
        self._configs: Dict[str, CircuitBreakerConfig] = {}
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # Retry
    # ------------------------------------------------------------------ #
    async def with_retry(self, op: Operation[T], config: Optional[RetryConfig] = None) -> T:
        """Run *op*, retrying retryable failures with capped exponential backoff."""
        cfg = config or RetryConfig()
        attempt = 1

        while True:
            try:
                return await op()
            except Exception as exc:  # noqa: BLE001
                if not is_retryable(exc, cfg.retryable_errors):
                    raise
                if attempt >= cfg.max_attempts:
                    logger.error("All %d attempts failed: %s", cfg.max_attempts, exc)
                    raise

                delay_ms = min(cfg.base_delay_ms * 2 ** (attempt - 1), cfg.max_delay_ms)
                logger.warning(
                    "Retry attempt %d/%d after %gms: %s", attempt, cfg.max_attempts, delay_ms, exc
                )
                await self._sleep(delay_ms / 1000)
            attempt += 1

    # ------------------------------------------------------------------ #
    # Timeout
    # ------------------------------------------------------------------ #
    async def with_timeout(self, op: Operation[T], timeout_ms: float, label: str = "operation") -> T:
        """
        Run *op* with a time budget.

        Raises
        ------
        OperationTimeoutError
            If the budget is exceeded.  The pending operation is cancelled but any side effects it
            already caused are not rolled back.
        """
        try:
            return await asyncio.wait_for(op(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(label, timeout_ms) from exc

    # ------------------------------------------------------------------ #
    # Circuit breaker
    # ------------------------------------------------------------------ #
    async def with_circuit_breaker(
        self, key: str, op: Operation[T], config: Optional[CircuitBreakerConfig] = None
    ) -> T:
        """Run *op* behind the breaker for *key*."""
        cfg = self._get_config(key, config)
        state = self._store.get(key)

        if state.state == CircuitState.OPEN:
            if (self._clock() - state.opened_at) * 1000 >= cfg.reset_timeout_ms:
                self._transition(key, state, CircuitState.HALF_OPEN, cfg)
            else:
                raise CircuitOpenError(key)

        if state.state == CircuitState.HALF_OPEN:
            if state.half_open_allowed <= 0:
                raise CircuitOpenError(key)
            state.half_open_allowed -= 1

        try:
            result = await op()
        except Exception:
            self._on_failure(key, state, cfg)
            raise

        self._on_success(key, state, cfg)
        return result

    # ------------------------------------------------------------------ #
    # Composition
    # ------------------------------------------------------------------ #
    async def execute(
        self,
        key: str,
        op: Operation[T],
        retry: Optional[RetryConfig] = None,
        circuit: Optional[CircuitBreakerConfig] = None,
        timeout_ms: float = 30_000,
    ) -> T:
        """Breaker outermost, retry in the middle, a timeout around every attempt."""

        async def attempt() -> T:
            return await self.with_timeout(op, timeout_ms, key)

        async def retried() -> T:
            return await self.with_retry(attempt, retry)

        return await self.with_circuit_breaker(key, retried, circuit)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #
    def get_circuit_status(self, key: str) -> Dict[str, Any]:
        """Breaker status of *key* for health reporting."""
        state = self._store.peek(key)
        if state is None:
            return {"state": CircuitState.CLOSED.value, "failures": 0, "is_open": False}
        return {
            "state": state.state.value,
            "failures": state.failures,
            "is_open": state.state == CircuitState.OPEN,
        }

    def get_all_circuit_statuses(self) -> Dict[str, Dict[str, Any]]:
        return {key: self.get_circuit_status(key) for key in self._store.keys()}

    def reset_circuit(self, key: str) -> None:
        """Manually close the breaker for *key*."""
        self._store.delete(key)
        logger.info("Circuit breaker reset: %s", key)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _get_config(
        self, key: str, override: Optional[CircuitBreakerConfig]
    ) -> CircuitBreakerConfig:
        # first registration wins
        if key not in self._configs:
            self._configs[key] = override or CircuitBreakerConfig()
        return self._configs[key]

    def _transition(
        self,
        key: str,
        state: CircuitBreakerState,
        new_state: CircuitState,
        cfg: CircuitBreakerConfig,
    ) -> None:
        old_state = state.state
        state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            state.half_open_allowed = cfg.half_open_requests
            state.successes = 0
        elif new_state == CircuitState.CLOSED:
            state.failures = 0
            state.successes = 0
        elif new_state == CircuitState.OPEN:
            state.opened_at = self._clock()

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log("Circuit %s: %s -> %s", key, old_state.value, new_state.value)

    def _on_success(self, key: str, state: CircuitBreakerState, cfg: CircuitBreakerConfig) -> None:
        if state.state == CircuitState.HALF_OPEN:
            state.successes += 1
            if state.successes >= cfg.half_open_requests:
                self._transition(key, state, CircuitState.CLOSED, cfg)
        elif state.failures:
            state.failures = 0

    def _on_failure(self, key: str, state: CircuitBreakerState, cfg: CircuitBreakerConfig) -> None:
        state.failures += 1
        state.last_failure_time = self._clock()

        if state.state == CircuitState.HALF_OPEN:
            self._transition(key, state, CircuitState.OPEN, cfg)
        elif state.state == CircuitState.CLOSED and state.failures >= cfg.failure_threshold:
            self._transition(key, state, CircuitState.OPEN, cfg)
