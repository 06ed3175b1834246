"""Retry, timeout and circuit breaker behaviour of the resilience layer."""

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from agentflow.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    OperationTimeoutError,
    UpstreamError,
)
from agentflow.resilience import (
    CircuitBreakerConfig,
    CircuitState,
    ResilienceLayer,
    RetryConfig,
    error_code,
    is_retryable,
)


class Flaky:
    """Fails with *error* for the first *failures* calls, then returns ``"ok"``."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


async def _fail() -> None:
    raise UpstreamError(503, "unavailable")


async def _succeed() -> str:
    return "ok"


@pytest.fixture
def delays() -> list:
    return []


@pytest.fixture
def layer(fake_clock, delays) -> ResilienceLayer:
    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    return ResilienceLayer(clock=fake_clock, sleep=record_sleep)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------
def test_error_codes() -> None:
    """Explicit codes win; transport errors map to socket codes."""

    assert error_code(UpstreamError(429)) == "429"
    assert error_code(OperationTimeoutError("x", 10)) == "ETIMEDOUT"
    assert error_code(httpx.ConnectError("refused")) == "ECONNRESET"
    assert error_code(httpx.ReadTimeout("slow")) == "ETIMEDOUT"
    assert error_code(ValueError("nope")) is None


def test_is_retryable_by_class_name() -> None:
    assert is_retryable(KeyError("x"), ["KeyError"])
    assert not is_retryable(ConfigurationError("missing key"), RetryConfig().retryable_errors)
    assert is_retryable(UpstreamError(502), RetryConfig().retryable_errors)
    assert not is_retryable(UpstreamError(400), RetryConfig().retryable_errors)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_retry_until_success_with_backoff(layer, delays) -> None:
    """Two retryable failures then success: three calls, delays 1s then 2s."""

    op = Flaky(2, UpstreamError(503))
    result = await layer.with_retry(op, RetryConfig(max_attempts=3))

    assert result == "ok"
    assert op.calls == 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_delay_is_capped(layer, delays) -> None:
    op = Flaky(4, UpstreamError(500))
    await layer.with_retry(op, RetryConfig(max_attempts=5, base_delay_ms=1000, max_delay_ms=3000))

    assert delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_immediately(layer, delays) -> None:
    op = Flaky(5, ConfigurationError("missing key"))

    with pytest.raises(ConfigurationError):
        await layer.with_retry(op, RetryConfig(max_attempts=3))

    assert op.calls == 1
    assert delays == []


@pytest.mark.asyncio
async def test_exhausted_retries_raise_last_error(layer) -> None:
    op = Flaky(10, UpstreamError(429, "rate limited"))

    with pytest.raises(UpstreamError) as exc_info:
        await layer.with_retry(op, RetryConfig(max_attempts=3))

    assert exc_info.value.status_code == 429
    assert op.calls == 3


@pytest.mark.asyncio
async def test_single_attempt_raises_without_sleeping(layer, delays) -> None:
    op = Flaky(1, UpstreamError(503))

    with pytest.raises(UpstreamError):
        await layer.with_retry(op, RetryConfig(max_attempts=1))

    assert op.calls == 1
    assert delays == []


def test_retry_config_requires_one_attempt() -> None:
    with pytest.raises(ValidationError):
        RetryConfig(max_attempts=0)


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_timeout_raises_with_label() -> None:
    layer = ResilienceLayer()

    async def slow() -> str:
        await asyncio.sleep(0.5)
        return "late"

    with pytest.raises(OperationTimeoutError) as exc_info:
        await layer.with_timeout(slow, 50, "profile-lookup")

    assert "profile-lookup" in str(exc_info.value)
    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.code == "ETIMEDOUT"


@pytest.mark.asyncio
async def test_timeout_passes_fast_result() -> None:
    layer = ResilienceLayer()
    assert await layer.with_timeout(_succeed, 1000, "fast") == "ok"


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_circuit_opens_after_threshold(layer) -> None:
    """Five failures open the breaker; the sixth call is rejected without running."""

    for _ in range(5):
        with pytest.raises(UpstreamError):
            await layer.with_circuit_breaker("llm", _fail)

    calls = []

    async def tracked() -> str:
        calls.append(1)
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        await layer.with_circuit_breaker("llm", tracked)

    assert calls == []
    assert "llm" in str(exc_info.value)
    assert layer.get_circuit_status("llm") == {"state": "OPEN", "failures": 5, "is_open": True}


@pytest.mark.asyncio
async def test_circuit_half_open_then_closed(layer, fake_clock) -> None:
    cfg = CircuitBreakerConfig(failure_threshold=5, reset_timeout_ms=30_000, half_open_requests=2)
    for _ in range(5):
        with pytest.raises(UpstreamError):
            await layer.with_circuit_breaker("llm", _fail, cfg)

    fake_clock.advance(29)
    with pytest.raises(CircuitOpenError):
        await layer.with_circuit_breaker("llm", _succeed)

    fake_clock.advance(1)
    assert await layer.with_circuit_breaker("llm", _succeed) == "ok"
    assert layer.get_circuit_status("llm")["state"] == CircuitState.HALF_OPEN.value

    assert await layer.with_circuit_breaker("llm", _succeed) == "ok"
    assert layer.get_circuit_status("llm") == {"state": "CLOSED", "failures": 0, "is_open": False}


@pytest.mark.asyncio
async def test_half_open_failure_reopens(layer, fake_clock) -> None:
    cfg = CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=1000)
    with pytest.raises(UpstreamError):
        await layer.with_circuit_breaker("tool:search", _fail, cfg)

    fake_clock.advance(1)
    with pytest.raises(UpstreamError):
        await layer.with_circuit_breaker("tool:search", _fail)

    assert layer.get_circuit_status("tool:search")["state"] == "OPEN"
    with pytest.raises(CircuitOpenError):
        await layer.with_circuit_breaker("tool:search", _succeed)


@pytest.mark.asyncio
async def test_success_resets_failure_count(layer) -> None:
    for _ in range(4):
        with pytest.raises(UpstreamError):
            await layer.with_circuit_breaker("llm", _fail)
    await layer.with_circuit_breaker("llm", _succeed)
    for _ in range(4):
        with pytest.raises(UpstreamError):
            await layer.with_circuit_breaker("llm", _fail)

    assert layer.get_circuit_status("llm")["state"] == "CLOSED"


@pytest.mark.asyncio
async def test_reset_circuit(layer) -> None:
    cfg = CircuitBreakerConfig(failure_threshold=1)
    with pytest.raises(UpstreamError):
        await layer.with_circuit_breaker("llm", _fail, cfg)
    assert layer.get_circuit_status("llm")["is_open"]

    layer.reset_circuit("llm")

    assert await layer.with_circuit_breaker("llm", _succeed) == "ok"
    assert layer.get_all_circuit_statuses() == {
        "llm": {"state": "CLOSED", "failures": 0, "is_open": False}
    }


def test_unknown_circuit_reports_closed(layer) -> None:
    assert layer.get_circuit_status("never-used") == {"state": "CLOSED", "failures": 0, "is_open": False}
    assert layer.get_all_circuit_statuses() == {}


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_execute_retries_inside_one_breaker_call(layer, delays) -> None:
    """A call that succeeds after retries counts as one breaker success."""

    op = Flaky(2, UpstreamError(502))
    result = await layer.execute("llm", op, retry=RetryConfig(max_attempts=3))

    assert result == "ok"
    assert op.calls == 3
    assert layer.get_circuit_status("llm")["failures"] == 0


@pytest.mark.asyncio
async def test_execute_times_out_each_attempt(layer) -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(OperationTimeoutError) as exc_info:
        await layer.execute("tool:slow", slow, retry=RetryConfig(max_attempts=2), timeout_ms=20)

    assert "tool:slow" in str(exc_info.value)
    assert layer.get_circuit_status("tool:slow")["failures"] == 1
