"""Property-based tests for retry logic with exponential backoff.

Feature: fhir-report-cache
"""

import asyncio

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from fhir_report_cache.utils import retry
from fhir_report_cache.utils.errors import RetryExhaustedError
from fhir_report_cache.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()


def run_without_sleeping(coroutine_function, monkeypatch) -> tuple[object, list[float]]:
    delays: list[float] = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(retry.asyncio, "sleep", fake_sleep)
    try:
        result = asyncio.run(coroutine_function())
    except RetryExhaustedError as e:
        result = e
    return result, delays


@given(
    st.integers(min_value=1, max_value=6),
    st.floats(min_value=0.01, max_value=2.0),
)
@settings(max_examples=50, deadline=None)
def test_property_11_exponential_backoff_behavior(num_failures: int, base_delay: float):
    """Property 11: Exponential backoff behavior.

    For any sequence of transient errors, each retry waits twice as long as
    the previous one until the cap is reached.

    **Feature: fhir-report-cache, Property 11: Exponential backoff behavior**
    """
    log.info(
        "test_property_11_exponential_backoff_behavior",
        num_failures=num_failures,
        base_delay=base_delay,
    )

    call_count = 0

    @exponential_backoff_retry(
        max_retries=num_failures,
        base_delay=base_delay,
        max_delay=5.0,
        exceptions=(ValueError,),
    )
    async def failing_function():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise ValueError(f"Simulated failure {call_count}")
        return "success"

    with pytest.MonkeyPatch.context() as monkeypatch:
        result, delays = run_without_sleeping(failing_function, monkeypatch)

    assert result == "success", "Function should eventually succeed"
    assert call_count == num_failures + 1
    assert delays == [min(base_delay * (2**i), 5.0) for i in range(num_failures)]


@given(st.integers(min_value=0, max_value=8))
@settings(max_examples=30, deadline=None)
def test_exponential_backoff_max_retries(max_retries: int):
    """Test that exponential backoff stops after max_retries and surfaces a typed error."""
    log.info("test_exponential_backoff_max_retries", max_retries=max_retries)

    call_count = 0

    @exponential_backoff_retry(
        max_retries=max_retries,
        base_delay=0.01,
        max_delay=1.0,
        exceptions=(ValueError,),
    )
    async def always_failing_function():
        nonlocal call_count
        call_count += 1
        raise ValueError("Always fails")

    with pytest.MonkeyPatch.context() as monkeypatch:
        result, delays = run_without_sleeping(always_failing_function, monkeypatch)

    assert isinstance(result, RetryExhaustedError)
    assert result.attempts == max_retries + 1
    assert result.function == "always_failing_function"
    assert isinstance(result.last_error, ValueError)
    assert result.__cause__ is result.last_error
    assert call_count == max_retries + 1
    assert len(delays) == max_retries


@pytest.mark.asyncio
async def test_unlisted_exceptions_are_not_retried():
    call_count = 0

    @exponential_backoff_retry(max_retries=3, base_delay=0.01, exceptions=(ValueError,))
    async def wrong_kind():
        nonlocal call_count
        call_count += 1
        raise KeyError("not transient")

    with pytest.raises(KeyError):
        await wrong_kind()
    assert call_count == 1
