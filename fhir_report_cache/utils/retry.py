"""Bounded exponential backoff for coroutine calls against the FHIR server and Elasticsearch."""

import asyncio
from functools import wraps
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from fhir_report_cache.utils.errors import RetryExhaustedError

log = structlog.stdlib.get_logger()

T = TypeVar("T")
AsyncFunction = Callable[..., Awaitable[T]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait after the zero-based ``attempt`` failed."""
    return min(base_delay * (2**attempt), max_delay)


def exponential_backoff_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
) -> Callable[[AsyncFunction], AsyncFunction]:
    """
    Retry a coroutine function when it raises one of ``exceptions``.

    The call is made at most ``max_retries + 1`` times, sleeping
    ``backoff_delay`` between attempts. Other exceptions propagate at once.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound of any single delay, in seconds
        exceptions: Exception types considered transient

    Raises:
        RetryExhaustedError: After the last attempt failed; the last error is
            chained as its cause
    """

    def decorator(func: AsyncFunction) -> AsyncFunction:
        name = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        log.error("retries_exhausted", function=name, attempts=attempt + 1, error=str(e))
                        raise RetryExhaustedError(name, attempt + 1, e) from e
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    attempt += 1
                    log.warning(
                        "retrying_after_error",
                        function=name,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
