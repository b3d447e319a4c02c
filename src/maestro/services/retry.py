"""Generic retry-with-backoff combinator for async operations."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(base_seconds: float) -> Callable[[int], float]:
    """Delay grows with the attempt number: base, 2*base, 3*base, ..."""
    return lambda attempt: base_seconds * attempt


def fixed_backoff(seconds: float) -> Callable[[int], float]:
    return lambda attempt: seconds


async def retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int,
    backoff: Callable[[int], float],
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds or attempts run out.

    Args:
        fn: Zero-argument coroutine factory
        max_attempts: Total number of calls, including the first
        backoff: Maps the number of failed attempts so far to a delay in seconds
        should_retry: Optional predicate; returning False re-raises immediately
        sleep: Awaitable sleep, replaceable in tests
        label: Name used in log messages

    Returns:
        Result of the first successful call

    Raises:
        The last exception once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= max_attempts or (should_retry and not should_retry(e)):
                logger.warning(f"{label} failed after {attempt} attempt(s): {e}")
                raise
            delay = backoff(attempt)
            logger.info(f"{label} attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
            await sleep(delay)

    raise RuntimeError("unreachable")
