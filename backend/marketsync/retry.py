from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from marketsync.errors import MarketDataError, RateLimitError, classify_error
from marketsync.loading import LoadingTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_DELAY = 10.0


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: T
    retry_count: int


def retry_delay(
    error: MarketDataError,
    attempt: int,
    base_delay: float,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    Rate-limit recovery backs off exponentially; ordinary transient errors
    back off linearly. Both are capped at ``max_delay``.
    """
    if isinstance(error, RateLimitError):
        return min(base_delay * (2**attempt), max_delay)
    return min(base_delay * attempt, max_delay)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float,
    *,
    max_delay: float = DEFAULT_MAX_DELAY,
    tracker: LoadingTracker | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    context: str = "operation",
) -> RetryOutcome[T]:
    """Run ``operation`` until it succeeds or a terminal error is reached.

    Validation, rate-limit and unknown errors are raised on first sight.
    Network, timeout and upstream errors are retried up to ``max_retries``
    times. The raised error is always a classified :class:`MarketDataError`
    with ``retry_count`` set.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        max_retries: Retries allowed after the first attempt
        base_delay: Base delay between retries (seconds)
        max_delay: Cap on any single delay (seconds)
        tracker: Receives loading-state transitions
        sleep: Awaitable sleep, replaced in tests
        context: Label used in log records
    """
    if tracker is not None:
        tracker.start()

    retry_count = 0
    while True:
        try:
            value = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc)
            error.retry_count = retry_count
            if not error.retryable or retry_count >= max_retries:
                if error.retryable:
                    logger.error(
                        "%s failed after %d retries: %s (%s)",
                        context,
                        retry_count,
                        error.kind.value,
                        error.detail,
                    )
                else:
                    logger.warning(
                        "%s failed with %s (not retrying): %s",
                        context,
                        error.kind.value,
                        error.detail,
                    )
                if tracker is not None:
                    tracker.fail(error)
                if error is exc:
                    raise
                raise error from exc

            retry_count += 1
            delay = retry_delay(error, retry_count, base_delay, max_delay)
            logger.warning(
                "%s failed with %s, retrying in %.2fs (attempt %d/%d)",
                context,
                error.kind.value,
                delay,
                retry_count,
                max_retries,
            )
            if tracker is not None:
                tracker.retry()
            await sleep(delay)
            continue

        if tracker is not None:
            tracker.succeed()
        return RetryOutcome(value=value, retry_count=retry_count)
