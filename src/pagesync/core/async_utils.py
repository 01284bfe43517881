"""Async utilities for running blocking I/O under a bounded worker pool."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_BACKOFF = 30.0


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    semaphore: asyncio.Semaphore | None,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a synchronous function in a thread pool, bounded by *semaphore*.

    Falls back to unbounded if no semaphore is given.
    """
    if semaphore is None:
        return await run_sync(func, *args, **kwargs)
    async with semaphore:
        return await run_sync(func, *args, **kwargs)


async def retry_async(
    func: Callable[[], Coroutine[Any, Any, T]],
    attempts: int,
    initial_backoff: float,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    giveup_exceptions: tuple[type[BaseException], ...] = (),
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    description: str = "operation",
) -> T:
    """Await ``func()`` with exponential backoff between failed attempts.

    Args:
        func: Zero-argument coroutine factory, called once per attempt.
        attempts: Total number of attempts (>= 1).
        initial_backoff: Delay before the second attempt in seconds.
        retryable_exceptions: Exception types that trigger another attempt.
            Anything else propagates immediately.
        giveup_exceptions: Exceptions that propagate immediately even when
            they subclass a retryable type.
        max_backoff: Upper bound for a single delay.
        backoff_multiplier: Growth factor applied after each failure.
        description: Label used in log messages.

    Returns:
        Result of the first successful attempt.

    Raises:
        The last retryable exception once all attempts are exhausted.
    """
    backoff = initial_backoff
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except giveup_exceptions:
            raise
        except retryable_exceptions as e:
            if attempt == attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s",
                    description,
                    attempts,
                    e,
                )
                raise
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs",
                description,
                attempt,
                attempts,
                e,
                backoff,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("retry_async called with attempts < 1")
