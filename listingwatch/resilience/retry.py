"""Retry with capped exponential backoff and jitter.

delay(attempt) = min(base * 2^(attempt-1), cap) + uniform(0, jitter * that)

The jitter spreads retries from concurrent fetch workers so they don't hit
the crawl target in lockstep.
"""

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Sequence, Type

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.25,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if delay <= 0 or jitter <= 0:
        return max(delay, 0.0)
    return delay + (rng or random).uniform(0, delay * jitter)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    retry_on: Sequence[Type[BaseException]] = (Exception,),
    label: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """Await func(*args, **kwargs), retrying on `retry_on` exceptions.

    Raises the last error once `max_attempts` attempts have failed.
    """
    name = label or getattr(func, "__name__", "call")
    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except tuple(retry_on) as e:
            if attempt >= max_attempts:
                logger.warning("Retry exhausted for %s after %d attempts: %s", name, attempt, e)
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info("Retry %d/%d for %s in %.1fs: %s", attempt, max_attempts, name, delay, e)
            await sleep(delay)


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    retry_on: Sequence[Type[BaseException]] = (Exception,),
) -> Callable:
    """Decorator form of call_with_retry."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await call_with_retry(
                func, *args,
                max_attempts=max_attempts, base_delay=base_delay,
                max_delay=max_delay, retry_on=retry_on, **kwargs,
            )
        return wrapper
    return decorator
