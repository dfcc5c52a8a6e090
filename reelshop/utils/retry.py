"""Exponential backoff for transient HTTP I/O."""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    give_up: Optional[Callable[[Exception], bool]] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry an async callable with exponential backoff.

    The n-th retry sleeps ``base_delay * 2**n`` seconds. Only exceptions in
    ``exceptions`` are retried, and ``give_up`` can veto a retry for errors
    that will not improve by waiting (a 4xx response, for example).

    Args:
        max_attempts: Total number of calls, including the first
        base_delay: Delay in seconds before the first retry
        exceptions: Exception types that trigger a retry
        give_up: Optional predicate; returning True re-raises immediately

    Returns:
        Decorated coroutine function
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if give_up is not None and give_up(e):
                        logger.warning(f"{func.__name__} failed permanently: {e}")
                        raise
                    if attempt < max_attempts - 1:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            f"{func.__name__} attempt {attempt + 1}/{max_attempts} "
                            f"failed: {e}. Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"{func.__name__}: all {max_attempts} attempts failed: {e}")

            raise last_exception  # type: ignore

        return wrapper  # type: ignore

    return decorator
