"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with linear or
exponential backoff. The call engine uses it to retry timed-out requests;
each retry re-enters the decorated function, so every attempt gets a fresh
correlation id.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.
    backoff_delay: Delay before a given retry under a policy.

Example:
    >>> from mcp_runtime.utils.retry import async_retry
    >>>
    >>> @async_retry(max_retries=2, base_delay=0.5, exceptions=(McpTimeoutError,))
    ... async def list_tools():
    ...     return await engine.call("tools/list")

Backoff Formula:
    linear:      delay = base_delay * attempt
    exponential: delay = base_delay * multiplier ** (attempt - 1)
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from mcp_runtime.enums import BackoffPolicy

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float,
    policy: BackoffPolicy = BackoffPolicy.EXPONENTIAL,
    multiplier: float = 2.0,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    if policy is BackoffPolicy.LINEAR:
        return base_delay * attempt
    return base_delay * multiplier ** (attempt - 1)


def async_retry(
    max_retries: int = 2,
    base_delay: float = 1.0,
    policy: BackoffPolicy = BackoffPolicy.EXPONENTIAL,
    multiplier: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with backoff retry logic.

    Args:
        max_retries: Retries after the first attempt. ``0`` calls the
            function exactly once.
        base_delay: Base delay in seconds.
        policy: Linear or exponential delay growth.
        multiplier: Growth factor for exponential backoff.
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retries are exhausted.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempts = max_retries + 1
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts:
                        if max_retries:
                            log.error(
                                "retry_exhausted",
                                function=func.__name__,
                                attempts=attempt,
                                error=str(e),
                            )
                        raise

                    delay = backoff_delay(attempt, base_delay, policy, multiplier)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
