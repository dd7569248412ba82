"""
Retry decorators and utilities for handling transient upstream errors.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Type, Tuple
from ..gateways.exceptions import UpstreamUnavailable
from .logger import get_logger

logger = get_logger(__name__)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (UpstreamUnavailable,),
    label: str = "operation"
) -> Any:
    """
    Await operation(), retrying on the given exceptions.

    Delay before retry N (0-based) is initial_delay * backoff_base ** N.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        max_attempts: Total attempts including the first one
        initial_delay: Delay before the first retry, in seconds
        backoff_base: Multiplier applied per further retry
        exceptions: Exception types that trigger a retry
        label: Name used in log events

    Returns:
        The operation's result

    Raises:
        The last exception once attempts are exhausted
    """
    for attempt in range(max_attempts):
        try:
            return await operation()
        except exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(
                    "max_retries_exceeded",
                    function=label,
                    attempts=max_attempts,
                    error=str(e)
                )
                raise

            delay = initial_delay * backoff_base ** attempt
            logger.warning(
                "retrying_after_error",
                function=label,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay_seconds=delay,
                error=str(e)
            )
            if delay > 0:
                await asyncio.sleep(delay)


def retry_on_transient_error(
    max_attempts: int = 3,
    backoff_base: int = 2,
    exceptions: Tuple[Type[Exception], ...] = (UpstreamUnavailable,)
):
    """
    Decorator to retry async functions on transient errors.

    Uses exponential backoff: delay = backoff_base ** attempt_number

    Only apply this to idempotent calls (quotes, verification, tracking).

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        backoff_base: Base for exponential backoff calculation (default: 2)
        exceptions: Tuple of exception types to retry on

    Example:
        @retry_on_transient_error(max_attempts=3)
        async def verify(reference):
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                initial_delay=1.0,
                backoff_base=backoff_base,
                exceptions=exceptions,
                label=func.__name__
            )

        return wrapper
    return decorator


async def with_timeout(
    awaitable: Awaitable[Any],
    timeout_seconds: float,
    operation: str,
    provider: str = None
) -> Any:
    """
    Await with a hard deadline, mapping a timeout to UpstreamUnavailable.

    Args:
        awaitable: Collaborator call to await
        timeout_seconds: Deadline in seconds
        operation: Operation name for the error message
        provider: Collaborator name

    Raises:
        UpstreamUnavailable: If the deadline passes
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "upstream_timeout",
            operation=operation,
            provider=provider,
            timeout_seconds=timeout_seconds
        )
        raise UpstreamUnavailable(
            f"{operation} timed out after {timeout_seconds}s",
            provider=provider
        )
