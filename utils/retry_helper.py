"""
Retry helper for block explorer timeouts and network issues
"""
import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable

import aiohttp
import requests

logger = logging.getLogger(__name__)

# Errors worth another attempt. Anything else is a bug or a definitive answer.
TRANSIENT_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    requests.RequestException,
    ConnectionError,
)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    retries: int = 2,
    delay: float = 1.0,
    backoff: float = 2.0,
    timeout: float | None = None,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)`` with a per-attempt timeout and retry on transient errors

    Args:
        func: Coroutine function to call
        retries: Number of retries after the first attempt
        delay: Initial delay between retries in seconds
        backoff: Multiplier for delay after each retry
        timeout: Per-attempt timeout in seconds, None for no timeout

    Raises the last transient error once every attempt failed.
    """
    max_attempts = retries + 1
    current_delay = delay
    last_exception = None

    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_attempts):
        try:
            if timeout is not None:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            return await func(*args, **kwargs)

        except TRANSIENT_ERRORS as e:
            last_exception = e
            error_name = type(e).__name__
            if attempt < max_attempts - 1:
                logger.warning(
                    f"{error_name} in {name} (attempt {attempt + 1}/{max_attempts}). "
                    f"Retrying in {current_delay} seconds..."
                )
                await asyncio.sleep(current_delay)
                current_delay *= backoff
            else:
                logger.error(
                    f"{error_name} in {name} after {max_attempts} attempts. Giving up."
                )

    raise last_exception


def auto_retry(retries: int = 2, delay: float = 1.0, backoff: float = 2.0, timeout: float | None = None):
    """
    Decorator form of :func:`call_with_retry`

    Args:
        retries: Number of retries after the first attempt
        delay: Initial delay between retries in seconds
        backoff: Multiplier for delay after each retry
        timeout: Per-attempt timeout in seconds
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await call_with_retry(
                func, *args, retries=retries, delay=delay, backoff=backoff, timeout=timeout, **kwargs
            )
        return wrapper
    return decorator
