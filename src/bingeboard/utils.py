"""Utility functions and decorators for bingeboard."""

import asyncio
import logging
import re
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def async_retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Async decorator that retries a coroutine with exponential backoff on failure.

    Args:
        max_retries: Maximum number of attempts (including the first one)
        initial_delay: Initial delay in seconds before first retry
        backoff_factor: Multiplier for delay between retries (exponential backoff)
        exceptions: Tuple of exception types to catch and retry. Anything else
            propagates immediately.

    Example:
        @async_retry_with_backoff(max_retries=3, initial_delay=0.5,
                                  exceptions=(httpx.TransportError,))
        async def fetch_providers():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): "
                            f"{type(e).__name__}: {e}. Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base-36."""
    if value < 0:
        raise ValueError(f"to_base36 expects a non-negative integer, got {value}")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def provider_slug(name: str, length: int | None = None) -> str:
    """
    Lowercase alphanumeric slug of a provider name.

    "Apple TV+" -> "appletv", truncated to `length` characters when given.
    """
    slug = re.sub(r"[^a-z0-9]", "", (name or "").lower())
    return slug[:length] if length is not None else slug
