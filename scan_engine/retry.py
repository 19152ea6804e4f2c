"""
Retry utilities with exponential backoff for store and collaborator calls
"""

import asyncio
import logging
import random
from functools import wraps
from typing import Any, Callable, Tuple, Type

from .errors import RetryableError, ScanEngineError, SideEffectUnavailableError

logger = logging.getLogger(__name__)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    sleep: Callable[[float], Any] = asyncio.sleep,
):
    """
    Decorator for exponential backoff retry logic on coroutines

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential calculation
        jitter: Whether to add random jitter to prevent thundering herd
        retryable_exceptions: Exception types that should trigger retries
        sleep: Awaitable sleep function, replaceable in tests
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {max_retries} retries: {e}")
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    if jitter:
                        delay = delay * (0.5 + random.random() * 0.5)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries + 1}: {e}. "
                        f"Retrying in {delay:.2f} seconds..."
                    )
                    await sleep(delay)

        return wrapper

    return decorator


def retry_side_effect(max_retries: int = 2, sleep: Callable[[float], Any] = asyncio.sleep):
    """Retry decorator for calls to notification, search and queue collaborators"""
    return exponential_backoff(
        max_retries=max_retries,
        base_delay=0.5,
        max_delay=5.0,
        retryable_exceptions=(RetryableError,),
        sleep=sleep,
    )


def convert_http_error(response_status: int, error_message: str) -> ScanEngineError:
    """Convert collaborator HTTP status codes to engine exception types"""
    if response_status in (408, 429) or 500 <= response_status < 600:
        return SideEffectUnavailableError(f"Collaborator unavailable ({response_status}): {error_message}")
    return ScanEngineError(f"HTTP error ({response_status}): {error_message}")
