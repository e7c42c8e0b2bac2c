"""
Retry utility for handling network failures on outbound calls.

Provides decorators and utilities for automatic retry logic.
"""

import asyncio
import random
import time
from functools import wraps
from typing import Callable, Any, Optional, List, Type

from utils.logger import setup_logger

logger = setup_logger(__name__)

def _next_delay(current_delay: float, jitter: bool) -> float:
    if jitter:
        return current_delay + random.uniform(0, current_delay * 0.1)
    return current_delay

def with_retry(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: Optional[List[Type[Exception]]] = None
):
    """
    Decorator for automatic retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Multiplier for delay on each retry
        jitter: Add random jitter to prevent thundering herd
        exceptions: List of exception types to retry on (default: all)

    Returns:
        Decorated function with retry logic
    """
    retry_on = tuple(exceptions or [Exception])

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            current_delay = delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    # Don't retry on the last attempt
                    if attempt == max_retries:
                        logger.error(f"All {max_retries + 1} attempts failed for {func.__name__}")
                        raise

                    actual_delay = _next_delay(current_delay, jitter)
                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries + 1} failed for {func.__name__}: {e}. "
                        f"Retrying in {actual_delay:.2f} seconds..."
                    )
                    await asyncio.sleep(actual_delay)
                    current_delay *= backoff_factor

        @wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            current_delay = delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        logger.error(f"All {max_retries + 1} attempts failed for {func.__name__}")
                        raise

                    actual_delay = _next_delay(current_delay, jitter)
                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries + 1} failed for {func.__name__}: {e}. "
                        f"Retrying in {actual_delay:.2f} seconds..."
                    )
                    time.sleep(actual_delay)
                    current_delay *= backoff_factor

        # Return appropriate wrapper based on whether function is async
        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

