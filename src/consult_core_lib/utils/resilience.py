"""Resilience utilities for the consultation core.

This module provides standard retry policies for handling transient failures
when talking to the record store and the notification channel.
"""

import logging
from typing import Any, Callable, Tuple, Type, TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from consult_core_lib.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Standard retry policy for service startup connections
# - Wait 2^x * 1 seconds between retries (2s, 4s, 8s, 16s, 32s)
# - Stop after 5 attempts (total ~62s wait time)
# - Log warnings before sleeping
# - Re-raise the exception if all retries fail
service_startup_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=32),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def create_custom_retry(
    max_attempts: int = 5,
    min_wait: float = 2,
    max_wait: float = 32,
    multiplier: float = 1,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Create a custom retry decorator with specific parameters.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        multiplier: Exponential backoff multiplier
        exceptions: Exception types that trigger a retry

    Returns:
        A retry decorator configured with the specified parameters

    Example:
        ```python
        reconnect_retry = create_custom_retry(max_attempts=10, min_wait=1, max_wait=10)

        @reconnect_retry
        async def resubscribe():
            ...
        ```
    """
    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def store_retry(
    max_attempts: int = 1,
    min_wait: float = 0.2,
    max_wait: float = 2.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Bounded retry for record store calls.

    Only TransientStoreError is retried; validation, authorization and
    not-found failures propagate on the first attempt. With max_attempts=1
    the wrapped call runs exactly once.

    Args:
        max_attempts: Total attempts per call (1 disables retry)
        min_wait: Minimum backoff between attempts (seconds)
        max_wait: Maximum backoff between attempts (seconds)

    Returns:
        A retry decorator for sync or async callables
    """
    return retry(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
