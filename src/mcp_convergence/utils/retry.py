"""Retry helpers with bounded exponential backoff."""
import logging
from typing import Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


def async_retrying(
    retry_if: Callable[[BaseException], bool],
    max_attempts: int = 3,
    multiplier: float = 1,
    min_wait: float = 1,
    max_wait: float = 10,
) -> AsyncRetrying:
    """Build an AsyncRetrying controller.

    Args:
        retry_if: Predicate deciding whether an exception is worth retrying
        max_attempts: Maximum number of attempts (first call included)
        multiplier: Exponential backoff multiplier
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Usage:
        async for attempt in async_retrying(is_transient, max_attempts=5):
            with attempt:
                await provider.apply(action)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(retry_if),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
