"""Shared retry utility for transient operations.

Network clones, downloads and package-list refreshes all go through
``retry()`` so that attempt counts, delays and logging are uniform.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from raphael_imagegen.errors import CommandError, RetryableError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exceptions retried by default
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (RetryableError, CommandError)


def retry(
    action: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 5.0,
    *,
    backoff: float = 1.0,
    operation: str = "operation",
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run an action, retrying on transient failures.

    Args:
        action: Zero-argument callable to run.
        max_attempts: Total number of attempts (at least 1).
        delay: Delay before the second attempt in seconds.
        backoff: Multiplier applied to the delay after each failure
            (1.0 keeps the delay fixed).
        operation: Name used in log messages and the escalated error.
        retry_on: Exception types that trigger another attempt. Anything
            else propagates immediately.
        sleep: Sleep function (replaceable in tests).

    Returns:
        The action's return value.

    Raises:
        RetryExhaustedError: If every attempt failed.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    current_delay = delay
    for attempt in range(1, max_attempts + 1):
        try:
            logger.info("%s: attempt %d/%d", operation, attempt, max_attempts)
            return action()
        except retry_on as e:
            logger.warning(
                "%s: attempt %d/%d failed: %s", operation, attempt, max_attempts, e
            )
            if attempt == max_attempts:
                raise RetryExhaustedError(operation, max_attempts, e) from e
            if current_delay > 0:
                logger.info("%s: retrying in %.1fs", operation, current_delay)
                sleep(current_delay)
            current_delay *= backoff

    # Unreachable: the loop either returns or raises
    raise AssertionError("retry loop exited without result")


__all__ = ["RETRYABLE_EXCEPTIONS", "retry"]
