"""
Retry logic with exponential backoff for handling transient failures.

Provides a call helper for automatically retrying operations that fail
due to rate limiting, server errors or network issues.
"""

import time
from typing import Any, Callable, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


class ExhaustedRetriesError(RetryError):
    """All attempts failed; the last underlying error is attached."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> float:
    """
    Delay after failed attempt number `attempt` (1-based).

    attempt 1 -> base_delay, attempt 2 -> base_delay * 2, ... capped at max_delay.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(base_delay * exponential_base ** (attempt - 1), max_delay)


def retry_call(
    func: Callable[..., Any],
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Any:
    """
    Call `func` and retry it with exponential backoff.

    Args:
        func: Callable to invoke
        max_retries: Total number of attempts, the first call included (>= 1)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
        sleep: Sleep function, swapped out in tests

    Raises:
        ValueError: max_retries below 1
        ExhaustedRetriesError: after max_retries failed attempts.
        Any exception not listed in `exceptions` propagates unchanged.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    for attempt in range(1, max_retries + 1):
        try:
            return func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_retries:
                raise ExhaustedRetriesError(
                    f"Failed after {max_retries} attempts: {str(e)}",
                    last_error=e,
                    attempts=max_retries,
                ) from e

            current_delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
            if on_retry:
                on_retry(attempt, e, current_delay)
            sleep(current_delay)
