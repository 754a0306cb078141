"""Backoff policy for calls to WiseTime and Allisa.

Retries are bounded twice: by the attempt count in RetryConfig and, when
given, by a monotonic deadline shared with the rest of the sync cycle.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25


@dataclass
class RetryConfig:
    """How often and how patiently to retry a failed request."""

    max_retries: int = 3  # retries after the first attempt
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after the given failed attempt (0-indexed).

        A server Retry-After wins over the computed backoff when it is longer,
        but never beyond max_delay.
        """
        delay = calculate_delay(
            attempt, self.base_delay, self.max_delay, self.exponential_base, self.jitter
        )
        if retry_after:
            delay = min(max(delay, float(retry_after)), self.max_delay)
        return delay


class RetryExhausted(Exception):
    """Raised when no further attempt will be made."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        if last_error is None:
            super().__init__(f"Deadline reached after {attempts} attempts")
        else:
            super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Exponential backoff capped at max_delay, optionally +/- 25% jitter."""
    delay = min(base_delay * exponential_base ** attempt, max_delay)
    if jitter:
        spread = delay * JITTER_FRACTION
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call func until it succeeds, a non-retryable error occurs, or we give up.

    Args:
        func: Zero-argument callable
        config: Retry policy (defaults to RetryConfig())
        on_retry: Called as (attempt, error, delay) before sleeping; replaces
            the default warning log
        retryable_exceptions: Exception types that trigger another attempt.
            A `retry_after` attribute on the exception is honoured.
        deadline: time.monotonic() value; no attempt starts after it
        sleep: Injectable for tests

    Raises:
        RetryExhausted: Attempts or time ran out; carries the last error
    """
    config = config or RetryConfig()
    attempt = 0
    last_error: Optional[Exception] = None

    while True:
        if deadline is not None and time.monotonic() >= deadline:
            raise RetryExhausted(attempt, last_error)
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            if attempt + 1 >= config.max_attempts:
                raise RetryExhausted(attempt + 1, e)

            delay = config.delay_for(attempt, getattr(e, "retry_after", None))
            if deadline is not None and time.monotonic() + delay >= deadline:
                logger.warning(f"Attempt {attempt + 1} failed: {e}. Cycle deadline reached")
                raise RetryExhausted(attempt + 1, e)

            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s")
            sleep(delay)
            attempt += 1
