"""
Retry helpers: the backoff curve shared by webhook delivery and backfill
retries, and a decorator for retrying connection-level failures.

Backoff is a pure function of the attempt number (plus an injectable random
source for jitter), so delays can be stored alongside queued tasks instead of
being owned by ad hoc timers.
"""

import functools
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


@dataclass
class BackoffPolicy:
    """
    Capped exponential backoff with full jitter.

    delay(n) = uniform(0, min(max_delay, base_delay * exponential_base ** (n - 1)))

    Args:
        base_delay: Delay ceiling for the first retry, in seconds
        max_delay: Upper bound for any delay, in seconds
        exponential_base: Growth factor between attempts
        jitter: Draw uniformly below the ceiling when True, else use the ceiling
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def ceiling(self, attempt: int) -> float:
        """Un-jittered delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * (self.exponential_base ** (attempt - 1)))

    def delay(self, attempt: int) -> float:
        cap = self.ceiling(attempt)
        if not self.jitter or cap <= 0:
            return cap
        return self.rng.uniform(0, cap)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
        sleep: Sleep function (injectable for tests)

    Example:
        @exponential_backoff(max_retries=3, base_delay=1.0,
                             exceptions=(requests.exceptions.ConnectionError,))
        def post(url, body):
            return requests.post(url, json=body, timeout=10)
    """
    policy = BackoffPolicy(
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=False,
    )

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    # Don't sleep after the last attempt
                    if attempt < max_retries:
                        current_delay = policy.delay(attempt + 1)

                        if on_retry:
                            on_retry(attempt + 1, e, current_delay)

                        sleep(current_delay)
                    else:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {str(e)}"
                        ) from e

            raise RetryError("Unexpected retry exhaustion")

        return wrapper
    return decorator


def should_retry_http_status(status_code: int) -> bool:
    """
    Check if HTTP status code indicates a retryable error.

    Args:
        status_code: HTTP status code

    Returns:
        True if should retry
    """
    # Retry on server errors and rate limiting
    retryable_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return status_code in retryable_codes


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None
