"""
Retry with exponential backoff.

One RetryPolicy is shared by single-request call sites (retry_with_backoff)
and by the batch processor, so both back off the same way:

    delay(attempt) = base_delay * 2 ** attempt      (attempt is 0-based)

optionally jittered by +/-25% and capped at max_delay. A RateLimitError that
carries retry_after raises the delay to at least that value.
"""
import functools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from .errors import RateLimitError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


@dataclass
class RetryOutcome(Generic[T]):
    """Result of running a callable under a RetryPolicy."""
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Reusable retry policy.

    retry_attempts is the number of retries after the first attempt, so a
    callable that always fails is invoked retry_attempts + 1 times.
    """
    retry_attempts: int = 3
    base_delay: float = 1.0
    jitter: bool = False
    max_delay: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.retry_attempts < 0:
            raise ValueError(f"retry_attempts must be >= 0, got {self.retry_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    @classmethod
    def from_source_config(cls, config, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            retry_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            jitter=config.retry_jitter,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self.retry_attempts + 1

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Backoff before retry number `attempt + 1` (attempt is 0-based)."""
        delay = self.base_delay * (2 ** attempt)
        if self.jitter and delay > 0:
            delay *= random.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
        delay = min(delay, self.max_delay)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay

    def run(self, fn: Callable[..., T], *args, label: str = "", **kwargs) -> RetryOutcome[T]:
        """
        Call fn until it succeeds, fails with a non-retryable error, or the
        attempt budget is spent. Never raises; the last error is returned.
        """
        attempts = 0
        for attempt in range(self.max_attempts):
            attempts += 1
            try:
                return RetryOutcome(value=fn(*args, **kwargs), attempts=attempts)
            except Exception as e:
                if not is_retryable(e):
                    logger.debug(f"{label or fn!r}: non-retryable {type(e).__name__}: {e}")
                    return RetryOutcome(error=e, attempts=attempts)
                if attempt >= self.retry_attempts:
                    logger.warning(
                        f"{label or 'call'} failed after {attempts} attempt(s): "
                        f"{type(e).__name__}: {e}"
                    )
                    return RetryOutcome(error=e, attempts=attempts)
                delay = self.compute_delay(attempt, e)
                logger.warning(
                    f"{label or 'call'} attempt {attempts}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                if delay > 0:
                    self.sleep(delay)
        # Unreachable: the loop always returns.
        raise AssertionError("retry loop exited without an outcome")

    def execute(self, fn: Callable[..., T], *args, label: str = "", **kwargs) -> T:
        """Like run(), but re-raises the last error on failure."""
        outcome = self.run(fn, *args, label=label, **kwargs)
        if outcome.error is not None:
            raise outcome.error
        return outcome.value


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    jitter: bool = False,
    policy: Optional[RetryPolicy] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator for single-request call sites.

    Usage:
        @retry_with_backoff(max_attempts=3, base_delay=0.5)
        def fetch_robots(url): ...
    """
    retry_policy = policy or RetryPolicy(
        retry_attempts=max(0, max_attempts - 1),
        base_delay=base_delay,
        jitter=jitter,
    )

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return retry_policy.execute(fn, *args, label=fn.__name__, **kwargs)
        return wrapper

    return decorator
