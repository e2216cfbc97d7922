"""
Source Rate Limiters - Per-source request pacing for council portals.

Two variants share the acquire() contract:
- FixedRateLimiter: at most R grants per second, evenly spaced
- TokenBucketRateLimiter: bursts up to capacity C, refilled at R tokens/sec

State is mutated only under a threading.Lock. The lock is held while a slot
is reserved, never while sleeping, so concurrent callers queue up behind
their reserved slot instead of behind each other's sleep.

Usage:
    limiter = build_rate_limiter(source_config)
    limiter.acquire()
    response = fetcher.fetch(url, headers, timeout)
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], None]


class FixedRateLimiter:
    """Grants at most `requests_per_second` acquisitions per second."""

    def __init__(
        self,
        requests_per_second: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ):
        if requests_per_second <= 0:
            raise ValueError(f"requests_per_second must be > 0, got {requests_per_second}")
        self.requests_per_second = float(requests_per_second)
        self.interval = 1.0 / self.requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Optional[float] = None
        self._grants = 0

    def acquire(self) -> float:
        """
        Block until the next slot is due.

        Returns:
            Seconds spent waiting.
        """
        with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.interval
            self._grants += 1
            delay = slot - now

        if delay > 0:
            self._sleep(delay)
        return delay

    def reset(self) -> None:
        with self._lock:
            self._next_slot = None

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "type": "fixed",
                "requests_per_second": self.requests_per_second,
                "grants": self._grants,
            }


class TokenBucketRateLimiter:
    """
    Token bucket with capacity C and refill rate R tokens/sec.

    Starts full. Refill is computed lazily on each acquire and capped at C.
    A caller that finds the bucket empty reserves the next token (the balance
    goes negative) and sleeps until it is due.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be > 0, got {refill_rate}")
        self.capacity = int(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._grants = 0

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def acquire(self) -> float:
        """
        Take one token, sleeping until one is available.

        Returns:
            Seconds spent waiting.
        """
        with self._lock:
            now = self._clock()
            self._refill(now)
            if self._tokens >= 1:
                delay = 0.0
            else:
                delay = (1 - self._tokens) / self.refill_rate
            self._tokens -= 1
            self._grants += 1

        if delay > 0:
            self._sleep(delay)
        return delay

    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return max(0.0, self._tokens)

    def reset(self) -> None:
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self._clock()

    def get_status(self) -> Dict[str, Any]:
        return {
            "type": "token_bucket",
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "available_tokens": round(self.available_tokens(), 3),
            "grants": self._grants,
        }


def build_rate_limiter(config, effective_rate: Optional[float] = None):
    """
    Create the limiter a source should use.

    Args:
        config: SourceConfig for the source
        effective_rate: Rate after compliance checks (e.g. robots.txt
                        crawl-delay). Defaults to the declared rate.
    """
    rate = effective_rate or config.requests_per_second
    if rate < config.requests_per_second:
        logger.info(
            f"[{config.name}] Rate limit lowered from {config.requests_per_second}/s "
            f"to {rate:.3f}/s by compliance policy"
        )

    if config.use_burst_rate_limit:
        # A crawl-delay means no bursting at all.
        capacity = config.effective_burst_capacity if rate >= config.requests_per_second else 1
        return TokenBucketRateLimiter(capacity=capacity, refill_rate=rate)
    return FixedRateLimiter(rate)
