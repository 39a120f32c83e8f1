"""Asynchronous FIFO token bucket rate limiter."""

import asyncio
import logging
import time


logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket limiting the rate of outbound requests.

    Waiters are served strictly in submission order: the lock is held
    while a waiter sleeps for its tokens, and ``asyncio.Lock`` wakes
    blocked acquirers in arrival order. Nothing is ever dropped.

    Parameters
    ----------
    rate:
        Number of tokens added per second.
    capacity:
        Maximum number of tokens in the bucket (burst size).
    """

    def __init__(self, rate: float, capacity: int) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = max(1, int(capacity))
        self.tokens = float(self.capacity)
        self.updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.updated
        self.updated = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

    async def acquire(self, tokens: float = 1.0) -> float:
        """Consume ``tokens``, waiting if necessary.

        Returns the number of seconds spent waiting.
        """
        started = time.monotonic()
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return time.monotonic() - started
                wait = (tokens - self.tokens) / self.rate
                logger.debug("rate limiter throttling for %.3fs", wait)
                await asyncio.sleep(wait)


__all__ = ["TokenBucket"]
