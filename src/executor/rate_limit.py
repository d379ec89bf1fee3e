"""Rate limiter for LLM API calls.

One TokenBucket is shared by every chapter-generation call in a worker
process, across all of its job threads.
"""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket.

    ``rate`` tokens are added per second up to ``capacity``. ``acquire``
    reserves a token under the lock and sleeps outside it, so waiting
    threads never block each other's bookkeeping.
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _reserve(self, tokens: float) -> float:
        """Take ``tokens`` (possibly going negative). Returns seconds to wait."""
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._updated_at)
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated_at = now
            self._tokens -= tokens
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def acquire(self, tokens: float = 1.0) -> float:
        """Block until ``tokens`` are available. Returns the time waited."""
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        wait = self._reserve(tokens)
        if wait > 0:
            logger.debug(f"Rate limit: waiting {wait:.2f}s")
            self._sleep(wait)
        return wait
