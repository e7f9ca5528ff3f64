"""
Per-caller rate limiting for the verification endpoint.

Sliding window: a caller may make `max_requests` attempts within any
`window_seconds` interval. Signature recovery is the expensive step this
bounds, so the check runs before the orchestrator.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    max_requests: int = 10
    window_seconds: float = 60.0
    enabled: bool = True


class RateLimitExceeded(Exception):
    """Raised when a caller is over its budget."""

    def __init__(self, key: str, retry_after: float):
        super().__init__(f"rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after


class SlidingWindowLimiter:
    def __init__(self, config: RateLimitConfig = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def check(self, key: str) -> None:
        """
        Record an attempt for `key`.

        Raises:
            RateLimitExceeded: If the attempt would exceed the window budget
        """
        if not self.config.enabled:
            return
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.config.window_seconds:
                hits.popleft()
            if len(hits) >= self.config.max_requests:
                retry_after = self.config.window_seconds - (now - hits[0])
                logger.warning("Rate limit exceeded for %s, retry after %.1fs", key, retry_after)
                raise RateLimitExceeded(key, retry_after)
            hits.append(now)
            self._prune(now)

    def _prune(self, now: float) -> None:
        """Drop callers whose every hit has left the window."""
        stale = [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= self.config.window_seconds]
        for k in stale:
            del self._hits[k]

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
