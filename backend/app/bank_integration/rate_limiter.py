"""
Sliding-window rate limiter.

Each key (e.g. "test-bank:accounts:abcd1234") gets its own window of
attempt timestamps. try_acquire never blocks: callers get False and are
expected to report RATE_LIMIT_EXCEEDED.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """
    Allow at most max_requests attempts per key within window_seconds.

    Timestamps come from an injectable monotonic clock so tests can
    advance time without sleeping.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, window: Deque[float], now: float):
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def try_acquire(self, key: str) -> bool:
        """
        Record an attempt for key if the window has room.

        Returns:
            True if the attempt may proceed, False if the limit is reached
        """
        with self._lock:
            now = self._clock()
            window = self._windows.setdefault(key, deque())
            self._prune(window, now)
            if len(window) >= self.max_requests:
                return False
            window.append(now)
            return True

    def remaining(self, key: str) -> int:
        with self._lock:
            window = self._windows.get(key)
            if not window:
                return self.max_requests
            self._prune(window, self._clock())
            return self.max_requests - len(window)

    def reset(self, key: str = None):
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
