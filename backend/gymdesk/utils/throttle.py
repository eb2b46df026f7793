"""In-memory login throttling.

Failed sign-in attempts are counted per key (client address + email) in
a sliding window; once the limit is reached the key is locked until the
oldest failure leaves the window. A successful login clears the key.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class LoginThrottle:
    """Sliding-window counter of failed attempts per key."""

    def __init__(self, max_failures: int = 5, window_seconds: int = 60, clock=time.monotonic):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, q: deque, now: float) -> None:
        cutoff = now - self.window_seconds
        while q and q[0] < cutoff:
            q.popleft()

    def _sweep(self, now: float) -> None:
        """Forget keys whose newest failure has left the window."""
        cutoff = now - self.window_seconds
        for stale in [k for k, q in self._failures.items() if not q or q[-1] < cutoff]:
            del self._failures[stale]

    def check(self, key: str) -> tuple[bool, int]:
        """Return `(allowed, retry_after_seconds)` for `key`."""
        now = self._clock()
        with self._lock:
            q = self._failures.get(key)
            if not q:
                return True, 0
            self._prune(q, now)
            if not q:
                del self._failures[key]
                return True, 0
            if len(q) >= self.max_failures:
                return False, max(1, int(self.window_seconds - (now - q[0])))
        return True, 0

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            q = self._failures[key]
            self._prune(q, now)
            q.append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
