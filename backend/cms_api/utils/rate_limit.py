"""In-memory throttle for repeated login attempts."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class LoginThrottle:
    """Sliding-window attempt counter per key (client address + email).

    State lives in process memory, so limits are per worker. A successful
    login clears the key.
    """

    def __init__(self, max_attempts: int, window_seconds: int = 60):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._attempts = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str) -> tuple[bool, int]:
        """Record an attempt; return (allowed, retry_after_seconds)."""
        now = time.monotonic()
        with self._lock:
            q = self._attempts[key]
            cutoff = now - self.window_seconds
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= self.max_attempts:
                return False, max(1, int(self.window_seconds - (now - q[0])))
            q.append(now)
        return True, 0

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)
