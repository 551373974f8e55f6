"""
Fixed-window rate limiting for job dispatch.

Mirrors the gate the Redis broker keeps in a single INCR/PEXPIRE counter,
for brokers that live inside one process.
"""

from typing import Dict, Optional, Tuple

from models import RateLimit


class FixedWindowRateLimiter:
    """
    Shared dispatch gate keyed by queue name.

    Algorithm:
        - Maintain dict of key -> (window_start_ms, count)
        - A window opens on the first grant and lasts duration_ms
        - Under the limit: count the grant, return 0
        - At the limit: return ms until the window closes

    Attributes:
        _windows: Dict mapping key to (window_start_ms, grants in window)
    """

    def __init__(self):
        self._windows: Dict[str, Tuple[int, int]] = {}

    def try_acquire(self, key: str, limit: RateLimit, now_ms: int) -> int:
        """
        Try to take one dispatch slot.

        Args:
            key: Gate name (one per queue)
            limit: Max grants per window
            now_ms: Current time in milliseconds

        Returns:
            0 if granted, otherwise milliseconds until a slot frees up
        """
        start, count = self._windows.get(key, (now_ms, 0))

        if now_ms >= start + limit.duration_ms:
            start, count = now_ms, 0

        if count >= limit.max:
            return max(start + limit.duration_ms - now_ms, 1)

        if count == 0:
            start = now_ms
        self._windows[key] = (start, count + 1)
        return 0

    def reset(self, key: Optional[str] = None):
        """
        Reset rate limiter state.

        Args:
            key: If provided, reset only this gate. Otherwise reset all.
        """
        if key:
            self._windows.pop(key, None)
        else:
            self._windows.clear()
