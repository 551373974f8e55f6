"""
Process-local TTL cache for expensive read aggregates.

The cache is advisory: it never holds the system of record, instances do
not share state, and clear() only affects the process it runs in.

Algorithm:
    - Entries are (value, expires_at) keyed by string
    - get() treats an entry past expires_at as absent and evicts it
    - An optional sweeper task purges expired entries for keys that are
      written but never read again
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    Dict-backed cache with lazy expiry.

    Args:
        clock: Seconds clock (monotonic by default)
        max_entries: Optional bound; when full, the entry closest to expiry is evicted

    Attributes:
        _store: Dict mapping key to (value, expires_at)
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self.clock = clock
        self.max_entries = max_entries
        self._store: Dict[str, Tuple[Any, float]] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._store)

    def get(self, key: str) -> Any:
        """Return the cached value, or None when missing or expired."""
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            self._store.pop(key, None)
            return
        if self.max_entries and key not in self._store and len(self._store) >= self.max_entries:
            self.purge_expired()
            if len(self._store) >= self.max_entries:
                oldest = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest]
        self._store[key] = (value, self.clock() + ttl_seconds)

    def clear(self, prefix: Optional[str] = None) -> int:
        """
        Remove all entries, or only those whose key starts with prefix.

        Returns:
            Number of entries removed
        """
        if not prefix:
            removed = len(self._store)
            self._store.clear()
            return removed

        doomed = [key for key in self._store if key.startswith(prefix)]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, (_, expires_at) in self._store.items() if now >= expires_at]
        for key in expired:
            del self._store[key]
        return len(expired)

    async def get_or_load(
        self,
        key: str,
        ttl_seconds: float,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Read-through helper.

        A cache failure is treated exactly like a miss: the loader result is
        returned even when it cannot be stored.
        """
        try:
            cached = self.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, falling through: {e}")
            cached = None

        if cached is not None:
            return cached

        value = await loader()

        if value is not None:
            try:
                self.set(key, value, ttl_seconds)
            except Exception as e:
                logger.warning(f"Cache write failed for {key}: {e}")
        return value

    def start_sweeper(self, interval: float) -> asyncio.Task:
        """Start a background task purging expired entries every `interval` seconds."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep(interval))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            purged = self.purge_expired()
            if purged:
                logger.debug(f"Cache sweeper purged {purged} expired entries")
