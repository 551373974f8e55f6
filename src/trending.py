"""
Read side of the popularity snapshots.

Serving code reads rankings only from the snapshot store, never from the
raw event log, through the process-local cache. The aggregator clears the
trending prefix after each commit, so a fresh ranking is visible on this
process at once and on other processes within the cache TTL.
"""

import logging
from typing import List, Optional

from config import (
    GLOBAL_SEGMENT,
    TRENDING_CACHE_PREFIX,
    TRENDING_CACHE_TTL,
    TRENDING_DEFAULT_LIMIT,
)
from models import PopularitySnapshot
from storage import SnapshotStore
from utils.cache import TTLCache

logger = logging.getLogger(__name__)


class TrendingReader:
    def __init__(
        self,
        snapshots: SnapshotStore,
        cache: Optional[TTLCache] = None,
        ttl_seconds: float = TRENDING_CACHE_TTL,
    ):
        self.snapshots = snapshots
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(window: str, country: str, limit: int) -> str:
        return f"{TRENDING_CACHE_PREFIX}{window}:{country}:{limit}"

    async def get_trending(
        self,
        window: str = "TRENDING",
        country: Optional[str] = None,
        limit: int = TRENDING_DEFAULT_LIMIT,
    ) -> List[PopularitySnapshot]:
        """
        Top titles of the current snapshot for a window and country.

        Args:
            window: Window label ("DAILY", "TRENDING")
            country: ISO country code; None or empty reads the GLOBAL ranking
            limit: Maximum number of titles

        Returns:
            Snapshot rows in rank order (empty before the first run)
        """
        country = (country or GLOBAL_SEGMENT).strip().upper()
        window = window.strip().upper()

        async def load() -> List[PopularitySnapshot]:
            return await self.snapshots.get(window, country, limit)

        if self.cache is None:
            return await load()
        return await self.cache.get_or_load(self.cache_key(window, country, limit), self.ttl_seconds, load)
