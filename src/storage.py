"""
Storage contracts and in-process implementations.

Each contract has a Redis implementation in redis_storage.py and an
in-memory one here for development and tests. In-memory methods never
await, so every call is atomic with respect to other coroutines.
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from config import AUDIT_LOG_MAX_ENTRIES, JOB_LOCK_TTL
from models import (
    ContinueWatchingEntry,
    EngagementEvent,
    EngagementEventIn,
    PopularitySnapshot,
    from_epoch_ms,
)

logger = logging.getLogger(__name__)

SegmentKey = Tuple[str, str]  # (window, country)


# ============================================================================
# CONTRACTS
# ============================================================================


class EventStore(Protocol):
    async def append(self, events: List[EngagementEventIn], ingested_at_ms: int) -> List[EngagementEvent]:
        """Append a batch in one transaction and assign consecutive ids."""
        ...

    async def get(self, event_ids: Iterable[int]) -> List[EngagementEvent]:
        ...

    async def scan(self, start_ms: int, end_ms: int, max_id: int) -> List[EngagementEvent]:
        """Events with start_ms <= occurredAt <= end_ms and id <= max_id."""
        ...

    async def high_water_mark(self) -> int:
        """Largest event id committed so far (0 when empty)."""
        ...


class SnapshotStore(Protocol):
    async def replace_all(self, segments: Dict[SegmentKey, List[PopularitySnapshot]]) -> None:
        """Atomically make `segments` the only current snapshot sets."""
        ...

    async def get(self, window: str, country: str, limit: Optional[int] = None) -> List[PopularitySnapshot]:
        ...


class ContinueWatchingStore(Protocol):
    async def replace_all(self, entries: Dict[str, List[ContinueWatchingEntry]]) -> None:
        ...

    async def get(self, profile_id: str, limit: Optional[int] = None) -> List[ContinueWatchingEntry]:
        ...


class AuditStore(Protocol):
    async def append(self, stream: str, entry: Dict) -> None:
        ...

    async def recent(self, stream: str, limit: int = 100) -> List[Dict]:
        ...


class IdempotencyLedger(Protocol):
    async def done_items(self, scope: str) -> Set[str]:
        ...

    async def mark_done(self, scope: str, item: str) -> None:
        ...


class JobLock(Protocol):
    async def acquire(self, job_name: str, ttl: int = JOB_LOCK_TTL) -> bool:
        ...

    async def release(self, job_name: str) -> bool:
        ...


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================================


class InMemoryEventStore:
    def __init__(self):
        self._events: Dict[int, EngagementEvent] = {}
        self._seq = 0

    async def append(self, events: List[EngagementEventIn], ingested_at_ms: int) -> List[EngagementEvent]:
        stored = []
        for event in events:
            self._seq += 1
            stored.append(
                EngagementEvent(
                    **event.model_dump(), id=self._seq, ingested_at=from_epoch_ms(ingested_at_ms)
                )
            )
        for event in stored:
            self._events[event.id] = event
        return stored

    async def get(self, event_ids: Iterable[int]) -> List[EngagementEvent]:
        return [self._events[int(i)] for i in event_ids if int(i) in self._events]

    async def scan(self, start_ms: int, end_ms: int, max_id: int) -> List[EngagementEvent]:
        return [
            event
            for event_id, event in self._events.items()
            if event_id <= max_id and start_ms <= event.occurred_at_ms <= end_ms
        ]

    async def high_water_mark(self) -> int:
        return self._seq


class _InMemorySwapStore:
    """Segments replaced as a whole set with one assignment."""

    def __init__(self):
        self._segments: Dict = {}

    def _replace(self, segments: Dict) -> None:
        self._segments = {key: list(rows) for key, rows in segments.items()}

    def _read(self, key, limit: Optional[int]) -> List:
        rows = self._segments.get(key, [])
        return list(rows if limit is None else rows[:limit])


class InMemorySnapshotStore(_InMemorySwapStore):
    async def replace_all(self, segments: Dict[SegmentKey, List[PopularitySnapshot]]) -> None:
        self._replace(segments)

    async def get(self, window: str, country: str, limit: Optional[int] = None) -> List[PopularitySnapshot]:
        return self._read((window, country), limit)


class InMemoryContinueWatchingStore(_InMemorySwapStore):
    async def replace_all(self, entries: Dict[str, List[ContinueWatchingEntry]]) -> None:
        self._replace(entries)

    async def get(self, profile_id: str, limit: Optional[int] = None) -> List[ContinueWatchingEntry]:
        return self._read(str(profile_id), limit)


class InMemoryAuditStore:
    def __init__(self, max_entries: int = AUDIT_LOG_MAX_ENTRIES):
        self.max_entries = max_entries
        self._streams: Dict[str, List[Dict]] = defaultdict(list)

    async def append(self, stream: str, entry: Dict) -> None:
        entries = self._streams[stream]
        entries.insert(0, dict(entry))
        del entries[self.max_entries:]

    async def recent(self, stream: str, limit: int = 100) -> List[Dict]:
        return [dict(entry) for entry in self._streams[stream][:limit]]


class InMemoryIdempotencyLedger:
    def __init__(self):
        self._done: Dict[str, Set[str]] = defaultdict(set)

    async def done_items(self, scope: str) -> Set[str]:
        return set(self._done[scope])

    async def mark_done(self, scope: str, item: str) -> None:
        self._done[scope].add(str(item))


class InMemoryJobLock:
    """Process-local lock with the same expiry semantics as SET NX EX."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._expires: Dict[str, float] = {}

    async def acquire(self, job_name: str, ttl: int = JOB_LOCK_TTL) -> bool:
        now = self.clock()
        expires_at = self._expires.get(job_name)
        if expires_at is not None and expires_at > now:
            logger.info(f"Lock for {job_name} already held")
            return False
        self._expires[job_name] = now + ttl
        logger.info(f"Acquired lock for {job_name} (TTL: {ttl}s)")
        return True

    async def release(self, job_name: str) -> bool:
        return self._expires.pop(job_name, None) is not None
