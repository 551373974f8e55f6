"""
Redis implementations of the storage contracts.

Key layout (each area under its own hash tag so multi-key scripts stay on
one cluster slot):
    {events}:seq                      - STRING event id sequence (high-water mark)
    {events}:data                     - HASH id -> event JSON
    {events}:by_time                  - ZSET id -> occurredAt ms
    {popularity}:live:<window>:<cc>   - STRING ranked snapshot JSON list
    {popularity}:index                - SET of live segment names
    {continue_watching}:live:<pid>    - STRING ordered entry JSON list
    {audit}:<stream>                  - LIST newest-first JSON entries (capped, TTL)
    {ledger}:<scope>                  - SET of finished items (TTL)
    job:lock:<job_name>               - STRING lock holder (SET NX EX)
"""

import json
import logging
import os
import socket
import uuid
from typing import Dict, Iterable, List, Optional, Set

from config import (
    AUDIT_KEY_PREFIX,
    AUDIT_LOG_MAX_ENTRIES,
    AUDIT_LOG_TTL,
    CONTINUE_WATCHING_KEY_PREFIX,
    EVENT_KEY_PREFIX,
    IDEMPOTENCY_LEDGER_TTL,
    JOB_LOCK_KEY_PREFIX,
    JOB_LOCK_TTL,
    LEDGER_KEY_PREFIX,
    POPULARITY_KEY_PREFIX,
    STAGING_KEY_TTL,
)
from models import (
    ContinueWatchingEntry,
    EngagementEvent,
    EngagementEventIn,
    PopularitySnapshot,
    from_epoch_ms,
    to_epoch_ms,
)
from storage import SegmentKey
from utils.cluster_keys import tagged_key
from utils.common_utils import batch_list

logger = logging.getLogger(__name__)

HMGET_BATCH_SIZE = 1000


# ============================================================================
# EVENT LOG
# ============================================================================


class RedisEventStore:
    """
    Append-only event log.

    Ids come from one INCRBY inside the append script, so the sequence
    value is always the id of the last committed event.
    """

    APPEND_EVENTS = """
    -- KEYS[1]: seq, KEYS[2]: data hash, KEYS[3]: by_time zset
    -- ARGV: json_1, occurred_ms_1, json_2, occurred_ms_2, ...
    local n = #ARGV / 2
    local last = redis.call('INCRBY', KEYS[1], n)
    local first = last - n + 1
    for i = 0, n - 1 do
        local id = first + i
        redis.call('HSET', KEYS[2], id, ARGV[2 * i + 1])
        redis.call('ZADD', KEYS[3], ARGV[2 * i + 2], id)
    end
    return first
    """

    def __init__(self, redis_client, key_prefix: str = EVENT_KEY_PREFIX):
        self.client = redis_client
        self.seq_key = tagged_key(key_prefix, "seq")
        self.data_key = tagged_key(key_prefix, "data")
        self.by_time_key = tagged_key(key_prefix, "by_time")
        self.append_script = redis_client.register_script(self.APPEND_EVENTS)

    @staticmethod
    def _decode(event_id, raw: str) -> EngagementEvent:
        return EngagementEvent.model_validate({**json.loads(raw), "id": int(event_id)})

    async def append(self, events: List[EngagementEventIn], ingested_at_ms: int) -> List[EngagementEvent]:
        if not events:
            return []

        ingested_at = from_epoch_ms(ingested_at_ms)
        args = []
        for event in events:
            body = event.model_dump(mode="json", by_alias=True)
            body["ingestedAt"] = ingested_at.isoformat()
            args.extend([json.dumps(body), to_epoch_ms(event.occurred_at)])

        first = int(await self.append_script(keys=[self.seq_key, self.data_key, self.by_time_key], args=args))
        return [
            EngagementEvent(**event.model_dump(), id=first + offset, ingested_at=ingested_at)
            for offset, event in enumerate(events)
        ]

    async def get(self, event_ids: Iterable[int]) -> List[EngagementEvent]:
        ids = [str(int(i)) for i in event_ids]
        events = []
        for batch in batch_list(ids, HMGET_BATCH_SIZE):
            raws = await self.client.hmget(self.data_key, batch)
            events.extend(self._decode(i, raw) for i, raw in zip(batch, raws) if raw)
        return events

    async def scan(self, start_ms: int, end_ms: int, max_id: int) -> List[EngagementEvent]:
        ids = await self.client.zrangebyscore(self.by_time_key, start_ms, end_ms)
        return await self.get(i for i in ids if int(i) <= max_id)

    async def high_water_mark(self) -> int:
        return int(await self.client.get(self.seq_key) or 0)


# ============================================================================
# SWAPPED SEGMENT SETS (SNAPSHOTS, CONTINUE WATCHING)
# ============================================================================


class _RedisSwapStore:
    """
    Wholesale replacement of a set of segments.

    Algorithm:
        1. Write every new segment to a run-unique staging key (with TTL)
        2. One script RENAMEs staging -> live, deletes segments that are no
           longer produced and rewrites the index

    A failure before step 2 leaves the live segments untouched; orphaned
    staging keys expire on their own.
    """

    SWAP_SEGMENTS = """
    -- KEYS[1]: index, KEYS[2..n+1]: staging, KEYS[n+2..2n+1]: live, rest: stale live
    -- ARGV[1]: n, ARGV[2..]: segment names
    local n = tonumber(ARGV[1])
    for i = 1, n do
        local live = KEYS[n + 1 + i]
        redis.call('RENAME', KEYS[1 + i], live)
        redis.call('PERSIST', live)
    end
    for i = 2 * n + 2, #KEYS do
        redis.call('DEL', KEYS[i])
    end
    redis.call('DEL', KEYS[1])
    if n > 0 then
        redis.call('SADD', KEYS[1], unpack(ARGV, 2))
    end
    return n
    """

    def __init__(self, redis_client, key_prefix: str):
        self.client = redis_client
        self.key_prefix = key_prefix
        self.index_key = tagged_key(key_prefix, "index")
        self.swap_script = redis_client.register_script(self.SWAP_SEGMENTS)

    def _live_key(self, segment: str) -> str:
        return tagged_key(self.key_prefix, "live", segment)

    async def _replace(self, segments: Dict[str, str]) -> None:
        token = uuid.uuid4().hex
        names = list(segments)
        staging = [tagged_key(self.key_prefix, "staging", token, name) for name in names]

        if names:
            pipe = self.client.pipeline(transaction=False)
            for key, name in zip(staging, names):
                pipe.set(key, segments[name], ex=STAGING_KEY_TTL)
            await pipe.execute()

        current = await self.client.smembers(self.index_key)
        stale = [self._live_key(name) for name in current if name not in segments]

        await self.swap_script(
            keys=[self.index_key, *staging, *(self._live_key(name) for name in names), *stale],
            args=[len(names), *names],
        )
        logger.info(f"Swapped {len(names)} segment(s) under {self.key_prefix}, removed {len(stale)} stale")

    async def _read(self, segment: str) -> List[Dict]:
        raw = await self.client.get(self._live_key(segment))
        return json.loads(raw) if raw else []


class RedisSnapshotStore(_RedisSwapStore):
    def __init__(self, redis_client, key_prefix: str = POPULARITY_KEY_PREFIX):
        super().__init__(redis_client, key_prefix)

    async def replace_all(self, segments: Dict[SegmentKey, List[PopularitySnapshot]]) -> None:
        await self._replace({
            f"{window}:{country}": json.dumps([row.to_dict() for row in rows])
            for (window, country), rows in segments.items()
        })

    async def get(self, window: str, country: str, limit: Optional[int] = None) -> List[PopularitySnapshot]:
        rows = await self._read(f"{window}:{country}")
        if limit is not None:
            rows = rows[:limit]
        return [PopularitySnapshot.from_dict(row) for row in rows]


class RedisContinueWatchingStore(_RedisSwapStore):
    def __init__(self, redis_client, key_prefix: str = CONTINUE_WATCHING_KEY_PREFIX):
        super().__init__(redis_client, key_prefix)

    async def replace_all(self, entries: Dict[str, List[ContinueWatchingEntry]]) -> None:
        await self._replace({
            str(profile_id): json.dumps([entry.to_dict() for entry in rows])
            for profile_id, rows in entries.items()
        })

    async def get(self, profile_id: str, limit: Optional[int] = None) -> List[ContinueWatchingEntry]:
        rows = await self._read(str(profile_id))
        if limit is not None:
            rows = rows[:limit]
        return [ContinueWatchingEntry.from_dict(row) for row in rows]


# ============================================================================
# AUDIT / ERROR STREAMS
# ============================================================================


class RedisAuditStore:
    """
    Capped, expiring log streams.

    Algorithm:
        1. LPUSH the JSON entry (newest first)
        2. LTRIM to max_entries
        3. EXPIRE so idle streams clean themselves up
    """

    def __init__(
        self,
        redis_client,
        key_prefix: str = AUDIT_KEY_PREFIX,
        max_entries: int = AUDIT_LOG_MAX_ENTRIES,
        ttl: int = AUDIT_LOG_TTL,
    ):
        self.client = redis_client
        self.key_prefix = key_prefix
        self.max_entries = max_entries
        self.ttl = ttl

    def _key(self, stream: str) -> str:
        return tagged_key(self.key_prefix, stream)

    async def append(self, stream: str, entry: Dict) -> None:
        key = self._key(stream)
        pipe = self.client.pipeline(transaction=False)
        pipe.lpush(key, json.dumps(entry, default=str))
        pipe.ltrim(key, 0, self.max_entries - 1)
        pipe.expire(key, self.ttl)
        await pipe.execute()

    async def recent(self, stream: str, limit: int = 100) -> List[Dict]:
        raw_entries = await self.client.lrange(self._key(stream), 0, limit - 1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                # Skip malformed entries
                continue
        return entries


# ============================================================================
# IDEMPOTENCY LEDGER
# ============================================================================


class RedisIdempotencyLedger:
    def __init__(self, redis_client, key_prefix: str = LEDGER_KEY_PREFIX, ttl: int = IDEMPOTENCY_LEDGER_TTL):
        self.client = redis_client
        self.key_prefix = key_prefix
        self.ttl = ttl

    async def done_items(self, scope: str) -> Set[str]:
        return set(await self.client.smembers(tagged_key(self.key_prefix, scope)))

    async def mark_done(self, scope: str, item: str) -> None:
        key = tagged_key(self.key_prefix, scope)
        pipe = self.client.pipeline(transaction=False)
        pipe.sadd(key, str(item))
        pipe.expire(key, self.ttl)
        await pipe.execute()


# ============================================================================
# DISTRIBUTED LOCKING
# ============================================================================


class RedisJobLock:
    """
    Distributed lock for batch job execution.

    The holder value is hostname:pid so only the acquiring process releases it.
    """

    RELEASE_LOCK = """
    -- KEYS[1]: lock key, ARGV[1]: holder id
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_client, key_prefix: str = JOB_LOCK_KEY_PREFIX):
        self.client = redis_client
        self.key_prefix = key_prefix
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}"
        self.release_script = redis_client.register_script(self.RELEASE_LOCK)

    async def acquire(self, job_name: str, ttl: int = JOB_LOCK_TTL) -> bool:
        """
        Acquire distributed lock for job execution.

        Args:
            job_name: Unique name for the job
            ttl: Lock expiry time in seconds

        Returns:
            True if lock acquired, False if another worker holds it

        Algorithm:
            1. Attempt to SET lock key with NX (not exists) and EX (expiry)
            2. Return success/failure based on SET result
        """
        lock_key = f"{self.key_prefix}{job_name}"

        try:
            # SET with NX (only if not exists) and EX (expiry)
            result = await self.client.set(lock_key, self.worker_id, nx=True, ex=ttl)

            if result:
                logger.info(f"Acquired lock for {job_name} (worker: {self.worker_id}, TTL: {ttl}s)")
                return True

            # Another worker has the lock
            current_holder = await self.client.get(lock_key)
            logger.info(f"Lock for {job_name} held by: {current_holder}")
            return False

        except Exception as e:
            logger.error(f"Error acquiring lock for {job_name}: {e}")
            return False

    async def release(self, job_name: str) -> bool:
        """
        Release distributed lock after job completion.

        Algorithm:
            1. In one script, compare the holder with our worker id
            2. Delete the lock key only if they match
        """
        lock_key = f"{self.key_prefix}{job_name}"

        try:
            if await self.release_script(keys=[lock_key], args=[self.worker_id]):
                logger.info(f"Released lock for {job_name}")
                return True

            logger.warning(f"Cannot release lock for {job_name} - not owned by this worker")
            return False

        except Exception as e:
            logger.error(f"Error releasing lock for {job_name}: {e}")
            return False
