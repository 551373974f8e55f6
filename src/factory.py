"""
Construction of backends and components.

Every component receives its stores, broker and locks explicitly; nothing
in the pipeline reaches for a module-level client. Entry points call
build_backends() once and build_pipeline() on top of it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from audit_recorder import AuditRecorder, ErrorRecorder
from config import CACHE_MAX_ENTRIES, PIPELINE_BACKEND
from continue_watching import ContinueWatchingJob
from event_ingestion import EventIngestor
from job_queue import JobQueue, build_queues
from popularity_aggregator import PopularityAggregator
from queue_broker import InMemoryQueueBroker, QueueBroker
from redis_broker import RedisQueueBroker
from redis_storage import (
    RedisAuditStore,
    RedisContinueWatchingStore,
    RedisEventStore,
    RedisIdempotencyLedger,
    RedisJobLock,
    RedisSnapshotStore,
)
from storage import (
    AuditStore,
    ContinueWatchingStore,
    EventStore,
    IdempotencyLedger,
    InMemoryAuditStore,
    InMemoryContinueWatchingStore,
    InMemoryEventStore,
    InMemoryIdempotencyLedger,
    InMemoryJobLock,
    InMemorySnapshotStore,
    JobLock,
    SnapshotStore,
)
from trending import TrendingReader
from utils.async_redis_utils import AsyncRedisService
from utils.cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    broker: QueueBroker
    events: EventStore
    snapshots: SnapshotStore
    continue_watching: ContinueWatchingStore
    audit_store: AuditStore
    ledger: IdempotencyLedger
    lock: JobLock
    redis_service: Optional[AsyncRedisService] = None

    async def close(self) -> None:
        if self.redis_service is not None:
            await self.redis_service.close()


def build_memory_backends() -> Backends:
    """Single-process backends for development and tests."""
    return Backends(
        broker=InMemoryQueueBroker(),
        events=InMemoryEventStore(),
        snapshots=InMemorySnapshotStore(),
        continue_watching=InMemoryContinueWatchingStore(),
        audit_store=InMemoryAuditStore(),
        ledger=InMemoryIdempotencyLedger(),
        lock=InMemoryJobLock(),
    )


def build_redis_backends(redis_client, redis_service: Optional[AsyncRedisService] = None) -> Backends:
    """Durable backends sharing one async Redis (or RedisCluster) client."""
    return Backends(
        broker=RedisQueueBroker(redis_client),
        events=RedisEventStore(redis_client),
        snapshots=RedisSnapshotStore(redis_client),
        continue_watching=RedisContinueWatchingStore(redis_client),
        audit_store=RedisAuditStore(redis_client),
        ledger=RedisIdempotencyLedger(redis_client),
        lock=RedisJobLock(redis_client),
        redis_service=redis_service,
    )


async def build_backends(backend: str = PIPELINE_BACKEND) -> Backends:
    """
    Build backends for the configured kind.

    Args:
        backend: "redis" (connects using REDIS_CONFIG) or "memory"
    """
    if backend == "memory":
        logger.warning("Using in-memory backends - jobs and events do not survive a restart")
        return build_memory_backends()
    if backend != "redis":
        raise ValueError(f"Unknown PIPELINE_BACKEND: {backend}")

    service = AsyncRedisService()
    client = await service.get_client()
    return build_redis_backends(client, service)


@dataclass
class Pipeline:
    backends: Backends
    cache: TTLCache
    queues: Dict[str, JobQueue]
    ingestor: EventIngestor
    aggregator: PopularityAggregator
    continue_watching_job: ContinueWatchingJob
    trending: TrendingReader
    audit: AuditRecorder
    errors: ErrorRecorder


def build_pipeline(
    backends: Backends,
    cache: Optional[TTLCache] = None,
    clock: Callable[[], float] = time.time,
) -> Pipeline:
    """Wire every component over one set of backends."""
    if cache is None:
        cache = TTLCache(max_entries=CACHE_MAX_ENTRIES)
    errors = ErrorRecorder(backends.audit_store, clock=clock)

    return Pipeline(
        backends=backends,
        cache=cache,
        queues=build_queues(backends.broker, clock=clock),
        ingestor=EventIngestor(backends.events, clock=clock),
        aggregator=PopularityAggregator(
            backends.events,
            backends.snapshots,
            backends.lock,
            cache=cache,
            error_recorder=errors,
            clock=clock,
        ),
        continue_watching_job=ContinueWatchingJob(
            backends.events,
            backends.continue_watching,
            backends.lock,
            error_recorder=errors,
            clock=clock,
        ),
        trending=TrendingReader(backends.snapshots, cache),
        audit=AuditRecorder(backends.audit_store, clock=clock),
        errors=errors,
    )
