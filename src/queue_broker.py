"""
Queue broker contract and the in-process broker.

The broker owns job records and performs every state transition atomically:
add, claim (with delayed-job promotion and the shared rate-limit gate),
complete, schedule a retry, dead-letter, stalled recovery and manual requeue.
Retry policy decisions live in JobQueue; the broker only moves records.

InMemoryQueueBroker keeps the exact semantics of RedisQueueBroker inside one
process: records are stored in the same flat string form, FIFO order is the
same LPUSH/RPOP order and the limiter is one gate per queue shared by every
worker holding this broker.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from models import ClaimResult, Job, JobStatus, RateLimit
from utils.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled"


class QueueBroker(Protocol):
    """Durable, at-least-once store for queued jobs."""

    async def next_id(self, queue_name: str) -> str:
        ...

    async def add(self, job: Job) -> bool:
        """Store a job and make it visible. False if the id already exists."""
        ...

    async def claim(
        self,
        queue_name: str,
        now_ms: int,
        default_limit: Optional[RateLimit],
        stall_ms: int,
    ) -> ClaimResult:
        """Promote due delayed jobs, pass the rate gate and mark the next job active."""
        ...

    async def complete(self, job: Job, result, now_ms: int, keep: int) -> bool:
        ...

    async def schedule_retry(self, job: Job, error: str, ready_at_ms: int) -> bool:
        ...

    async def dead_letter(self, job: Job, error: str, now_ms: int, keep: int) -> bool:
        ...

    async def recover_stalled(
        self, queue_name: str, now_ms: int, keep_failed: int
    ) -> Tuple[List[str], List[str]]:
        """Return (requeued ids, dead-lettered ids) for active jobs past their deadline."""
        ...

    async def requeue_failed(self, queue_name: str, job_id: str) -> bool:
        ...

    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        ...

    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = -1
    ) -> List[Job]:
        ...

    async def counts(self, queue_name: str) -> Dict[str, int]:
        ...


def slice_range(items: List, start: int, end: int) -> List:
    """Inclusive start/end slicing with Redis semantics (end=-1 means last)."""
    stop = None if end == -1 else end + 1
    return items[start:stop]


@dataclass
class _QueueState:
    seq: int = 0
    records: Dict[str, Dict[str, str]] = field(default_factory=dict)
    wait: Deque[str] = field(default_factory=deque)  # appendleft to add, pop to claim
    delayed: Dict[str, int] = field(default_factory=dict)  # id -> ready_at
    active: Dict[str, int] = field(default_factory=dict)  # id -> stall deadline
    completed: Dict[str, int] = field(default_factory=dict)  # id -> finished_at, oldest first
    failed: Dict[str, int] = field(default_factory=dict)  # dead-lettered


class InMemoryQueueBroker:
    """
    Single-process broker for development and tests.

    Methods never await, so each call is atomic with respect to every other
    coroutine on the loop.
    """

    def __init__(self):
        self._queues: Dict[str, _QueueState] = {}
        self._limiter = FixedWindowRateLimiter()

    def _state(self, queue_name: str) -> _QueueState:
        if queue_name not in self._queues:
            self._queues[queue_name] = _QueueState()
        return self._queues[queue_name]

    @staticmethod
    def _trim(ids: Dict[str, int], records: Dict[str, Dict[str, str]], keep: int):
        while len(ids) > max(keep, 0):
            oldest = next(iter(ids))
            del ids[oldest]
            records.pop(oldest, None)

    async def next_id(self, queue_name: str) -> str:
        state = self._state(queue_name)
        state.seq += 1
        return str(state.seq)

    async def add(self, job: Job) -> bool:
        state = self._state(job.queue_name)
        if job.id in state.records:
            return False

        state.records[job.id] = job.to_record()
        if job.ready_at > job.enqueued_at:
            state.delayed[job.id] = job.ready_at
        else:
            state.wait.appendleft(job.id)
        return True

    async def claim(
        self,
        queue_name: str,
        now_ms: int,
        default_limit: Optional[RateLimit],
        stall_ms: int,
    ) -> ClaimResult:
        state = self._state(queue_name)

        for job_id, ready_at in sorted(state.delayed.items(), key=lambda item: item[1]):
            if ready_at > now_ms:
                break
            del state.delayed[job_id]
            state.wait.appendleft(job_id)
            state.records[job_id]["status"] = JobStatus.PENDING.value

        while state.wait:
            job_id = state.wait[-1]
            record = state.records.get(job_id)
            if record is None:
                state.wait.pop()
                continue

            limit = default_limit
            if record.get("limiter_max"):
                limit = RateLimit(int(record["limiter_max"]), int(record["limiter_duration"]))
            if limit is not None:
                wait_ms = self._limiter.try_acquire(queue_name, limit, now_ms)
                if wait_ms:
                    return ClaimResult(job=None, retry_after_ms=wait_ms)

            state.wait.pop()
            record["attempt"] = str(int(record["attempt"]) + 1)
            record["status"] = JobStatus.ACTIVE.value
            record["started_at"] = str(now_ms)
            state.active[job_id] = now_ms + stall_ms
            return ClaimResult(job=Job.from_record(record))

        return ClaimResult()

    async def complete(self, job: Job, result, now_ms: int, keep: int) -> bool:
        state = self._state(job.queue_name)
        record = state.records.get(job.id)
        if record is None:
            return False

        state.active.pop(job.id, None)
        finished = Job.from_record(record)
        finished.status = JobStatus.COMPLETED
        finished.finished_at = now_ms
        finished.result = result
        state.records[job.id] = finished.to_record()
        state.completed[job.id] = now_ms
        self._trim(state.completed, state.records, keep)
        return True

    async def schedule_retry(self, job: Job, error: str, ready_at_ms: int) -> bool:
        state = self._state(job.queue_name)
        record = state.records.get(job.id)
        if record is None:
            return False

        state.active.pop(job.id, None)
        record.update(
            status=JobStatus.FAILED.value, last_error=error, ready_at=str(ready_at_ms)
        )
        state.delayed[job.id] = ready_at_ms
        return True

    async def dead_letter(self, job: Job, error: str, now_ms: int, keep: int) -> bool:
        state = self._state(job.queue_name)
        record = state.records.get(job.id)
        if record is None:
            return False

        state.active.pop(job.id, None)
        record.update(
            status=JobStatus.DEAD_LETTERED.value, last_error=error, finished_at=str(now_ms)
        )
        state.failed[job.id] = now_ms
        self._trim(state.failed, state.records, keep)
        return True

    async def recover_stalled(
        self, queue_name: str, now_ms: int, keep_failed: int
    ) -> Tuple[List[str], List[str]]:
        state = self._state(queue_name)
        requeued, dead = [], []

        for job_id, deadline in list(state.active.items()):
            if deadline > now_ms:
                continue
            del state.active[job_id]
            record = state.records.get(job_id)
            if record is None:
                continue

            if int(record["attempt"]) > int(record["max_attempts"]):
                record.update(
                    status=JobStatus.DEAD_LETTERED.value,
                    last_error=STALLED_ERROR,
                    finished_at=str(now_ms),
                )
                state.failed[job_id] = now_ms
                dead.append(job_id)
            else:
                record["status"] = JobStatus.PENDING.value
                state.wait.appendleft(job_id)
                requeued.append(job_id)

        self._trim(state.failed, state.records, keep_failed)
        return requeued, dead

    async def requeue_failed(self, queue_name: str, job_id: str) -> bool:
        state = self._state(queue_name)
        if job_id not in state.failed:
            return False

        del state.failed[job_id]
        state.records[job_id].update(
            status=JobStatus.PENDING.value, attempt="0", last_error="", finished_at=""
        )
        state.wait.appendleft(job_id)
        return True

    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        record = self._state(queue_name).records.get(job_id)
        return Job.from_record(record) if record else None

    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = -1
    ) -> List[Job]:
        state = self._state(queue_name)

        if status == JobStatus.PENDING:
            ids = list(reversed(state.wait))
        elif status == JobStatus.ACTIVE:
            ids = sorted(state.active, key=state.active.get)
        elif status == JobStatus.FAILED:
            ids = [
                job_id for job_id in sorted(state.delayed, key=state.delayed.get)
                if state.records[job_id]["status"] == JobStatus.FAILED.value
            ]
        elif status == JobStatus.COMPLETED:
            ids = list(reversed(state.completed))
        else:
            ids = list(reversed(state.failed))

        return [Job.from_record(state.records[job_id]) for job_id in slice_range(ids, start, end)]

    async def counts(self, queue_name: str) -> Dict[str, int]:
        state = self._state(queue_name)
        return {
            "pending": len(state.wait),
            "delayed": len(state.delayed),
            "active": len(state.active),
            "completed": len(state.completed),
            "dead_lettered": len(state.failed),
        }
