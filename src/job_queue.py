"""
Named job queues with per-queue retry, backoff, rate-limit and retention policy.

A JobQueue is a thin policy layer over a QueueBroker. The broker performs
every state transition atomically; the queue decides which transition a
failed attempt takes:

    Pending -> Active -> Completed
                      -> Failed (waiting out backoff) -> Pending -> ...
                      -> DeadLettered (retries exhausted or unrecoverable)

DeadLettered jobs stay listed by failed_jobs() until retention trims them
and are only retried by an explicit retry_dead_lettered().
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config import (
    JOB_HANDLER_TIMEOUT,
    JOB_STALL_GRACE_MS,
    QUEUE_POLICIES,
)
from errors import JobPayloadError, UnrecoverableJobError
from models import (
    BackoffPolicy,
    ClaimResult,
    Job,
    JobHandle,
    JobOptions,
    JobStatus,
    RateLimit,
)
from queue_broker import QueueBroker
from utils.common_utils import now_ms
from utils.metrics_utils import (
    JOBS_COMPLETED,
    JOBS_DEAD_LETTERED,
    JOBS_ENQUEUED,
    JOBS_RETRIED,
    JOBS_STALLED,
)

logger = logging.getLogger(__name__)


@dataclass
class QueueOptions:
    """Queue-wide defaults. Per-job JobOptions override the first three."""

    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    rate_limit: Optional[RateLimit] = None
    remove_on_complete: int = 1000
    remove_on_fail: int = 5000
    stall_ms: int = 10 * 60 * 1000 + JOB_STALL_GRACE_MS


def queue_options_from_config(queue_name: str) -> QueueOptions:
    """
    Build QueueOptions from QUEUE_POLICIES.

    The stall deadline is the handler timeout plus a grace period, so a job
    is only reclaimed once its worker can no longer be running it.
    """
    policy = QUEUE_POLICIES[queue_name]
    limit = policy.get("rate_limit")
    return QueueOptions(
        max_attempts=policy["max_attempts"],
        backoff=BackoffPolicy(type=policy["backoff_type"], delay_ms=policy["backoff_delay_ms"]),
        rate_limit=RateLimit(limit["max"], limit["duration_ms"]) if limit else None,
        remove_on_complete=policy["remove_on_complete"],
        remove_on_fail=policy["remove_on_fail"],
        stall_ms=JOB_HANDLER_TIMEOUT[queue_name] * 1000 + JOB_STALL_GRACE_MS,
    )


class JobQueue:
    """
    Producer and consumer API for one named queue.

    Args:
        name: Queue name ("transcode", "email")
        broker: Shared QueueBroker
        options: Queue defaults (retry, backoff, limiter, retention)
        clock: Seconds clock, injectable for tests
    """

    def __init__(
        self,
        name: str,
        broker: QueueBroker,
        options: Optional[QueueOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.broker = broker
        self.options = options or QueueOptions()
        self.clock = clock

    def _now(self) -> int:
        return now_ms(self.clock)

    # ------------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------------

    async def enqueue(self, payload: Any, options: Optional[JobOptions] = None) -> JobHandle:
        """
        Durably store a job. It is visible to workers once this returns.

        Args:
            payload: JSON-serializable job data
            options: Per-job overrides (attempts, backoff, limiter, delay, job id)

        Returns:
            JobHandle; created=False when options.job_id was already queued

        Raises:
            JobPayloadError: payload is not JSON-serializable (nothing is stored)
        """
        options = options or JobOptions()
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise JobPayloadError(f"{self.name} payload is not JSON-serializable: {e}") from e

        max_attempts = options.max_attempts
        if max_attempts is None:
            max_attempts = self.options.max_attempts
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

        enqueued_at = self._now()
        if options.job_id:
            job_id = str(options.job_id)
            existing = await self.broker.get(self.name, job_id)
            if existing is not None:
                logger.info(f"Job {self.name}:{job_id} already queued, skipping duplicate")
                return JobHandle(job_id, self.name, existing.enqueued_at, created=False)
        else:
            job_id = await self.broker.next_id(self.name)

        job = Job(
            id=job_id,
            queue_name=self.name,
            payload=payload,
            max_attempts=max_attempts,
            backoff=options.backoff or self.options.backoff,
            rate_limit=options.rate_limit,
            enqueued_at=enqueued_at,
            ready_at=enqueued_at + max(options.delay_ms, 0),
        )
        created = await self.broker.add(job)
        if not created:
            existing = await self.broker.get(self.name, job_id)
            enqueued_at = existing.enqueued_at if existing else enqueued_at
            return JobHandle(job_id, self.name, enqueued_at, created=False)

        JOBS_ENQUEUED.labels(queue=self.name).inc()
        logger.debug(f"Enqueued {self.name}:{job_id}")
        return JobHandle(job_id, self.name, enqueued_at)

    # ------------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------------

    async def fetch_next(self) -> ClaimResult:
        """Claim the next ready job, or report how long the rate gate stays closed."""
        return await self.broker.claim(
            self.name, self._now(), self.options.rate_limit, self.options.stall_ms
        )

    async def complete(self, job: Job, result: Any = None) -> None:
        try:
            json.dumps(result)
        except (TypeError, ValueError):
            logger.warning(f"Result of {self.name}:{job.id} is not JSON-serializable, storing repr")
            result = repr(result)

        await self.broker.complete(job, result, self._now(), self.options.remove_on_complete)
        JOBS_COMPLETED.labels(queue=self.name).inc()

    async def fail(self, job: Job, error: BaseException) -> JobStatus:
        """
        Record a failed attempt.

        Returns:
            JobStatus.FAILED when a retry was scheduled, DEAD_LETTERED otherwise

        Algorithm:
            1. Unrecoverable errors and failures past max_attempts retries
               dead-letter the job
            2. Otherwise delay = backoff(attempt) and park the job as Failed
        """
        message = f"{type(error).__name__}: {error}"
        now = self._now()

        if isinstance(error, UnrecoverableJobError) or job.attempt > job.max_attempts:
            await self.broker.dead_letter(job, message, now, self.options.remove_on_fail)
            JOBS_DEAD_LETTERED.labels(queue=self.name).inc()
            logger.error(
                f"Job {self.name}:{job.id} dead-lettered after attempt "
                f"{job.attempt}/{job.max_attempts + 1}: {message}"
            )
            return JobStatus.DEAD_LETTERED

        delay = job.backoff.delay_for(job.attempt)
        await self.broker.schedule_retry(job, message, now + delay)
        JOBS_RETRIED.labels(queue=self.name).inc()
        logger.warning(
            f"Job {self.name}:{job.id} attempt {job.attempt}/{job.max_attempts + 1} failed, "
            f"retrying in {delay}ms: {message}"
        )
        return JobStatus.FAILED

    async def recover_stalled(self) -> Dict[str, List[str]]:
        """Return active jobs whose deadline passed to the queue (or dead-letter them)."""
        requeued, dead = await self.broker.recover_stalled(
            self.name, self._now(), self.options.remove_on_fail
        )
        if requeued or dead:
            JOBS_STALLED.labels(queue=self.name).inc(len(requeued) + len(dead))
            JOBS_DEAD_LETTERED.labels(queue=self.name).inc(len(dead))
            logger.warning(
                f"Recovered stalled {self.name} jobs: requeued={requeued} dead_lettered={dead}"
            )
        return {"requeued": requeued, "dead_lettered": dead}

    # ------------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------------

    async def failed_jobs(self, start: int = 0, end: int = -1) -> List[Job]:
        """Dead-lettered jobs, most recent first."""
        return await self.broker.list_jobs(self.name, JobStatus.DEAD_LETTERED, start, end)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.broker.get(self.name, str(job_id))

    async def retry_dead_lettered(self, job_id: str) -> bool:
        """Manually re-queue a dead-lettered job with a fresh attempt budget."""
        requeued = await self.broker.requeue_failed(self.name, str(job_id))
        if requeued:
            logger.info(f"Manually re-queued dead-lettered job {self.name}:{job_id}")
        return requeued

    async def counts(self) -> Dict[str, int]:
        return await self.broker.counts(self.name)


def build_queues(broker: QueueBroker, clock: Callable[[], float] = time.time) -> Dict[str, JobQueue]:
    """One JobQueue per configured queue, all sharing the broker."""
    return {
        name: JobQueue(name, broker, queue_options_from_config(name), clock=clock)
        for name in QUEUE_POLICIES
    }
