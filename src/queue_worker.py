"""
Queue worker: N concurrent slots pulling from one JobQueue.

Each slot processes at most one job at a time. A handler is an async
callable taking (payload, job) and returning a JSON-serializable result;
raising marks the attempt failed. Handlers are time-bounded by a per-queue
watchdog and a timeout counts as a transient failure.

Delivery is at-least-once: a worker that dies mid-job leaves the job
Active until its stall deadline, after which the stalled-job check hands
it to another slot. Handlers must therefore be idempotent.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from config import STALLED_CHECK_INTERVAL, WORKER_POLL_INTERVAL
from errors import JobStalledError, JobTimeoutError
from job_queue import JobQueue
from models import ClaimResult, Job, JobStatus
from utils.metrics_utils import JOB_DURATION

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any, Job], Awaitable[Any]]


class QueueWorker:
    """
    Run a handler over one queue with bounded concurrency.

    Args:
        queue: JobQueue to consume
        handler: async (payload, job) -> result
        concurrency: Number of worker slots
        handler_timeout: Seconds before a handler invocation is abandoned (None = no limit)
        poll_interval: Idle sleep between empty claims (seconds)
        sleep: Awaitable sleep, injectable for tests
        error_recorder: Optional ErrorRecorder notified of dead-lettered jobs
        stalled_check_interval: Seconds between stalled-job sweeps (None disables them)
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        handler_timeout: Optional[float] = None,
        poll_interval: float = WORKER_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        error_recorder=None,
        stalled_check_interval: Optional[float] = STALLED_CHECK_INTERVAL,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.handler_timeout = handler_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.error_recorder = error_recorder
        self.stalled_check_interval = stalled_check_interval
        self._stop_event: Optional[asyncio.Event] = None

    async def process_next(self) -> ClaimResult:
        """
        Claim and run a single job.

        Returns:
            The ClaimResult; job is None when nothing was ready or the rate
            gate is closed (retry_after_ms says for how long)
        """
        claim = await self.queue.fetch_next()
        if claim.job is not None:
            await self._execute(claim.job)
        return claim

    async def _execute(self, job: Job) -> None:
        started = time.monotonic()
        logger.info(
            f"Processing {self.queue.name}:{job.id} (attempt {job.attempt}/{job.max_attempts + 1})"
        )

        try:
            invocation = self.handler(job.payload, job)
            if self.handler_timeout:
                result = await asyncio.wait_for(invocation, timeout=self.handler_timeout)
            else:
                result = await invocation
        except asyncio.TimeoutError:
            error = JobTimeoutError(
                f"{self.queue.name}:{job.id} exceeded {self.handler_timeout}s"
            )
            await self._fail(job, error)
        except Exception as e:
            await self._fail(job, e)
        else:
            await self.queue.complete(job, result)
            logger.info(f"Completed {self.queue.name}:{job.id}")
        finally:
            JOB_DURATION.labels(queue=self.queue.name).observe(time.monotonic() - started)

    async def _fail(self, job: Job, error: Exception) -> None:
        status = await self.queue.fail(job, error)
        if status == JobStatus.DEAD_LETTERED and self.error_recorder is not None:
            self.error_recorder.record_nowait(
                error,
                path=f"queue:{self.queue.name}",
                context={"job_id": job.id, "attempt": job.attempt},
            )

    # ------------------------------------------------------------------------
    # Long-running loops
    # ------------------------------------------------------------------------

    async def _slot_loop(self, slot: int) -> None:
        while not self._stop_event.is_set():
            try:
                claim = await self.process_next()
            except Exception as e:
                logger.error(f"{self.queue.name} slot {slot} failed to claim a job: {e}")
                await self.sleep(self.poll_interval)
                continue

            if claim.job is not None:
                continue
            if claim.retry_after_ms > 0:
                await self.sleep(claim.retry_after_ms / 1000)
            else:
                await self.sleep(self.poll_interval)

    async def _stalled_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check_stalled()
            except Exception as e:
                logger.error(f"Stalled-job check for {self.queue.name} failed: {e}")
            await self.sleep(self.stalled_check_interval)

    async def check_stalled(self) -> None:
        """Recover stalled jobs and report the dead-lettered ones to the error recorder."""
        recovered = await self.queue.recover_stalled()
        if self.error_recorder is None:
            return
        for job_id in recovered["dead_lettered"]:
            job = await self.queue.get_job(job_id)
            self.error_recorder.record_nowait(
                JobStalledError(f"{self.queue.name}:{job_id} stalled"),
                path=f"queue:{self.queue.name}",
                context={"job_id": job_id, "attempt": job.attempt if job else None},
            )

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run all slots until stop_event is set (or stop() is called).

        In-flight jobs are allowed to finish; no new job is claimed after the
        stop is requested.
        """
        self._stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting {self.queue.name} worker with {self.concurrency} slot(s)")

        slots = [asyncio.create_task(self._slot_loop(i)) for i in range(self.concurrency)]
        background = list(slots)
        if self.stalled_check_interval is not None:
            background.append(asyncio.create_task(self._stalled_loop()))
        try:
            await self._stop_event.wait()
            await asyncio.gather(*slots)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            logger.info(f"Stopped {self.queue.name} worker")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
