"""
Queue worker tests.

Handlers are plain coroutines; the worker is driven one claim at a time
with process_next() except where the run loop itself is under test.
"""

import asyncio

import pytest

from audit_recorder import ErrorRecorder
from job_queue import JobQueue, QueueOptions
from models import JobOptions, JobStatus
from queue_broker import InMemoryQueueBroker
from queue_worker import QueueWorker
from storage import InMemoryAuditStore


@pytest.fixture
def queue(clock):
    return JobQueue("email", InMemoryQueueBroker(), QueueOptions(), clock=clock)


class TestProcessNext:
    """Single-claim behavior."""

    @pytest.mark.asyncio
    async def test_success_completes_job(self, queue):
        """
        A handler result is stored on the completed job.

        Algorithm:
            1. Enqueue a job
            2. process_next with a handler echoing the payload
            3. Verify COMPLETED status and stored result
        """
        handle = await queue.enqueue({"to": "a@example.com"})

        async def handler(payload, job):
            return {"sent": payload["to"], "attempt": job.attempt}

        worker = QueueWorker(queue, handler)
        claim = await worker.process_next()

        assert claim.job.id == handle.id
        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"sent": "a@example.com", "attempt": 1}

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        async def handler(payload, job):
            raise AssertionError("handler must not run")

        claim = await QueueWorker(queue, handler).process_next()

        assert claim.job is None
        assert claim.retry_after_ms == 0

    @pytest.mark.asyncio
    async def test_handler_error_schedules_retry(self, queue, clock):
        """
        A raising handler leaves the job FAILED with a backoff delay.

        Algorithm:
            1. Handler raises ConnectionError
            2. Verify status FAILED, ready_at now+5000, error text stored
        """
        handle = await queue.enqueue({"to": "a@example.com"})

        async def handler(payload, job):
            raise ConnectionError("smtp unreachable")

        await QueueWorker(queue, handler).process_next()

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.FAILED
        assert stored.ready_at == clock.ms + 5000
        assert "smtp unreachable" in stored.last_error

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient_failure(self, queue):
        """
        A handler exceeding the watchdog is abandoned and retried later.

        Algorithm:
            1. Handler sleeps longer than handler_timeout
            2. Verify the job is FAILED (not dead-lettered) with JobTimeoutError
        """
        handle = await queue.enqueue({"n": 1})

        async def handler(payload, job):
            await asyncio.sleep(1)

        await QueueWorker(queue, handler, handler_timeout=0.01).process_next()

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.FAILED
        assert stored.last_error.startswith("JobTimeoutError")

    @pytest.mark.asyncio
    async def test_dead_letter_is_recorded(self, queue):
        """
        A dead-lettered job is reported to the error recorder.

        Algorithm:
            1. Enqueue with max_attempts=0; handler raises
            2. process_next, then drain the recorder
            3. Verify one error entry with queue path and job context
        """
        store = InMemoryAuditStore()
        errors = ErrorRecorder(store, forward_to_sentry=False)
        handle = await queue.enqueue({"n": 1}, JobOptions(max_attempts=0))

        async def handler(payload, job):
            raise ValueError("bad template")

        await QueueWorker(queue, handler, error_recorder=errors).process_next()
        await errors.drain()

        entries = await store.recent("errors")
        assert len(entries) == 1
        assert entries[0]["path"] == "queue:email"
        assert entries[0]["error_type"] == "ValueError"
        assert entries[0]["context"] == {"job_id": handle.id, "attempt": 1}

    @pytest.mark.asyncio
    async def test_stalled_dead_letter_is_recorded(self, clock):
        """
        A job dead-lettered by the stalled-job check is reported too.

        Algorithm:
            1. Queue with stall_ms=1000; claim a job with no retries and abandon it
            2. Advance past the deadline and run check_stalled
            3. Verify one JobStalledError entry with queue path and job context
        """
        queue = JobQueue("email", InMemoryQueueBroker(), QueueOptions(stall_ms=1000), clock=clock)
        store = InMemoryAuditStore()
        errors = ErrorRecorder(store, forward_to_sentry=False)
        handle = await queue.enqueue({"n": 1}, JobOptions(max_attempts=0))
        await queue.fetch_next()

        async def handler(payload, job):
            return None

        clock.advance(2)
        await QueueWorker(queue, handler, error_recorder=errors).check_stalled()
        await errors.drain()

        assert (await queue.get_job(handle.id)).status == JobStatus.DEAD_LETTERED
        entries = await store.recent("errors")
        assert len(entries) == 1
        assert entries[0]["path"] == "queue:email"
        assert entries[0]["error_type"] == "JobStalledError"
        assert entries[0]["context"] == {"job_id": handle.id, "attempt": 1}

    def test_concurrency_must_be_positive(self, queue):
        async def handler(payload, job):
            return None

        with pytest.raises(ValueError):
            QueueWorker(queue, handler, concurrency=0)


class TestRunLoop:
    """Long-running slots."""

    @pytest.mark.asyncio
    async def test_run_processes_until_stopped(self, queue, clock):
        """
        Slots drain the queue and exit when the stop event is set.

        Algorithm:
            1. Enqueue 5 jobs
            2. Run 3 slots; handler stops the worker after the 5th job
            3. Verify all 5 completed
        """
        for n in range(5):
            await queue.enqueue({"n": n})

        seen = []
        stop_event = asyncio.Event()

        async def handler(payload, job):
            seen.append(payload["n"])
            if len(seen) == 5:
                stop_event.set()

        worker = QueueWorker(
            queue, handler, concurrency=3, sleep=clock.sleep, stalled_check_interval=None
        )
        await asyncio.wait_for(worker.run(stop_event), timeout=5)

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert (await queue.counts())["completed"] == 5

    @pytest.mark.asyncio
    async def test_failed_job_retried_by_loop(self, queue, clock):
        """
        The loop picks a failed job up again once its backoff has passed.

        Algorithm:
            1. Handler fails on attempt 1 and succeeds on attempt 2
            2. Run one slot with the fake clock as sleep
            3. Verify the job completes on attempt 2
        """
        handle = await queue.enqueue({"n": 1})
        attempts = []
        stop_event = asyncio.Event()

        async def handler(payload, job):
            attempts.append(job.attempt)
            if job.attempt == 1:
                raise RuntimeError("transient")
            stop_event.set()
            return "ok"

        worker = QueueWorker(
            queue, handler, poll_interval=1, sleep=clock.sleep, stalled_check_interval=None
        )
        await asyncio.wait_for(worker.run(stop_event), timeout=5)

        assert attempts == [1, 2]
        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == "ok"
