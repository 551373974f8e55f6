"""
Job queue tests.

Runs the transcode and email queues over the in-memory broker with a fake
clock, so backoff delays and stall deadlines are checked to the millisecond.
"""

import pytest

from errors import JobPayloadError, UnrecoverableJobError
from job_queue import JobQueue, QueueOptions, build_queues, queue_options_from_config
from models import BackoffPolicy, JobOptions, JobStatus, RateLimit
from queue_broker import STALLED_ERROR, InMemoryQueueBroker


@pytest.fixture
def broker():
    return InMemoryQueueBroker()


@pytest.fixture
def queues(broker, clock):
    return build_queues(broker, clock=clock)


class TestQueuePolicies:
    """Queue defaults loaded from configuration."""

    def test_transcode_policy(self):
        """
        Transcode queue is rate limited and keeps 1000/5000 records.

        Algorithm:
            1. Build options for the transcode queue
            2. Verify attempts, backoff, limiter and retention
        """
        options = queue_options_from_config("transcode")

        assert options.max_attempts == 3
        assert options.backoff == BackoffPolicy("exponential", 5000)
        assert options.rate_limit == RateLimit(max=1, duration_ms=1000)
        assert options.remove_on_complete == 1000
        assert options.remove_on_fail == 5000

    def test_email_policy(self):
        """Email queue has no limiter and keeps 500/1000 records."""
        options = queue_options_from_config("email")

        assert options.rate_limit is None
        assert options.remove_on_complete == 500
        assert options.remove_on_fail == 1000

    def test_backoff_delays(self):
        """Exponential backoff doubles from the base; fixed stays flat."""
        exponential = BackoffPolicy("exponential", 5000)
        assert [exponential.delay_for(n) for n in (1, 2, 3)] == [5000, 10000, 20000]

        fixed = BackoffPolicy("fixed", 250)
        assert [fixed.delay_for(n) for n in (1, 2, 3)] == [250, 250, 250]

    def test_unknown_backoff_type_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy("linear", 100)


class TestEnqueue:
    """Producer side: durability, ids, dedupe and payload checks."""

    @pytest.mark.asyncio
    async def test_enqueued_job_is_pending(self, queues, clock):
        """
        A job is stored and visible once enqueue returns.

        Algorithm:
            1. Enqueue a transcode job
            2. Verify handle and stored record
        """
        queue = queues["transcode"]
        handle = await queue.enqueue({"uploadJobId": "u1", "key": "raw/u1.mp4", "renditions": ["R720"]})

        assert handle.created is True
        assert handle.queue_name == "transcode"
        assert handle.enqueued_at == clock.ms

        job = await queue.get_job(handle.id)
        assert job.status == JobStatus.PENDING
        assert job.attempt == 0
        assert job.payload["uploadJobId"] == "u1"
        assert (await queue.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_non_serializable_payload_rejected(self, queues):
        """
        A payload that cannot be serialized is rejected and nothing is stored.

        Algorithm:
            1. Enqueue payload containing an arbitrary object
            2. Verify JobPayloadError and empty queue
        """
        queue = queues["email"]

        with pytest.raises(JobPayloadError):
            await queue.enqueue({"subject": "hi", "attachment": object()})

        counts = await queue.counts()
        assert counts["pending"] == 0
        assert counts["delayed"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_job_id_not_enqueued_twice(self, queues):
        """
        Enqueue with an existing job id returns the original handle.

        Algorithm:
            1. Enqueue with job_id "upload-42"
            2. Enqueue again with the same id and a different payload
            3. Verify second handle is not created and only one job exists
        """
        queue = queues["transcode"]
        first = await queue.enqueue({"n": 1}, JobOptions(job_id="upload-42"))
        second = await queue.enqueue({"n": 2}, JobOptions(job_id="upload-42"))

        assert first.created is True
        assert second.created is False
        assert second.id == first.id == "upload-42"
        assert (await queue.counts())["pending"] == 1
        assert (await queue.get_job("upload-42")).payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_fifo_order(self, queues):
        """Jobs are claimed in enqueue order."""
        queue = queues["email"]
        ids = [(await queue.enqueue({"n": n})).id for n in range(3)]

        claimed = [(await queue.fetch_next()).job.id for _ in range(3)]

        assert claimed == ids

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, queues, clock):
        """
        A delayed job is not claimable before its delay passes.

        Algorithm:
            1. Enqueue with delay_ms=2000
            2. Claim immediately -> nothing
            3. Advance 2s, claim -> the job
        """
        queue = queues["email"]
        handle = await queue.enqueue({"n": 1}, JobOptions(delay_ms=2000))

        assert (await queue.fetch_next()).job is None

        clock.advance(2)
        claim = await queue.fetch_next()
        assert claim.job is not None
        assert claim.job.id == handle.id


class TestRetryAndDeadLetter:
    """Failure handling: backoff, dead-lettering, manual retry."""

    @pytest.mark.asyncio
    async def test_backoff_then_dead_letter(self, queues, clock):
        """
        A job failing every attempt retries at 5s, 10s and 20s, then dead-letters.

        Algorithm:
            1. Enqueue, claim and fail attempt 1 -> ready at +5000ms
            2. Claim before the delay -> nothing
            3. Advance 5s, claim and fail attempt 2 -> ready at +10000ms
            4. Advance 10s, claim and fail attempt 3 -> ready at +20000ms
            5. Advance 20s, claim and fail attempt 4 -> DEAD_LETTERED
            6. failed_jobs lists the job exactly once
        """
        queue = queues["email"]
        handle = await queue.enqueue({"to": "a@example.com"})

        job = (await queue.fetch_next()).job
        assert job.attempt == 1
        status = await queue.fail(job, RuntimeError("smtp down"))
        assert status == JobStatus.FAILED

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.FAILED
        assert stored.ready_at == clock.ms + 5000
        assert stored.last_error == "RuntimeError: smtp down"

        assert (await queue.fetch_next()).job is None

        clock.advance(5)
        job = (await queue.fetch_next()).job
        assert job.attempt == 2
        assert await queue.fail(job, RuntimeError("smtp down")) == JobStatus.FAILED
        assert (await queue.get_job(handle.id)).ready_at == clock.ms + 10000

        clock.advance(10)
        job = (await queue.fetch_next()).job
        assert job.attempt == 3
        assert await queue.fail(job, RuntimeError("smtp down")) == JobStatus.FAILED
        assert (await queue.get_job(handle.id)).ready_at == clock.ms + 20000
        assert await queue.failed_jobs() == []

        clock.advance(20)
        job = (await queue.fetch_next()).job
        assert job.attempt == 4
        assert await queue.fail(job, RuntimeError("smtp down")) == JobStatus.DEAD_LETTERED

        failed = await queue.failed_jobs()
        assert [j.id for j in failed] == [handle.id]
        assert failed[0].status == JobStatus.DEAD_LETTERED
        assert failed[0].attempt == 4

        clock.advance(60)
        assert (await queue.fetch_next()).job is None
        assert (await queue.counts())["dead_lettered"] == 1

    @pytest.mark.asyncio
    async def test_unrecoverable_error_dead_letters_immediately(self, queues):
        """
        UnrecoverableJobError skips the remaining attempts.

        Algorithm:
            1. Claim attempt 1
            2. Fail with UnrecoverableJobError
            3. Verify DEAD_LETTERED after a single attempt
        """
        queue = queues["transcode"]
        handle = await queue.enqueue({"uploadJobId": "u1"})
        job = (await queue.fetch_next()).job

        status = await queue.fail(job, UnrecoverableJobError("source missing"))

        assert status == JobStatus.DEAD_LETTERED
        stored = await queue.get_job(handle.id)
        assert stored.attempt == 1
        assert "UnrecoverableJobError" in stored.last_error

    @pytest.mark.asyncio
    async def test_per_job_overrides(self, queues, clock):
        """
        Per-job attempts and backoff override the queue defaults.

        Algorithm:
            1. Enqueue with max_attempts=5 and fixed 100ms backoff
            2. Fail three times, each retry ready 100ms later
            3. Verify the job is still retrying after attempt 3
        """
        queue = queues["email"]
        handle = await queue.enqueue(
            {"n": 1},
            JobOptions(max_attempts=5, backoff=BackoffPolicy("fixed", 100)),
        )

        for attempt in (1, 2, 3):
            job = (await queue.fetch_next()).job
            assert job.attempt == attempt
            assert job.max_attempts == 5
            assert await queue.fail(job, RuntimeError("flaky")) == JobStatus.FAILED
            assert (await queue.get_job(handle.id)).ready_at == clock.ms + 100
            clock.advance(1)

        assert await queue.failed_jobs() == []

    @pytest.mark.asyncio
    async def test_retry_dead_lettered(self, queues):
        """
        A dead-lettered job can be re-queued manually with a fresh budget.

        Algorithm:
            1. Enqueue with max_attempts=0, claim and fail -> dead-lettered
            2. retry_dead_lettered -> True, job pending with attempt 0
            3. Claim again -> attempt 1
            4. retry_dead_lettered of a non-dead job -> False
        """
        queue = queues["email"]
        handle = await queue.enqueue({"n": 1}, JobOptions(max_attempts=0))
        job = (await queue.fetch_next()).job
        assert await queue.fail(job, RuntimeError("boom")) == JobStatus.DEAD_LETTERED

        assert await queue.retry_dead_lettered(handle.id) is True

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempt == 0
        assert stored.last_error is None
        assert await queue.failed_jobs() == []

        job = (await queue.fetch_next()).job
        assert job.id == handle.id
        assert job.attempt == 1

        assert await queue.retry_dead_lettered(handle.id) is False
        assert await queue.retry_dead_lettered("missing") is False

    @pytest.mark.asyncio
    async def test_completed_job_keeps_result(self, queues):
        queue = queues["email"]
        handle = await queue.enqueue({"n": 1})
        job = (await queue.fetch_next()).job

        await queue.complete(job, {"queued": 1})

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"queued": 1}
        assert (await queue.counts())["completed"] == 1


class TestStalledRecovery:
    """Active jobs past their deadline are handed back or dead-lettered."""

    @pytest.mark.asyncio
    async def test_stalled_job_requeued(self, broker, clock):
        """
        A job whose worker vanished is returned to the queue.

        Algorithm:
            1. Queue with stall_ms=1000; claim a job and never finish it
            2. recover_stalled before the deadline -> nothing
            3. Advance 2s, recover_stalled -> requeued
            4. Claim again -> attempt 2
        """
        queue = JobQueue("email", broker, QueueOptions(stall_ms=1000), clock=clock)
        handle = await queue.enqueue({"n": 1})
        await queue.fetch_next()

        assert await queue.recover_stalled() == {"requeued": [], "dead_lettered": []}

        clock.advance(2)
        assert await queue.recover_stalled() == {"requeued": [handle.id], "dead_lettered": []}

        job = (await queue.fetch_next()).job
        assert job.id == handle.id
        assert job.attempt == 2

    @pytest.mark.asyncio
    async def test_stalled_job_out_of_attempts_dead_lettered(self, broker, clock):
        """A stalled job with no retries left is dead-lettered instead."""
        queue = JobQueue("email", broker, QueueOptions(stall_ms=1000), clock=clock)
        handle = await queue.enqueue({"n": 1}, JobOptions(max_attempts=0))
        await queue.fetch_next()

        clock.advance(2)
        assert await queue.recover_stalled() == {"requeued": [], "dead_lettered": [handle.id]}

        stored = await queue.get_job(handle.id)
        assert stored.status == JobStatus.DEAD_LETTERED
        assert stored.last_error == STALLED_ERROR


class TestRetention:
    """Finished job records are trimmed to the retention limits."""

    @pytest.mark.asyncio
    async def test_completed_records_trimmed(self, broker, clock):
        """
        Only the newest remove_on_complete records are kept.

        Algorithm:
            1. Queue with remove_on_complete=2
            2. Complete three jobs
            3. Verify the oldest record is gone
        """
        queue = JobQueue("email", broker, QueueOptions(remove_on_complete=2), clock=clock)
        ids = []
        for n in range(3):
            ids.append((await queue.enqueue({"n": n})).id)
            job = (await queue.fetch_next()).job
            await queue.complete(job, None)
            clock.advance(1)

        assert (await queue.counts())["completed"] == 2
        assert await queue.get_job(ids[0]) is None
        assert (await queue.get_job(ids[2])).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dead_lettered_records_trimmed(self, broker, clock):
        queue = JobQueue("email", broker, QueueOptions(max_attempts=0, remove_on_fail=1), clock=clock)
        for n in range(2):
            await queue.enqueue({"n": n})
            job = (await queue.fetch_next()).job
            await queue.fail(job, RuntimeError("boom"))
            clock.advance(1)

        failed = await queue.failed_jobs()
        assert len(failed) == 1
        assert failed[0].payload == {"n": 1}


class TestRateGate:
    """Dispatch gate shared by every consumer of a queue."""

    @pytest.mark.asyncio
    async def test_transcode_gate_closed_within_window(self, queues, clock):
        """
        Transcode dispatches at most one job per second.

        Algorithm:
            1. Enqueue two jobs
            2. Claim twice at the same instant -> second reports retry_after_ms=1000
            3. Advance 1s -> second job is claimable
        """
        queue = queues["transcode"]
        await queue.enqueue({"n": 1})
        second = await queue.enqueue({"n": 2})

        assert (await queue.fetch_next()).job is not None

        blocked = await queue.fetch_next()
        assert blocked.job is None
        assert blocked.retry_after_ms == 1000

        clock.advance(1)
        claim = await queue.fetch_next()
        assert claim.job.id == second.id

    @pytest.mark.asyncio
    async def test_email_has_no_gate(self, queues):
        queue = queues["email"]
        for n in range(3):
            await queue.enqueue({"n": n})

        claims = [await queue.fetch_next() for _ in range(3)]

        assert all(claim.job is not None for claim in claims)

    @pytest.mark.asyncio
    async def test_per_job_rate_limit(self, queues, clock):
        """A job-level limiter applies even on a queue without one."""
        queue = queues["email"]
        limit = RateLimit(max=1, duration_ms=500)
        await queue.enqueue({"n": 1}, JobOptions(rate_limit=limit))
        await queue.enqueue({"n": 2}, JobOptions(rate_limit=limit))

        assert (await queue.fetch_next()).job is not None
        assert (await queue.fetch_next()).retry_after_ms == 500

        clock.advance_ms(500)
        assert (await queue.fetch_next()).job is not None
