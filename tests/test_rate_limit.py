"""
Transcode dispatch rate tests.

Two workers share one transcode queue. The fake clock doubles as the
workers' sleep, so waiting on a closed rate gate moves time forward
without slowing the test down.
"""

import asyncio

import pytest

from job_queue import build_queues
from queue_broker import InMemoryQueueBroker
from queue_worker import QueueWorker
from utils.rate_limiter import FixedWindowRateLimiter
from models import RateLimit


class TestFixedWindowRateLimiter:
    """Unit tests for the in-process dispatch gate."""

    def test_grants_up_to_limit(self):
        """
        Grants `max` slots per window, then reports the remaining wait.

        Algorithm:
            1. Limit of 2 per 1000ms
            2. Two grants at t=0 succeed
            3. Third at t=400 waits 600ms
            4. At t=1000 a new window opens
        """
        limiter = FixedWindowRateLimiter()
        limit = RateLimit(max=2, duration_ms=1000)

        assert limiter.try_acquire("transcode", limit, 0) == 0
        assert limiter.try_acquire("transcode", limit, 0) == 0
        assert limiter.try_acquire("transcode", limit, 400) == 600
        assert limiter.try_acquire("transcode", limit, 1000) == 0

    def test_gates_are_per_key(self):
        limiter = FixedWindowRateLimiter()
        limit = RateLimit(max=1, duration_ms=1000)

        assert limiter.try_acquire("transcode", limit, 0) == 0
        assert limiter.try_acquire("email", limit, 0) == 0
        assert limiter.try_acquire("transcode", limit, 10) == 990

    def test_reset(self):
        limiter = FixedWindowRateLimiter()
        limit = RateLimit(max=1, duration_ms=1000)
        limiter.try_acquire("transcode", limit, 0)

        limiter.reset("transcode")

        assert limiter.try_acquire("transcode", limit, 1) == 0

    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            RateLimit(max=0, duration_ms=1000)


class TestTranscodeDispatchRate:
    """End-to-end: the transcode gate holds across concurrent workers."""

    @pytest.mark.asyncio
    async def test_ten_jobs_take_at_least_nine_seconds(self, clock):
        """
        Ten transcode jobs are dispatched at least one second apart.

        Algorithm:
            1. Enqueue 12 transcode jobs
            2. Run two workers with two slots each, sleeping on the fake clock
            3. Handler records dispatch time and stops after 10 jobs
            4. Verify every gap >= 1000ms and the span >= 9000ms
        """
        queue = build_queues(InMemoryQueueBroker(), clock=clock)["transcode"]
        for n in range(12):
            await queue.enqueue({"uploadJobId": f"u{n}"})

        dispatched = []
        stop_event = asyncio.Event()

        async def handler(payload, job):
            dispatched.append(clock.ms)
            if len(dispatched) >= 10:
                stop_event.set()
            return {"ok": True}

        workers = [
            QueueWorker(
                queue,
                handler,
                concurrency=2,
                sleep=clock.sleep,
                stalled_check_interval=None,
            )
            for _ in range(2)
        ]

        await asyncio.wait_for(
            asyncio.gather(*(worker.run(stop_event) for worker in workers)),
            timeout=5,
        )

        assert len(dispatched) >= 10
        gaps = [later - earlier for earlier, later in zip(dispatched, dispatched[1:])]
        assert all(gap >= 1000 for gap in gaps), gaps
        assert dispatched[9] - dispatched[0] >= 9000
