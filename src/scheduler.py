"""
Cron scheduler for the batch jobs.

Usage:
    python src/scheduler.py                       # run the cron schedule forever
    python src/scheduler.py once popularity       # one popularity pass, then exit
    python src/scheduler.py once continue_watching

Every job also takes a distributed lock, so running several scheduler
processes is safe: only one of them does the work for a given trigger.
"""

import asyncio
import logging
import signal
import sys
from typing import Dict

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import (
    CONTINUE_WATCHING_CRON,
    METRICS_ENABLED,
    METRICS_PORT,
    POPULARITY_CRON,
    SCHEDULER_MISFIRE_GRACE_TIME,
)
from factory import Pipeline, build_backends, build_pipeline
from utils.common_utils import configure_logging, init_sentry
from utils.metrics_utils import start_metrics_server

logger = logging.getLogger(__name__)


def job_listener(event):
    """Listen to job events for monitoring."""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully")


def batch_jobs(pipeline: Pipeline) -> Dict:
    """Job name -> (coroutine function, crontab string)."""
    return {
        "popularity": (pipeline.aggregator.run_with_deadline, POPULARITY_CRON),
        "continue_watching": (pipeline.continue_watching_job.run, CONTINUE_WATCHING_CRON),
    }


def create_scheduler(pipeline: Pipeline) -> AsyncIOScheduler:
    """Register every batch job on an AsyncIOScheduler (not started)."""
    scheduler = AsyncIOScheduler()

    for name, (func, crontab) in batch_jobs(pipeline).items():
        scheduler.add_job(
            func,
            CronTrigger.from_crontab(crontab),
            id=name,
            replace_existing=True,
            max_instances=1,  # Prevent concurrent execution
            misfire_grace_time=SCHEDULER_MISFIRE_GRACE_TIME,
        )
        logger.info(f"Scheduled {name} with cron '{crontab}'")

    scheduler.add_listener(job_listener, EVENT_JOB_ERROR | EVENT_JOB_EXECUTED)
    return scheduler


async def run_once(pipeline: Pipeline, job_name: str):
    jobs = batch_jobs(pipeline)
    if job_name not in jobs:
        raise ValueError(f"Unknown job {job_name!r}, expected one of {sorted(jobs)}")
    func, _ = jobs[job_name]
    return await func()


async def main(argv) -> int:
    configure_logging()
    init_sentry(release="media-pipeline-scheduler@0.1.0")

    backends = await build_backends()
    pipeline = build_pipeline(backends)

    try:
        if argv[:1] == ["once"]:
            if len(argv) < 2:
                logger.error("Usage: scheduler.py once <popularity|continue_watching>")
                return 2
            result = await run_once(pipeline, argv[1])
            logger.info(f"{argv[1]} finished: {result}")
            return 0

        if METRICS_ENABLED:
            start_metrics_server(METRICS_PORT)

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        scheduler = create_scheduler(pipeline)
        scheduler.start()
        logger.info("Background scheduler started")

        await stop_event.wait()
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
        return 0

    finally:
        await pipeline.errors.drain()
        await backends.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
