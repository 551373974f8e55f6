"""
Queue worker entry point.

Usage:
    python src/worker_main.py transcode
    WORKER_QUEUE=email python src/worker_main.py

The transcoder and mailer collaborators are loaded from "module:callable"
paths (TRANSCODER_CALLABLE, MAILER_CALLABLE). SIGINT/SIGTERM stop claiming
new jobs and let in-flight ones finish.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Callable

from config import (
    EMAIL_QUEUE,
    JOB_HANDLER_TIMEOUT,
    MAILER_CALLABLE,
    METRICS_ENABLED,
    METRICS_PORT,
    TRANSCODE_QUEUE,
    TRANSCODER_CALLABLE,
    WORKER_CONCURRENCY,
)
from factory import Pipeline, build_backends, build_pipeline
from job_handlers import EmailHandler, TranscodeHandler
from queue_worker import QueueWorker
from utils.common_utils import configure_logging, init_sentry
from utils.metrics_utils import start_metrics_server

logger = logging.getLogger(__name__)


def load_callable(path: str) -> Callable:
    """
    Import "package.module:attribute".

    Raises:
        ValueError: path is empty or malformed
    """
    module_name, sep, attribute = path.partition(":")
    if not module_name or not sep or not attribute:
        raise ValueError(f"Expected 'module:callable', got {path!r}")
    target = importlib.import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{path} is not callable")
    return target


def build_worker(pipeline: Pipeline, queue_name: str) -> QueueWorker:
    if queue_name == TRANSCODE_QUEUE:
        handler = TranscodeHandler(load_callable(TRANSCODER_CALLABLE), pipeline.backends.ledger)
    elif queue_name == EMAIL_QUEUE:
        handler = EmailHandler(load_callable(MAILER_CALLABLE), pipeline.backends.ledger)
    else:
        raise ValueError(f"Unknown queue {queue_name!r}")

    return QueueWorker(
        pipeline.queues[queue_name],
        handler,
        concurrency=WORKER_CONCURRENCY[queue_name],
        handler_timeout=JOB_HANDLER_TIMEOUT[queue_name],
        error_recorder=pipeline.errors,
    )


async def main(argv) -> int:
    configure_logging()

    queue_name = argv[0] if argv else os.getenv("WORKER_QUEUE", "")
    if queue_name not in (TRANSCODE_QUEUE, EMAIL_QUEUE):
        logger.error(f"Usage: worker_main.py <{TRANSCODE_QUEUE}|{EMAIL_QUEUE}>")
        return 2

    init_sentry(release=f"media-pipeline-{queue_name}-worker@0.1.0")
    if METRICS_ENABLED:
        start_metrics_server(METRICS_PORT)

    backends = await build_backends()
    pipeline = build_pipeline(backends)
    try:
        worker = build_worker(pipeline, queue_name)

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await worker.run(stop_event)
        return 0

    finally:
        await pipeline.errors.drain()
        await backends.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
