import asyncio
import functools
import logging
import os
import time
from datetime import datetime
from typing import Callable, Iterable, List

import sentry_sdk
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import LOG_FORMAT, LOG_LEVEL, SENTRY_DSN


def get_logger(name: str) -> logging.Logger:
    """Simple logger function"""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(LOG_FORMAT)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    return logger


def configure_logging():
    """Root logging setup for entry points."""
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)


def now_ms(clock: Callable[[], float] = time.time) -> int:
    """Current time of a seconds clock in integer milliseconds."""
    return int(round(clock() * 1000))


def batch_list(items: List, batch_size: int) -> Iterable[List]:
    """
    Split a list into batches.

    Args:
        items: List to split
        batch_size: Size of each batch

    Yields:
        Batches of items
    """
    for i in range(0, len(items), batch_size):
        yield items[i:i + batch_size]


def time_execution(func):
    """
    Decorator to time the execution of a coroutine function.
    Logs execution time but returns only the original result.
    """
    logger = get_logger(__name__)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = datetime.now()
        result = await func(*args, **kwargs)
        elapsed_time = datetime.now() - start_time
        logger.debug(f"{func.__name__} completed in {elapsed_time}")
        return result

    return wrapper


def filter_transient_errors(event, hint):
    """
    Sentry before_send hook.

    Drops cancellations and Redis connection blips; those are retried by the
    queue or the next scheduled run and only add noise.
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info:
        exc = exc_info[1]
        if isinstance(exc, (asyncio.CancelledError, RedisConnectionError, RedisTimeoutError)):
            return None
    return event


def init_sentry(release: str) -> bool:
    """Initialise Sentry when SENTRY_DSN is set. Returns whether it was enabled."""
    if not SENTRY_DSN:
        return False

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.01")),
        environment=os.getenv("ENV", "production"),
        release=release,
        before_send=filter_transient_errors,
    )
    return True
