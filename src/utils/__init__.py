"""
Utils package for the media pipeline

This package contains shared helpers: Redis connection, cluster-safe keys,
the TTL cache, the rate limiter, metrics and logging.
"""

from .common_utils import get_logger

__all__ = [
    "get_logger",
]

__version__ = "0.1.0"
