"""
Configuration constants for the job and analytics pipeline.

This module contains all configuration values including queue policies,
retention limits, aggregation windows and weights, cron schedules, TTLs
and logging settings. Centralizing these values makes the pipeline easier
to tune without touching the components that read them.
"""

import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

# Load .env from project root (relative to this file) before reading any setting
load_dotenv(Path(__file__).parent.parent / ".env")

# ============================================================================
# REDIS CONNECTION
# ============================================================================

REDIS_MAX_CONNECTIONS = 50  # Per process
REDIS_SOCKET_TIMEOUT = 30  # Seconds

REDIS_CONFIG = {
    "host": os.getenv("REDIS_HOST", "localhost"),
    "port": int(os.getenv("REDIS_PORT", "6379")),
    "password": os.getenv("REDIS_PASSWORD") or None,
    "cluster_enabled": os.getenv("REDIS_CLUSTER_ENABLED", "false").lower() == "true",
    "ssl_enabled": os.getenv("REDIS_TLS_ENABLED", "false").lower() == "true",
    "max_connections": REDIS_MAX_CONNECTIONS,
    "socket_timeout": REDIS_SOCKET_TIMEOUT,
}

# "redis" for the durable backends, "memory" for single-process development
PIPELINE_BACKEND = os.getenv("PIPELINE_BACKEND", "redis").lower()

# ============================================================================
# KEY SPACE (HASH TAGS)
# ============================================================================

# Every key of one logical area shares a hash tag so multi-key scripts and
# transactions land on a single cluster slot.
QUEUE_KEY_PREFIX = "{jobs}"
EVENT_KEY_PREFIX = "{events}"
POPULARITY_KEY_PREFIX = "{popularity}"
CONTINUE_WATCHING_KEY_PREFIX = "{continue_watching}"
AUDIT_KEY_PREFIX = "{audit}"
LEDGER_KEY_PREFIX = "{ledger}"
JOB_LOCK_KEY_PREFIX = "job:lock:"

# ============================================================================
# JOB QUEUES
# ============================================================================

TRANSCODE_QUEUE = "transcode"
EMAIL_QUEUE = "email"

DEFAULT_MAX_ATTEMPTS = 3  # automatic retries after the first attempt
DEFAULT_BACKOFF_TYPE = "exponential"
DEFAULT_BACKOFF_DELAY_MS = 5000  # delay = base * 2^(attempt-1)

# Per-queue policy. Retention is the number of finished job records kept.
QUEUE_POLICIES: Dict[str, Dict] = {
    TRANSCODE_QUEUE: {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "backoff_type": DEFAULT_BACKOFF_TYPE,
        "backoff_delay_ms": DEFAULT_BACKOFF_DELAY_MS,
        "remove_on_complete": 1000,
        "remove_on_fail": 5000,
        "rate_limit": {"max": 1, "duration_ms": 1000},  # 1 dispatch per second, all workers
    },
    EMAIL_QUEUE: {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "backoff_type": DEFAULT_BACKOFF_TYPE,
        "backoff_delay_ms": DEFAULT_BACKOFF_DELAY_MS,
        "remove_on_complete": 500,
        "remove_on_fail": 1000,
        "rate_limit": None,
    },
}

# Worker slots per queue (per process)
WORKER_CONCURRENCY = {
    TRANSCODE_QUEUE: int(os.getenv("TRANSCODE_CONCURRENCY", "2")),
    EMAIL_QUEUE: int(os.getenv("EMAIL_CONCURRENCY", "4")),
}

# Watchdog for a single handler invocation (seconds)
JOB_HANDLER_TIMEOUT = {
    TRANSCODE_QUEUE: int(os.getenv("TRANSCODE_TIMEOUT", str(2 * 60 * 60))),  # 2 hours
    EMAIL_QUEUE: int(os.getenv("EMAIL_TIMEOUT", str(10 * 60))),  # 10 minutes
}

# Extra time past the handler timeout before an active job counts as stalled
JOB_STALL_GRACE_MS = 60 * 1000

WORKER_POLL_INTERVAL = float(os.getenv("WORKER_POLL_INTERVAL", "0.5"))  # Seconds
STALLED_CHECK_INTERVAL = 30  # Seconds

# Collaborators loaded by the worker entry point ("package.module:callable")
TRANSCODER_CALLABLE = os.getenv("TRANSCODER_CALLABLE", "")
MAILER_CALLABLE = os.getenv("MAILER_CALLABLE", "")

# Finished renditions / recipients per job are remembered this long
IDEMPOTENCY_LEDGER_TTL = 7 * 24 * 60 * 60  # 7 days

# Rendition label -> output height in pixels
RENDITION_HEIGHTS = {
    "R4K": 2160,
    "R2K": 1440,
    "R1080": 1080,
    "R720": 720,
    "R360": 360,
}

# ============================================================================
# ENGAGEMENT EVENTS
# ============================================================================

EVENT_TYPES = [
    "PLAY_START",
    "PLAY_END",
    "SCRUB",
    "SKIP",
    "SEARCH",
    "ADD_TO_LIST",
    "THUMBS_UP",
    "THUMBS_DOWN",
    "IMPRESSION",
]

# ============================================================================
# POPULARITY AGGREGATION
# ============================================================================

# Window label -> trailing hours
POPULARITY_WINDOWS = {
    "DAILY": int(os.getenv("POPULARITY_DAILY_HOURS", "24")),
    "TRENDING": int(os.getenv("POPULARITY_TRENDING_HOURS", "72")),
}

# Tunable policy, not product-approved weighting
POPULARITY_EVENT_WEIGHTS = {
    "PLAY_START": float(os.getenv("POPULARITY_WEIGHT_PLAY_START", "1.0")),
    "PLAY_END": float(os.getenv("POPULARITY_WEIGHT_PLAY_END", "2.0")),
}
POPULARITY_COMPLETION_BONUS = float(os.getenv("POPULARITY_COMPLETION_BONUS", "1.0"))

# Share of the runtime a PLAY_END must reach to count as a completed view
COMPLETION_THRESHOLD = float(os.getenv("COMPLETION_THRESHOLD", "0.9"))

GLOBAL_SEGMENT = "GLOBAL"
UNKNOWN_COUNTRY = "UNKNOWN"  # Segment for events without a country
SCORE_PRECISION = 6

AGGREGATION_DEADLINE_SECONDS = int(os.getenv("AGGREGATION_DEADLINE_SECONDS", "900"))
JOB_LOCK_TTL = 60 * 60  # 1 hour - locks expire after this time to prevent deadlocks
STAGING_KEY_TTL = 60 * 60  # Uncommitted staging output expires on its own

# ============================================================================
# CONTINUE WATCHING
# ============================================================================

CONTINUE_WATCHING_WINDOW_DAYS = int(os.getenv("CONTINUE_WATCHING_WINDOW_DAYS", "14"))
CONTINUE_WATCHING_LIMIT = int(os.getenv("CONTINUE_WATCHING_LIMIT", "50"))

# ============================================================================
# SCHEDULES (crontab strings)
# ============================================================================

POPULARITY_CRON = os.getenv("POPULARITY_CRON", "0 3 * * *")  # daily at 03:00
CONTINUE_WATCHING_CRON = os.getenv("CONTINUE_WATCHING_CRON", "0 4 * * *")  # daily at 04:00
SCHEDULER_MISFIRE_GRACE_TIME = 300  # Seconds

# ============================================================================
# CACHE
# ============================================================================

TRENDING_CACHE_TTL = int(os.getenv("TRENDING_CACHE_TTL", "300"))  # 5 minutes
TRENDING_CACHE_PREFIX = "trending:"
TRENDING_DEFAULT_LIMIT = 10
CACHE_SWEEP_INTERVAL = 60  # Seconds
CACHE_MAX_ENTRIES = 10000

# ============================================================================
# AUDIT / ERROR LOGS
# ============================================================================

AUDIT_STREAM = "audit"
ERROR_STREAM = "errors"
AUDIT_LOG_MAX_ENTRIES = 10000
AUDIT_LOG_TTL = 30 * 24 * 60 * 60  # 30 days

# ============================================================================
# MONITORING
# ============================================================================

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_PORT = int(os.getenv("METRICS_PORT", "9090"))

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

ENABLE_DEBUG_LOGGING = os.getenv("ENABLE_DEBUG_LOGGING", "false").lower() == "true"

LOG_LEVEL = "DEBUG" if ENABLE_DEBUG_LOGGING else os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
