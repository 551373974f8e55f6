"""
Prometheus metrics for queues, ingestion, aggregation and audit writes.

Metrics register on the default REGISTRY once per process; entry points
expose them with start_metrics_server().
"""

import logging

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

LATENCY_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 1800.0]

JOBS_ENQUEUED = Counter(
    "pipeline_jobs_enqueued_total", "Jobs accepted by a queue", ["queue"]
)
JOBS_COMPLETED = Counter(
    "pipeline_jobs_completed_total", "Jobs finished successfully", ["queue"]
)
JOBS_RETRIED = Counter(
    "pipeline_jobs_retried_total", "Failed attempts scheduled for retry", ["queue"]
)
JOBS_DEAD_LETTERED = Counter(
    "pipeline_jobs_dead_lettered_total", "Jobs moved to the failed set", ["queue"]
)
JOBS_STALLED = Counter(
    "pipeline_jobs_stalled_total", "Active jobs recovered after their worker went away", ["queue"]
)
JOB_DURATION = Histogram(
    "pipeline_job_duration_seconds", "Handler execution time", ["queue"], buckets=LATENCY_BUCKETS
)

EVENTS_INGESTED = Counter(
    "pipeline_events_ingested_total", "Engagement events accepted"
)
EVENTS_REJECTED = Counter(
    "pipeline_events_rejected_total", "Engagement events rejected", ["reason"]
)

AGGREGATION_RUNS = Counter(
    "pipeline_aggregation_runs_total", "Batch aggregation runs", ["job", "outcome"]
)
AGGREGATION_DURATION = Histogram(
    "pipeline_aggregation_duration_seconds", "Batch aggregation run time", ["job"],
    buckets=LATENCY_BUCKETS,
)

AUDIT_WRITE_FAILURES = Counter(
    "pipeline_audit_write_failures_total", "Best-effort log writes that were dropped", ["stream"]
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on the given port."""
    start_http_server(port)
    logger.info(f"Prometheus metrics exposed on port {port}")
