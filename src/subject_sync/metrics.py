"""
Prometheus metrics for the sync pipeline.

Registered on the global REGISTRY at import time; expose with
``prometheus_client.start_http_server`` or any ASGI/WSGI exporter.
"""

from prometheus_client import Counter, Gauge, Histogram

SYNC_ATTEMPTS_TOTAL = Counter(
    "subject_sync_attempts_total",
    "Warehouse sync attempts by table, path and outcome",
    ["table", "path", "outcome"],
)

SYNC_LATENCY_SECONDS = Histogram(
    "subject_sync_latency_seconds",
    "Transform + warehouse upsert latency",
    ["table"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

RETRY_QUEUE_DEPTH = Gauge(
    "subject_sync_retry_queue_depth",
    "Tasks waiting in the retry queue",
)

DLQ_TRANSITIONS_TOTAL = Counter(
    "subject_sync_dlq_transitions_total",
    "Dead-letter entry state changes",
    ["table", "status"],
)

ERASURE_STEPS_TOTAL = Counter(
    "subject_sync_erasure_steps_total",
    "Erasure sequence steps by step and outcome",
    ["step", "outcome"],
)

ERASURE_RUN_REQUESTS = Histogram(
    "subject_sync_erasure_run_requests",
    "Erasure requests handled per scheduler run",
    buckets=[0, 1, 5, 10, 25, 50, 100],
)


class MetricsRegistry:
    """Structured access to the pipeline metrics."""

    sync_attempts_total = SYNC_ATTEMPTS_TOTAL
    sync_latency_seconds = SYNC_LATENCY_SECONDS
    retry_queue_depth = RETRY_QUEUE_DEPTH
    dlq_transitions_total = DLQ_TRANSITIONS_TOTAL
    erasure_steps_total = ERASURE_STEPS_TOTAL
    erasure_run_requests = ERASURE_RUN_REQUESTS


metrics_registry = MetricsRegistry()
