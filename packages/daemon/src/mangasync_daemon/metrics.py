"""Prometheus metrics for the mangasync worker.

Provides worker observability:

1. Job RED Metrics (Rate, Errors, Duration)
   - Job counts by queue and outcome
   - Job duration histograms
   - Queue depth gauges

2. Notification Metrics
   - Notifications created / replaced / suppressed
   - Throttled notifications by reason
   - Lite-mode and rejected delivery batches

3. Source Metrics
   - Polls skipped by an open circuit

4. System Metrics
   - Scheduler leadership
   - Last heartbeat timestamp

Exposed over HTTP by ``start_http_server(settings.metrics_port)``.
"""

from typing import Any

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# Job RED Metrics
# ==============================================================================

JOB_DURATION = Histogram(
    "mangasync_job_duration_seconds",
    "Job handler duration in seconds",
    ["queue", "outcome"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

JOB_COUNT = Counter(
    "mangasync_jobs_total",
    "Total jobs processed",
    ["queue", "outcome"],
)

QUEUE_DEPTH = Gauge(
    "mangasync_queue_pending_jobs",
    "Pending jobs per queue (including delayed)",
    ["queue"],
)

ACTIVE_JOBS = Gauge(
    "mangasync_active_jobs",
    "Jobs currently running in this process",
    ["queue"],
)

# ==============================================================================
# Notification Metrics
# ==============================================================================

NOTIFICATIONS_CREATED = Counter(
    "mangasync_notifications_created_total",
    "Notifications inserted",
    ["lane"],
)

NOTIFICATIONS_REPLACED = Counter(
    "mangasync_notifications_replaced_total",
    "Lower-priority notifications replaced by a better source",
)

NOTIFICATIONS_SUPPRESSED = Counter(
    "mangasync_notifications_suppressed_total",
    "Notifications skipped because an equal or better one exists",
)

NOTIFICATIONS_THROTTLED = Counter(
    "mangasync_notifications_throttled_total",
    "Notifications dropped by a per-user ceiling",
    ["reason"],
)

DELIVERY_LITE_MODE = Counter(
    "mangasync_delivery_lite_batches_total",
    "Delivery batches written in lite mode",
)

DELIVERY_REJECTED = Counter(
    "mangasync_delivery_rejected_batches_total",
    "Free-lane delivery batches dropped at the backlog ceiling",
)

# ==============================================================================
# Source Metrics
# ==============================================================================

POLL_CIRCUIT_OPEN = Counter(
    "mangasync_poll_circuit_open_total",
    "Polls skipped because a source circuit was open",
    ["kind"],
)

# ==============================================================================
# System Metrics
# ==============================================================================

SCHEDULER_LEADER = Gauge(
    "mangasync_scheduler_leader",
    "1 while this process holds the scheduler lease",
)

HEARTBEAT_TIMESTAMP = Gauge(
    "mangasync_heartbeat_timestamp_seconds",
    "Unix time of the last heartbeat written",
)


def observe_result(queue: str, result: Any) -> None:
    """Record domain counters from a handler's result dict."""
    if not isinstance(result, dict):
        return

    status = result.get("status")

    if "created" in result and "suppressed" in result:
        lane = "premium" if queue.endswith("premium") else "standard"
        NOTIFICATIONS_CREATED.labels(lane=lane).inc(result["created"])
        NOTIFICATIONS_REPLACED.inc(result.get("replaced", 0))
        NOTIFICATIONS_SUPPRESSED.inc(result["suppressed"])
        for reason, count in (result.get("throttled") or {}).items():
            NOTIFICATIONS_THROTTLED.labels(reason=reason).inc(count)
        if result.get("lite"):
            DELIVERY_LITE_MODE.inc()

    if status == "rejected":
        DELIVERY_REJECTED.inc()

    reason = result.get("reason")
    if reason == "circuit_open":
        POLL_CIRCUIT_OPEN.labels(kind="persistent").inc()
    elif reason == "scraper_circuit_open":
        POLL_CIRCUIT_OPEN.labels(kind="in_process").inc()
