"""Application metrics using the Prometheus client library.

This module defines all metrics in one place: a single inventory of
everything the service measures.  Other modules import specific metrics
and increment/observe them at the point of action.

  COUNTER  : only goes up.  Events ingested, duplicates, dead letters.
  GAUGE    : goes up and down.  In-flight requests, queue depth.
  HISTOGRAM: bucketed observations.  Aggregation and analytics latency,
              from which Prometheus derives p95/p99.

Prometheus pulls these from GET /metrics (app/api/metrics_endpoint.py).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Event ingest
# ---------------------------------------------------------------------------

EVENTS_INGESTED = Counter(
    "learning_events_ingested_total",
    "Learning events accepted by ingest",
    ["type"],  # view|complete|attempt|time_tick
)

EVENTS_REJECTED = Counter(
    "learning_events_rejected_total",
    "Learning events rejected by validation",
    ["kind"],  # unknown_reference|malformed_payload|clock_skew
)

# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

EVENTS_DUPLICATE = Counter(
    "aggregation_duplicate_events_total",
    "Events whose event_id was already applied (idempotent no-op)",
)

AGGREGATION_DURATION = Histogram(
    "aggregation_apply_duration_seconds",
    "Time to apply one event to section progress",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5, 1.0],
)

AGGREGATION_RETRIES = Counter(
    "aggregation_retries_total",
    "Transient aggregation failures retried with backoff",
    ["reason"],  # lock_timeout|version_conflict
)

DEAD_LETTERS = Counter(
    "aggregation_dead_letters_total",
    "Events dropped with an audit record",
    ["kind"],  # orphaned_reference|...
)

TICKS_TRUNCATED = Counter(
    "aggregation_time_ticks_truncated_total",
    "time_tick events whose delta exceeded the sanity ceiling",
)

RECOMPUTATIONS = Counter(
    "progress_recomputations_total",
    "Lesson/course progress recomputations",
    ["level"],  # lesson|course
)

# ---------------------------------------------------------------------------
# Analytics and materialized views
# ---------------------------------------------------------------------------

ANALYTICS_DURATION = Histogram(
    "analytics_snapshot_duration_seconds",
    "Time to compute one analytics snapshot",
    ["subject_kind"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

ANALYTICS_TIMEOUTS = Counter(
    "analytics_timeouts_total",
    "Analytics computations cancelled by their deadline",
    ["subject_kind"],
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Materialized view lookups by result",
    ["operation"],  # hit|miss|stale|degraded
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # progress_recompute
)
