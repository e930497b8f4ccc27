"""Prometheus metrics for Vehicle Aggregator."""

import time

from prometheus_client import Counter, Gauge, Histogram

# In-memory last-success timestamps per dataset (for /health/datasets endpoint)
_last_success_timestamps: dict[str, float] = {}

TIMING_BUCKETS = [0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0, 20.0, 25.0, 30.0]

# Upstream metrics
upstream_requests = Counter(
    "vehicle_agg_upstream_requests_total",
    "Total upstream GraphQL queries",
    ["operation"],
)

upstream_errors = Counter(
    "vehicle_agg_upstream_errors_total",
    "Failed upstream GraphQL queries",
    ["operation", "error_type"],
)

upstream_duration = Histogram(
    "vehicle_agg_upstream_duration_seconds",
    "Time to execute an upstream query",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    unit="seconds",
)

# Cache metrics
cache_hits = Counter(
    "vehicle_agg_cache_hits_total",
    "Requests served from a fresh cache entry",
    ["dataset"],
)

cache_misses = Counter(
    "vehicle_agg_cache_misses_total",
    "Requests that found no fresh cache entry",
    ["dataset"],
)

# Pipeline metrics
pipeline_runs = Counter(
    "vehicle_agg_pipeline_runs_total",
    "Pipeline executions",
    ["dataset", "outcome"],
)

pipeline_duration = Histogram(
    "vehicle_agg_pipeline_duration_seconds",
    "Time to fetch, enrich and filter a dataset",
    ["dataset"],
    buckets=TIMING_BUCKETS,
    unit="seconds",
)

partial_failures = Counter(
    "vehicle_agg_partial_failures_total",
    "Sub-queries that failed while the rest of the run succeeded",
    ["dataset", "stage"],
)

snapshot_vehicles = Gauge(
    "vehicle_agg_snapshot_vehicles",
    "Number of vehicles in the latest snapshot",
    ["dataset"],
)

filtered_vehicles = Counter(
    "vehicle_agg_filtered_vehicles_total",
    "Vehicles dropped because their trip has already finished",
    ["dataset"],
)

skipped_positions = Counter(
    "vehicle_agg_skipped_positions_total",
    "Upstream vehicle positions discarded because they did not parse",
    ["dataset"],
)


def record_upstream_request(operation: str) -> None:
    """Record an upstream query attempt.

    Args:
        operation: GraphQL operation name.
    """
    upstream_requests.labels(operation=operation).inc()


def record_upstream_success(operation: str, duration_seconds: float) -> None:
    """Record a successful upstream query.

    Args:
        operation: GraphQL operation name.
        duration_seconds: Time taken in seconds.
    """
    upstream_duration.labels(operation=operation).observe(duration_seconds)


def record_upstream_error(operation: str, error_type: str) -> None:
    """Record a failed upstream query.

    Args:
        operation: GraphQL operation name.
        error_type: Type of error (e.g. "transport", "http_502", "graphql").
    """
    upstream_errors.labels(operation=operation, error_type=error_type).inc()


def record_cache_hit(dataset: str) -> None:
    cache_hits.labels(dataset=dataset).inc()


def record_cache_miss(dataset: str) -> None:
    cache_misses.labels(dataset=dataset).inc()


def record_pipeline_success(dataset: str, duration_seconds: float, vehicle_count: int) -> None:
    """Record a successful pipeline run.

    Also updates the in-memory timestamp used by the /health/datasets endpoint.

    Args:
        dataset: Dataset name.
        duration_seconds: Time taken in seconds.
        vehicle_count: Number of vehicles in the resulting snapshot.
    """
    pipeline_runs.labels(dataset=dataset, outcome="success").inc()
    pipeline_duration.labels(dataset=dataset).observe(duration_seconds)
    snapshot_vehicles.labels(dataset=dataset).set(vehicle_count)
    _last_success_timestamps[dataset] = time.time()


def record_pipeline_error(dataset: str) -> None:
    pipeline_runs.labels(dataset=dataset, outcome="error").inc()


def record_partial_failure(dataset: str, stage: str) -> None:
    """Record a recovered sub-query failure.

    Args:
        dataset: Dataset name.
        stage: Pipeline stage ("tile" or "trip").
    """
    partial_failures.labels(dataset=dataset, stage=stage).inc()


def record_filtered_vehicles(dataset: str, count: int) -> None:
    filtered_vehicles.labels(dataset=dataset).inc(count)


def record_skipped_position(dataset: str) -> None:
    skipped_positions.labels(dataset=dataset).inc()


def get_last_success_timestamp(dataset: str) -> float | None:
    """Get the timestamp of the last successful pipeline run for a dataset.

    Args:
        dataset: Dataset name.

    Returns:
        Unix timestamp of last success, or None if never succeeded.
    """
    return _last_success_timestamps.get(dataset)
