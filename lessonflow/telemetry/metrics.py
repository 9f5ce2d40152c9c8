"""Prometheus metrics definitions and helpers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests processed",
    ("method", "route", "status"),
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ("method", "route"),
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

ERROR_COUNTER = Counter(
    "app_internal_errors_total",
    "Number of requests ending in internal server error responses",
    ("method", "route"),
)

SWEEP_COUNT = Counter(
    "pipeline_sweeps_total",
    "Scheduled pipeline sweeps by job and outcome",
    ("job", "outcome"),
)

SWEEP_DURATION = Histogram(
    "pipeline_sweep_duration_seconds",
    "Wall-clock duration of pipeline sweeps",
    ("job",),
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 180.0, 600.0, 1800.0),
)

ITEM_COUNT = Counter(
    "pipeline_items_total",
    "Items processed by pipeline sweeps, by result",
    ("job", "result"),
)

PROVIDER_CALLS = Counter(
    "provider_calls_total",
    "Calls to external providers (storage, speech, analysis, pronunciation)",
    ("provider", "outcome"),
)


def observe_request(
    method: str,
    route: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record metrics for a completed HTTP request."""

    safe_route = route or "unknown"
    safe_method = method or "UNKNOWN"
    status_label = str(status_code)
    observed_duration = duration_seconds if duration_seconds >= 0 else 0

    REQUEST_COUNT.labels(
        method=safe_method,
        route=safe_route,
        status=status_label,
    ).inc()
    REQUEST_LATENCY.labels(
        method=safe_method,
        route=safe_route,
    ).observe(observed_duration)

    if status_code >= 500:
        ERROR_COUNTER.labels(
            method=safe_method,
            route=safe_route,
        ).inc()


def observe_sweep(job: str, outcome: str, duration_seconds: float) -> None:
    """Record one finished (or crashed) sweep."""

    SWEEP_COUNT.labels(job=job, outcome=outcome).inc()
    SWEEP_DURATION.labels(job=job).observe(max(duration_seconds, 0.0))


def record_items(job: str, result: str, count: int = 1) -> None:
    if count > 0:
        ITEM_COUNT.labels(job=job, result=result).inc(count)


def record_provider_call(provider: str, outcome: str) -> None:
    PROVIDER_CALLS.labels(provider=provider, outcome=outcome).inc()
