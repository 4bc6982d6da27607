"""Prometheus metrics helpers."""

from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "voiceled_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "voiceled_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
PRESENCE_TRANSITIONS = Counter(
    "voiceled_presence_transitions_total",
    "Voice presence transitions observed",
    ["kind"],
    registry=_REGISTRY,
)
PRESENCE_UNTRACKED = Counter(
    "voiceled_presence_untracked_total",
    "Join/leave transitions for users without an enabled configuration",
    registry=_REGISTRY,
)
PUBLISH_RESULTS = Counter(
    "voiceled_publish_total",
    "LED command publish outcomes",
    ["outcome"],
    registry=_REGISTRY,
)
PUBLISH_DURATION = Histogram(
    "voiceled_publish_duration_seconds",
    "Time from publish to broker acknowledgement",
    ["outcome"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
BROKER_STATE = Gauge(
    "voiceled_broker_connection_state",
    "Broker connection state (0=disconnected,1=connecting,2=connected)",
    registry=_REGISTRY,
)
STORE_OPERATIONS = Counter(
    "voiceled_store_operations_total",
    "Configuration store operations",
    ["operation", "result"],
    registry=_REGISTRY,
)

_BROKER_STATE_CODES = {"disconnected": 0, "connecting": 1, "connected": 2}


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_transition(kind: str) -> None:
    """Record a classified presence transition."""

    PRESENCE_TRANSITIONS.labels(kind=kind).inc()


def record_untracked() -> None:
    PRESENCE_UNTRACKED.inc()


def record_publish_result(outcome: str, duration_seconds: Optional[float] = None) -> None:
    """Record the outcome of a publish attempt.

    Latency is only observed for attempts that reached the client.
    """

    PUBLISH_RESULTS.labels(outcome=outcome).inc()
    if duration_seconds is not None:
        PUBLISH_DURATION.labels(outcome=outcome).observe(duration_seconds)


def record_broker_state(state: str) -> None:
    """Expose the current broker connection state."""

    BROKER_STATE.set(_BROKER_STATE_CODES.get(state, 0))


def record_store_operation(operation: str, result: str) -> None:
    STORE_OPERATIONS.labels(operation=operation, result=result).inc()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
