"""Prometheus metrics for the relay client.

Usage::

    from relay_client.observability.metrics import RELAY_REQUESTS_TOTAL

    RELAY_REQUESTS_TOTAL.labels(outcome="relay_http").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Pipeline metrics
# ---------------------------------------------------------------------------

RELAY_REQUESTS_TOTAL = Counter(
    "relay_requests_total",
    "Intercepted requests by dispatch outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

DIRECT_FALLBACKS_TOTAL = Counter(
    "relay_direct_fallbacks_total",
    "Direct fetches that fell back to the relay, by reason.",
    labelnames=["reason"],
    registry=REGISTRY,
)

COOKIES_DROPPED_TOTAL = Counter(
    "relay_cookies_dropped_total",
    "Inbound cookies withheld from the page, by reason.",
    labelnames=["reason"],
    registry=REGISTRY,
)

NODE_SWITCHES_TOTAL = Counter(
    "relay_node_switches_total",
    "Relay node switch attempts by result.",
    labelnames=["result"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# HTTP front-end metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "relay_http_server_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "relay_http_server_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "relay_http_server_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
