"""Observability for the relay client: structlog rendering, Prometheus
metrics, and request-ID middleware for the HTTP front end.
"""

from .logging import configure_logging, relay_context, request_id_ctx
from .metrics import metrics_text

__all__ = [
    "configure_logging",
    "metrics_text",
    "relay_context",
    "request_id_ctx",
]
