"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from tubeworker.observability.logging import (
    bind_context,
    clear_context,
    exception_message,
    setup_logging,
)
from tubeworker.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from tubeworker.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "exception_message",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
