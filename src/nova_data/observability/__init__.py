"""
Observability Module

Structured logging, OpenTelemetry tracing and metrics for the data layer.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_current_span,
    get_trace_id,
    create_span,
    shutdown_tracing,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
    shutdown_metrics,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "shutdown_tracing",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    "shutdown_metrics",
    # Logging
    "configure_logging",
]
