"""
Operator entry points: schema migrations and the legacy data import.
"""

import os

from .. import __version__
from ..config import env_bool
from ..observability import (
    configure_logging,
    init_metrics,
    init_tracing,
    shutdown_metrics,
    shutdown_tracing,
)

SERVICE_NAME = "nova-data"


def configure_cli_observability() -> bool:
    """
    Set up logging, and OpenTelemetry when it is enabled, for a command line run.

    Reads LOG_LEVEL, LOG_STRUCTURED, OTEL_ENABLED, OTEL_EXPORTER_OTLP_ENDPOINT
    and OTEL_CONSOLE_EXPORT. Returns True when tracing and metrics were
    initialized.
    """
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=env_bool("LOG_STRUCTURED", True),
        service_name=SERVICE_NAME,
    )

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    console_export = env_bool("OTEL_CONSOLE_EXPORT", False)
    if not (env_bool("OTEL_ENABLED", False) or otlp_endpoint):
        return False

    init_tracing(
        service_name=SERVICE_NAME,
        service_version=__version__,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    init_metrics(
        service_name=SERVICE_NAME,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    return True


def shutdown_cli_observability() -> None:
    """Flush spans and metrics before the process exits."""
    shutdown_tracing()
    shutdown_metrics()
