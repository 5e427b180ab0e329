"""
OpenTelemetry Metrics

Data layer metrics: query/transaction timings, migration counts, imported
rows and dropped log writes. Recording is a no-op until init_metrics() runs.
"""

import logging
from typing import Optional, Dict, Any, Sequence

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

logger = logging.getLogger(__name__)

_provider: Optional[MeterProvider] = None
_meter: Optional[metrics.Meter] = None

_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

COUNTERS = {
    "migrations_applied_total": "Migration files applied",
    "log_write_failures_total": "Document store log entries dropped",
    "legacy_rows_imported_total": "Rows inserted by the legacy SQLite importer",
}

HISTOGRAMS = {
    "db_query_duration_seconds": "Database query duration",
    "db_transaction_duration_seconds": "Database transaction duration",
    "migration_duration_seconds": "Duration of a single migration file",
}


def init_metrics(
    service_name: str = "nova-data",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
    readers: Sequence[MetricReader] = (),
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics and register the data layer instruments.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds
        readers: Extra metric readers (an in-memory reader in tests)
    """
    global _provider, _meter

    all_readers = list(readers)

    if otlp_endpoint:
        all_readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        all_readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))

    _provider = MeterProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        metric_readers=all_readers,
    )
    metrics.set_meter_provider(_provider)

    # Bind to our provider even if a global one was already installed
    _meter = _provider.get_meter(service_name)

    for name, description in COUNTERS.items():
        _counters[name] = _meter.create_counter(name, description=description, unit="1")
    for name, description in HISTOGRAMS.items():
        _histograms[name] = _meter.create_histogram(name, description=description, unit="s")

    logger.info(f"OTel metrics initialized: {service_name}")
    return _meter


def shutdown_metrics() -> None:
    """Flush pending exports; short-lived commands call this before exit."""
    global _provider
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
    _counters.clear()
    _histograms.clear()


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("nova-data")
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric."""
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
