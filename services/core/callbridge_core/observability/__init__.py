"""Observability package for logging and metrics."""

from callbridge_core.observability.logging import (
    JsonFormatter,
    StructuredLogger,
    SyncContext,
    configure_logging,
    get_logger,
)
from callbridge_core.observability.metrics import (
    MetricsCollector,
    MetricsMonitoringSink,
    MonitoringSink,
    get_collector,
)

__all__ = [
    "StructuredLogger",
    "JsonFormatter",
    "SyncContext",
    "get_logger",
    "configure_logging",
    "MetricsCollector",
    "MetricsMonitoringSink",
    "MonitoringSink",
    "get_collector",
]
