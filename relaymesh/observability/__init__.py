"""
Observability module: Metrics and structured logging.
"""

from relaymesh.observability.metrics import MetricsCollector, Counter, Gauge, Histogram
from relaymesh.observability.logging import (
    StructuredLogger,
    LogLevel,
    log_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "StructuredLogger",
    "LogLevel",
    "log_context",
    "setup_logging",
]
