"""Breaker health monitoring and observability sinks."""

from resilience_core.monitoring.monitor import ResilienceMonitor
from resilience_core.monitoring.sinks import (
    AlertSink,
    CallSample,
    LoggingAlertSink,
    LoggingMetricsSink,
    MetricsSink,
    NullMetricsSink,
    Severity,
)

__all__ = [
    "AlertSink",
    "CallSample",
    "LoggingAlertSink",
    "LoggingMetricsSink",
    "MetricsSink",
    "NullMetricsSink",
    "ResilienceMonitor",
    "Severity",
]
