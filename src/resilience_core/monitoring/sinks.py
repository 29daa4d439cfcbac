"""Observability collaborators: metrics and alert sinks.

Sinks are fire-and-forget from the caller's point of view. Callers log and
drop sink errors; they never change the outcome of a guarded call.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Protocol

import structlog

from resilience_core.circuit_breaker.state import BreakerMetrics
from resilience_core.logging import StructuredLogger, log_info, log_warning


class Severity(StrEnum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CallSample:
    """One guarded call outcome as seen by the orchestrator."""

    dependency: str
    duration_ms: int
    success: bool
    status_code: int
    timestamp: datetime


class MetricsSink(Protocol):
    """Destination for call samples and breaker metric snapshots."""

    async def record_call(self, sample: CallSample) -> None:
        """Record one call outcome."""

    async def record_breaker_metrics(
        self, metrics: Mapping[str, BreakerMetrics]
    ) -> None:
        """Record one monitor sampling pass."""


class AlertSink(Protocol):
    """Destination for operator-facing alerts (Sentry-like ``capture_message``)."""

    async def capture_message(
        self,
        text: str,
        *,
        severity: Severity,
        tags: Mapping[str, str],
        extra: Mapping[str, object],
    ) -> None:
        """Raise one alert."""


class NullMetricsSink:
    """Metrics sink that discards everything."""

    async def record_call(self, sample: CallSample) -> None:
        del sample

    async def record_breaker_metrics(
        self, metrics: Mapping[str, BreakerMetrics]
    ) -> None:
        del metrics


class LoggingMetricsSink:
    """Metrics sink that writes samples as structured log events."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def record_call(self, sample: CallSample) -> None:
        log_info(
            self._logger,
            "resilience.call",
            dependency=sample.dependency,
            duration_ms=sample.duration_ms,
            success=sample.success,
            status_code=sample.status_code,
            timestamp=sample.timestamp.isoformat(),
        )

    async def record_breaker_metrics(
        self, metrics: Mapping[str, BreakerMetrics]
    ) -> None:
        for name, snapshot in metrics.items():
            log_info(
                self._logger,
                "resilience.breaker_metrics",
                dependency=name,
                state=str(snapshot.state),
                failure_count=snapshot.failure_count,
                total_requests=snapshot.total_requests,
                total_failures=snapshot.total_failures,
                failure_rate=round(snapshot.failure_rate, 4),
            )


class LoggingAlertSink:
    """Alert sink that writes alerts as warning log events."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def capture_message(
        self,
        text: str,
        *,
        severity: Severity,
        tags: Mapping[str, str],
        extra: Mapping[str, object],
    ) -> None:
        log_warning(
            self._logger,
            "resilience.alert",
            message=text,
            severity=str(severity),
            tags=dict(tags),
            extra=dict(extra),
        )
