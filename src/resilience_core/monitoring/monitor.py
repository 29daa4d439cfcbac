"""Periodic sampler of circuit breaker health.

The monitor reads every breaker in a ``BreakerRegistry`` on a fixed cadence,
logs per-dependency failure rates, raises alerts when a breaker enters
``OPEN`` (high severity) or ``HALF_OPEN`` (medium severity, recovery under
test) and forwards each snapshot to a metrics sink.

Example:
    monitor = ResilienceMonitor(registry, alert_sink=alerts, interval=10.0)

    # In lifespan startup
    monitor.start()

    # In lifespan shutdown
    await monitor.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from types import TracebackType

import structlog

from resilience_core.circuit_breaker import (
    BreakerMetrics,
    BreakerRegistry,
    CircuitState,
)
from resilience_core.logging import (
    StructuredLogger,
    log_exception,
    log_info,
    log_warning,
)
from resilience_core.monitoring.sinks import (
    AlertSink,
    LoggingAlertSink,
    MetricsSink,
    Severity,
)
from resilience_core.retry import build_interruptible_sleep

_DEFAULT_INTERVAL = 10.0

_ALERT_SEVERITY: Mapping[CircuitState, Severity] = {
    CircuitState.OPEN: Severity.HIGH,
    CircuitState.HALF_OPEN: Severity.MEDIUM,
}


class ResilienceMonitor:
    """Running/stopped background sampler over a breaker registry."""

    def __init__(
        self,
        registry: BreakerRegistry,
        *,
        alert_sink: AlertSink | None = None,
        metrics_sink: MetricsSink | None = None,
        interval: float | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a stopped monitor.

        Args:
            registry: Breakers to sample.
            alert_sink: Alert destination. Defaults to a logging sink.
            metrics_sink: Optional destination for metric snapshots.
            interval: Seconds between sampling passes. When omitted, the
                shortest ``monitoring_period`` among the registered breakers
                is used on each pass.
            logger: Structured logger. Defaults to this module's structlog
                logger.
        """
        if interval is not None and interval <= 0:
            raise ValueError("interval must be > 0")
        self._registry = registry
        self._alert_sink = LoggingAlertSink() if alert_sink is None else alert_sink
        self._metrics_sink = metrics_sink
        self._interval = interval
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._observed: dict[str, CircuitState] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_interval(self) -> float:
        """Return the sampling interval for the next pass."""
        if self._interval is not None:
            return self._interval
        periods = [breaker.config.monitoring_period for breaker in self._registry]
        return min(periods) if periods else _DEFAULT_INTERVAL

    def start(self) -> None:
        """Start the sampling loop. A second call while running is a no-op."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event),
            name="resilience-monitor",
        )
        log_info(
            self._logger,
            "resilience_monitor.started",
            interval=self.current_interval(),
        )

    async def stop(self) -> None:
        """Stop the sampling loop and wait for it to exit. Safe when stopped."""
        task = self._task
        if task is None:
            return
        self._task = None
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        log_info(self._logger, "resilience_monitor.stopped")

    async def __aenter__(self) -> ResilienceMonitor:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _run(self, stop_event: asyncio.Event) -> None:
        sleep = build_interruptible_sleep(stop_event)
        while not stop_event.is_set():
            try:
                await self.sample()
            except Exception:
                log_exception(self._logger, "resilience_monitor.sample_failed")
            await sleep(self.current_interval())

    async def sample(self) -> dict[str, BreakerMetrics]:
        """Run one sampling pass and return the snapshot it observed."""
        metrics = await self._registry.snapshot()
        for name, snapshot in metrics.items():
            log_info(
                self._logger,
                "resilience_monitor.breaker",
                dependency=name,
                state=str(snapshot.state),
                failure_rate=round(snapshot.failure_rate, 4),
                total_requests=snapshot.total_requests,
                total_failures=snapshot.total_failures,
            )
            await self._alert_on_transition(snapshot)

        if self._metrics_sink is not None:
            try:
                await self._metrics_sink.record_breaker_metrics(metrics)
            except Exception as exc:
                log_warning(
                    self._logger,
                    "resilience_monitor.metrics_failed",
                    error=str(exc) or exc.__class__.__name__,
                )
        return metrics

    async def _alert_on_transition(self, snapshot: BreakerMetrics) -> None:
        # One alert per entry into OPEN or HALF_OPEN, not one per tick.
        previous = self._observed.get(snapshot.name, CircuitState.CLOSED)
        self._observed[snapshot.name] = snapshot.state
        if snapshot.state == previous:
            return
        severity = _ALERT_SEVERITY.get(snapshot.state)
        if severity is None:
            return

        if snapshot.state == CircuitState.OPEN:
            text = f"Circuit breaker OPEN for {snapshot.name}"
        else:
            text = f"Circuit breaker HALF_OPEN for {snapshot.name} (testing recovery)"
        try:
            await self._alert_sink.capture_message(
                text,
                severity=severity,
                tags={"dependency": snapshot.name, "state": str(snapshot.state)},
                extra={
                    "failure_count": snapshot.failure_count,
                    "total_requests": snapshot.total_requests,
                    "total_failures": snapshot.total_failures,
                    "failure_rate": snapshot.failure_rate,
                    "next_attempt_at": (
                        None
                        if snapshot.next_attempt_at is None
                        else snapshot.next_attempt_at.isoformat()
                    ),
                },
            )
        except Exception as exc:
            log_warning(
                self._logger,
                "resilience_monitor.alert_failed",
                dependency=snapshot.name,
                error=str(exc) or exc.__class__.__name__,
            )
