"""Tiered degradation for calls to unreliable external dependencies."""

import time
from collections.abc import Mapping, Sized
from datetime import UTC, datetime
from typing import TypeVar, cast

import structlog

from resilience_core.circuit_breaker import (
    BreakerRegistry,
    CircuitOpenError,
    normalize_dependency_name,
)
from resilience_core.fallback.cache import CacheStore
from resilience_core.fallback.exceptions import AllStrategiesFailedError
from resilience_core.fallback.result import FallbackResult, ResultSource
from resilience_core.fallback.strategy import FallbackStrategy
from resilience_core.logging import (
    StructuredLogger,
    log_error,
    log_info,
    log_warning,
)
from resilience_core.monitoring.sinks import (
    AlertSink,
    CallSample,
    MetricsSink,
    Severity,
)

T = TypeVar("T")

_STATUS_OK = 200
_STATUS_FAILED = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _monotonic() -> float:
    return time.monotonic()


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, Sized):
        return len(value) == 0
    return False


def _describe(error: BaseException) -> str:
    message = str(error)
    return message if message else error.__class__.__name__


class FallbackOrchestrator:
    """Satisfy a request from the most trustworthy tier that works.

    Tiers run in a fixed order and the first success wins: cache, the primary
    call through the dependency's circuit breaker, the fallback
    implementation, then the static template. Cache, metrics and logging
    failures are swallowed; when no tier produces data the call fails with
    ``AllStrategiesFailedError``.
    """

    def __init__(
        self,
        registry: BreakerRegistry,
        *,
        cache_store: CacheStore | None = None,
        metrics_sink: MetricsSink | None = None,
        alert_sink: AlertSink | None = None,
        cache_ttls: Mapping[str, float] | None = None,
        default_cache_ttl: float = 3600.0,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an orchestrator.

        Args:
            registry: Source of the per-dependency circuit breakers.
            cache_store: Optional shared result cache.
            metrics_sink: Optional destination for per-call samples.
            alert_sink: Optional destination for a critical alert when every
                strategy failed.
            cache_ttls: Cache TTL in seconds per dependency.
            default_cache_ttl: TTL for dependencies missing from ``cache_ttls``.
            logger: Structured logger. Defaults to this module's structlog
                logger.
        """
        if default_cache_ttl <= 0:
            raise ValueError("default_cache_ttl must be > 0")
        self._registry = registry
        self._cache_store = cache_store
        self._metrics_sink = metrics_sink
        self._alert_sink = alert_sink
        self._cache_ttls = {
            normalize_dependency_name(name): ttl
            for name, ttl in (cache_ttls or {}).items()
        }
        self._default_cache_ttl = default_cache_ttl
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    def cache_ttl(self, dependency: str) -> float:
        return self._cache_ttls.get(
            normalize_dependency_name(dependency), self._default_cache_ttl
        )

    def _store_key(self, dependency: str, strategy: FallbackStrategy[T]) -> str | None:
        if self._cache_store is None or strategy.cache_key is None:
            return None
        return f"{dependency}:{strategy.cache_key}"

    async def _read_cache(
        self, dependency: str, strategy: FallbackStrategy[T]
    ) -> object | None:
        key = self._store_key(dependency, strategy)
        try:
            if strategy.cache is not None:
                return await strategy.cache()
            if key is not None and self._cache_store is not None:
                return await self._cache_store.get(key)
        except Exception as exc:
            log_warning(
                self._logger,
                "fallback.cache_read_failed",
                dependency=dependency,
                error=_describe(exc),
            )
        return None

    async def _write_cache(
        self, dependency: str, strategy: FallbackStrategy[T], value: T
    ) -> None:
        key = self._store_key(dependency, strategy)
        if key is None or self._cache_store is None:
            return
        try:
            await self._cache_store.set(key, value, self.cache_ttl(dependency))
        except Exception as exc:
            log_warning(
                self._logger,
                "fallback.cache_write_failed",
                dependency=dependency,
                error=_describe(exc),
            )

    async def _emit_sample(self, dependency: str, start: float, success: bool) -> None:
        if self._metrics_sink is None:
            return
        sample = CallSample(
            dependency=dependency,
            duration_ms=self._elapsed_ms(start),
            success=success,
            status_code=_STATUS_OK if success else _STATUS_FAILED,
            timestamp=_utcnow(),
        )
        try:
            await self._metrics_sink.record_call(sample)
        except Exception as exc:
            log_warning(
                self._logger,
                "fallback.metrics_failed",
                dependency=dependency,
                error=_describe(exc),
            )

    async def _alert_all_failed(
        self, dependency: str, errors: Mapping[str, BaseException]
    ) -> None:
        if self._alert_sink is None:
            return
        try:
            await self._alert_sink.capture_message(
                f"All fallback strategies failed for {dependency}",
                severity=Severity.CRITICAL,
                tags={"dependency": dependency},
                extra={tier: _describe(error) for tier, error in errors.items()},
            )
        except Exception as exc:
            log_warning(
                self._logger,
                "fallback.alert_failed",
                dependency=dependency,
                error=_describe(exc),
            )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return max(int((_monotonic() - start) * 1000), 0)

    async def execute_with_fallback(
        self, dependency: str, strategy: FallbackStrategy[T]
    ) -> FallbackResult[T]:
        """Run ``strategy`` for ``dependency`` and tag the result with its tier.

        Raises:
            AllStrategiesFailedError: When primary, fallback and template (each
                when present) all failed.
        """
        dependency = normalize_dependency_name(dependency)
        start = _monotonic()
        with structlog.contextvars.bound_contextvars(dependency=dependency):
            return await self._run(dependency, strategy, start)

    async def _run(
        self, dependency: str, strategy: FallbackStrategy[T], start: float
    ) -> FallbackResult[T]:
        cached = await self._read_cache(dependency, strategy)
        if not _is_empty(cached):
            log_info(self._logger, "fallback.cache_hit", dependency=dependency)
            return FallbackResult.from_source(
                cast(T, cached),
                ResultSource.CACHE,
                dependency=dependency,
                latency_ms=self._elapsed_ms(start),
            )

        errors: dict[str, BaseException] = {}
        breaker = self._registry.get(dependency)
        try:
            data = await breaker.execute(strategy.primary)
        except Exception as exc:
            primary_error: Exception = exc
            errors["primary"] = exc
            await self._emit_sample(dependency, start, success=False)
            log_warning(
                self._logger,
                "fallback.primary_failed",
                dependency=dependency,
                error=_describe(exc),
                error_type=exc.__class__.__name__,
                circuit_open=isinstance(exc, CircuitOpenError),
            )
        else:
            await self._write_cache(dependency, strategy, data)
            await self._emit_sample(dependency, start, success=True)
            return FallbackResult.from_source(
                data,
                ResultSource.PRIMARY,
                dependency=dependency,
                latency_ms=self._elapsed_ms(start),
            )

        if strategy.fallback is not None:
            try:
                data = await strategy.fallback()
            except Exception as exc:
                errors["fallback"] = exc
                log_error(
                    self._logger,
                    "fallback.fallback_failed",
                    dependency=dependency,
                    error=_describe(exc),
                    error_type=exc.__class__.__name__,
                )
            else:
                log_info(self._logger, "fallback.served_fallback", dependency=dependency)
                return FallbackResult.from_source(
                    data,
                    ResultSource.FALLBACK,
                    dependency=dependency,
                    latency_ms=self._elapsed_ms(start),
                    error=_describe(primary_error),
                )

        if strategy.template is not None:
            try:
                data = await strategy.template()
            except Exception as exc:
                errors["template"] = exc
                log_error(
                    self._logger,
                    "fallback.template_failed",
                    dependency=dependency,
                    error=_describe(exc),
                )
            else:
                log_warning(
                    self._logger, "fallback.served_template", dependency=dependency
                )
                return FallbackResult.from_source(
                    data,
                    ResultSource.TEMPLATE,
                    dependency=dependency,
                    latency_ms=self._elapsed_ms(start),
                    error=f"All live strategies failed for {dependency}; using template",
                )

        log_error(
            self._logger,
            "fallback.all_strategies_failed",
            dependency=dependency,
            tiers=list(errors),
        )
        await self._alert_all_failed(dependency, errors)
        last_error = list(errors.values())[-1]
        raise AllStrategiesFailedError(dependency, errors) from last_error
