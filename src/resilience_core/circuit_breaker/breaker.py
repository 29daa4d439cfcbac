"""Core circuit breaker implementation."""

import asyncio
import sys
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import ParamSpec, TypeVar

import structlog

from resilience_core.circuit_breaker.exceptions import CircuitOpenError
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerMetrics, CircuitState
from resilience_core.logging import StructuredLogger, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_LEGAL_TRANSITIONS = frozenset(
    {
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        (CircuitState.HALF_OPEN, CircuitState.OPEN),
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _monotonic() -> float:
    return time.monotonic()


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        recovery_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        success_threshold: Consecutive probe successes in ``HALF_OPEN`` that
            close the breaker.
        monitoring_period: Sampling cadence hint for monitors. Not enforced by
            the breaker itself.
        excluded_exceptions: Exceptions that propagate without counting as
            failures.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 2
    monitoring_period: float = 10.0
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.monitoring_period <= 0:
            raise ValueError("monitoring_period must be > 0")


class CircuitBreaker:
    """Stateful proxy around one unreliable async dependency.

    One instance is shared by every caller of the dependency. All reads and
    writes of the state and counters happen under a per-breaker lock, which is
    never held while the wrapped operation runs. While ``HALF_OPEN`` at most
    one probe call is in flight; concurrent callers are rejected with
    ``CircuitOpenError(retry_after=0.0)`` until the probe resolves.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Dependency name used in errors, metrics and logs.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            logger: Structured logger. Defaults to this module's structlog
                logger.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._async_lock = asyncio.Lock()
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._total_failures = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._next_attempt_at: datetime | None = None
        self._probe_token: object | None = None

    @property
    def state(self) -> CircuitState:
        """Current state, read without taking the lock."""
        return self._state

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        if self._thread_lock is None:
            await self._async_lock.acquire()
            try:
                yield
            finally:
                self._async_lock.release()
            return

        self._thread_lock.acquire()
        try:
            await self._async_lock.acquire()
        except BaseException:
            self._thread_lock.release()
            raise
        try:
            yield
        finally:
            self._async_lock.release()
            self._thread_lock.release()

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    def _transition(self, new: CircuitState) -> tuple[CircuitState, CircuitState]:
        # Caller must hold the breaker lock.
        old = self._state
        if (old, new) not in _LEGAL_TRANSITIONS:
            raise RuntimeError(f"illegal circuit transition {old} -> {new}")
        self._state = new
        fields: dict[str, object] = {
            "breaker": self.name,
            "old_state": str(old),
            "new_state": str(new),
            "failure_count": self._failure_count,
        }
        if new == CircuitState.OPEN:
            fields["next_attempt_at"] = (
                None
                if self._next_attempt_at is None
                else self._next_attempt_at.isoformat()
            )
            log_warning(self._logger, "circuit_breaker.opened", **fields)
        elif new == CircuitState.HALF_OPEN:
            log_info(self._logger, "circuit_breaker.half_open", **fields)
        else:
            log_info(self._logger, "circuit_breaker.closed", **fields)
        return old, new

    def _trip(self, now: datetime) -> tuple[CircuitState, CircuitState]:
        self._next_attempt_at = now + timedelta(seconds=self.config.recovery_timeout)
        return self._transition(CircuitState.OPEN)

    def _retry_after(self, now: datetime) -> float:
        if self._next_attempt_at is None:
            return 0.0
        return max((self._next_attempt_at - now).total_seconds(), 0.0)

    def _release_probe(self, token: object) -> None:
        if self._thread_lock is None:
            if self._probe_token is token:
                self._probe_token = None
            return
        with self._thread_lock:
            if self._probe_token is token:
                self._probe_token = None

    async def _admit(self) -> object | None:
        """Count the request and decide whether it may run.

        Returns:
            A probe token when the call is admitted as the half-open probe,
            ``None`` for an ordinary call while ``CLOSED``.

        Raises:
            CircuitOpenError: When the call is rejected.
        """
        rejection: CircuitOpenError | None = None
        transition: tuple[CircuitState, CircuitState] | None = None
        token: object | None = None

        async with self._locked():
            self._total_requests += 1
            if self._state == CircuitState.OPEN:
                retry_after = self._retry_after(_utcnow())
                if retry_after > 0:
                    rejection = CircuitOpenError(self.name, retry_after=retry_after)
                else:
                    transition = self._transition(CircuitState.HALF_OPEN)
                    self._success_count = 0

            if rejection is None and self._state == CircuitState.HALF_OPEN:
                if self._probe_token is not None:
                    rejection = CircuitOpenError(self.name, retry_after=0.0)
                else:
                    token = object()
                    self._probe_token = token

        if transition is not None:
            await self._emit_state_change(*transition)
        if rejection is not None:
            await self._emit_call_rejected()
            raise rejection
        return token

    async def _on_success(self, token: object | None, elapsed: float) -> None:
        transition: tuple[CircuitState, CircuitState] | None = None
        async with self._locked():
            self._last_success_at = _utcnow()
            is_probe = token is not None and self._probe_token is token
            if is_probe:
                self._probe_token = None
                self._success_count += 1
                if (
                    self._state == CircuitState.HALF_OPEN
                    and self._success_count >= self.config.success_threshold
                ):
                    transition = self._transition(CircuitState.CLOSED)
                    self._failure_count = 0
            elif self._state != CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._state == CircuitState.CLOSED:
                    self._failure_count = 0

        await self._emit_call_succeeded(elapsed)
        if transition is not None:
            await self._emit_state_change(*transition)

    async def _on_failure(
        self, token: object | None, exc: Exception, elapsed: float
    ) -> None:
        transition: tuple[CircuitState, CircuitState] | None = None
        async with self._locked():
            now = _utcnow()
            self._last_failure_at = now
            self._failure_count += 1
            self._total_failures += 1
            is_probe = token is not None and self._probe_token is token
            if is_probe:
                self._probe_token = None
                if self._state == CircuitState.HALF_OPEN:
                    transition = self._trip(now)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                transition = self._trip(now)

        await self._emit_call_failed(exc, elapsed)
        if transition is not None:
            await self._emit_state_change(*transition)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a zero-argument async operation under breaker protection."""
        return await self.call(operation)

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Unreliable async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open, or a half-open probe is
                already in flight, and the call is rejected. ``func`` is not
                invoked in that case.
            Exception: The original exception from ``func`` when it is
                attempted and fails.
        """
        token = await self._admit()

        start = _monotonic()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            raise
        except Exception as exc:
            elapsed = max(_monotonic() - start, 0.0)
            await self._on_failure(token, exc, elapsed)
            raise
        else:
            elapsed = max(_monotonic() - start, 0.0)
            await self._on_success(token, elapsed)
            return result
        finally:
            if token is not None:
                self._release_probe(token)

    async def get_metrics(self) -> BreakerMetrics:
        """Return an immutable snapshot of the breaker state and counters."""
        async with self._locked():
            return BreakerMetrics(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                total_requests=self._total_requests,
                total_failures=self._total_failures,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                next_attempt_at=self._next_attempt_at,
            )

    async def reset(self) -> None:
        """Force the breaker back to a pristine ``CLOSED`` state.

        Administrative override: every counter, lifetime ones included, is
        zeroed and any in-flight probe stops counting toward recovery.
        """
        async with self._locked():
            old = self._state
            self._clear()
        log_info(
            self._logger,
            "circuit_breaker.reset",
            breaker=self.name,
            old_state=str(old),
        )
        if old != CircuitState.CLOSED:
            await self._emit_state_change(old, CircuitState.CLOSED)
