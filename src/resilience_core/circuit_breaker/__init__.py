"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Each ``CircuitBreaker`` owns its state; one instance per dependency is
    shared by all callers, usually obtained from a ``BreakerRegistry``.
  - Half-open probing is intentionally conservative: at most one in-flight
    probe call is permitted per breaker. Other callers are rejected with
    ``CircuitOpenError(retry_after=0.0)`` until the probe resolves.
  - A single probe failure reopens the breaker. ``success_threshold``
    consecutive probe successes close it.
  - The breaker never retries, sleeps or swallows the wrapped operation's
    errors.
"""

from resilience_core.circuit_breaker.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
)
from resilience_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.registry import (
    BreakerRegistry,
    normalize_dependency_name,
)
from resilience_core.circuit_breaker.state import BreakerMetrics, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerMetrics",
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "normalize_dependency_name",
]
