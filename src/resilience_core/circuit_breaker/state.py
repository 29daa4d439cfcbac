"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerMetrics:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker (dependency) name.
        state: Breaker state when the snapshot was taken.
        failure_count: Failures counted since the breaker last closed.
        success_count: Successes counted; probe successes while ``HALF_OPEN``.
        total_requests: Lifetime calls to ``execute``, rejected ones included.
        total_failures: Lifetime failures of the wrapped operation.
        last_failure_at: Timestamp of the last counted failure, if any.
        last_success_at: Timestamp of the last success, if any.
        next_attempt_at: When an ``OPEN`` breaker admits its next probe.
    """

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_requests: int
    total_failures: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    next_attempt_at: datetime | None

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_failures / self.total_requests
