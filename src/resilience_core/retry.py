from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base

from resilience_core.errors import TransientError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and backoff boundaries."""

    attempts: int | None
    min_seconds: float
    max_seconds: float

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_exponential_jitter_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff."""
    options: dict[str, Any] = {
        "retry": retry,
        "wait": wait_exponential_jitter(
            initial=policy.min_seconds,
            max=policy.max_seconds,
        ),
        "stop": (
            stop_never
            if policy.attempts is None
            else stop_after_attempt(policy.attempts)
        ),
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)


def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryBackoffPolicy,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> Callable[[], Awaitable[T]]:
    """Wrap a zero-argument operation so it retries its own transient errors.

    Circuit breakers never retry. Wrap the operation before handing it to a
    breaker and the breaker sees one outcome per exhausted retry sequence.
    The last error is re-raised unchanged.
    """

    async def _retrying_operation() -> T:
        retrying = build_exponential_jitter_retrying(
            retry=retry_if_exception_type(retry_on),
            policy=policy,
            sleep=sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise AssertionError("unreachable: tenacity re-raises after last attempt")

    return _retrying_operation
