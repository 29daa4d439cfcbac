"""Producer bundle describing how to satisfy one guarded request."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class FallbackStrategy(Generic[T]):
    """Zero-argument async producers, one per degradation tier.

    Attributes:
        primary: Live call to the dependency. Runs through its breaker.
        fallback: Alternative implementation used when ``primary`` fails.
        cache: Lookup returning a cached value, or ``None`` on a miss.
        template: Static last-resort producer.
        cache_key: Request key for the orchestrator's cache store. When set,
            successful primary results are written under
            ``"<dependency>:<cache_key>"`` and, without a ``cache`` producer,
            read back from there.
    """

    primary: Operation[T]
    fallback: Operation[T] | None = None
    cache: Callable[[], Awaitable[T | None]] | None = None
    template: Operation[T] | None = None
    cache_key: str | None = None
