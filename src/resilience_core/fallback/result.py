"""Tagged, quality-scored results returned by the fallback orchestrator."""

from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Generic, TypeVar

T = TypeVar("T")


class ResultSource(StrEnum):
    """Degradation tier that produced a result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    CACHE = "cache"
    TEMPLATE = "template"


SOURCE_QUALITY = MappingProxyType(
    {
        ResultSource.PRIMARY: 1.0,
        ResultSource.CACHE: 0.9,
        ResultSource.FALLBACK: 0.7,
        ResultSource.TEMPLATE: 0.5,
    }
)


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Result of one orchestrated call.

    ``quality`` is a fixed policy value per ``source`` that tells consumers how
    far to trust the data; it is not a measured score.
    """

    data: T
    source: ResultSource
    quality: float
    latency_ms: int
    dependency: str
    error: str | None = None

    @classmethod
    def from_source(
        cls,
        data: T,
        source: ResultSource,
        *,
        dependency: str,
        latency_ms: int,
        error: str | None = None,
    ) -> "FallbackResult[T]":
        return cls(
            data=data,
            source=source,
            quality=SOURCE_QUALITY[source],
            latency_ms=latency_ms,
            dependency=dependency,
            error=error,
        )

    @property
    def is_degraded(self) -> bool:
        return self.source is not ResultSource.PRIMARY
