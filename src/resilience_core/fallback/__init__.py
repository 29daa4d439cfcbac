"""Tiered fallback orchestration.

``FallbackOrchestrator.execute_with_fallback`` tries, in order: cache, the
breaker-guarded primary call, the fallback implementation, and a static
template. Results carry their ``source`` tier and a fixed ``quality`` score
so consumers can tell degraded answers from live ones.
"""

from resilience_core.fallback.cache import CacheStore, InMemoryCacheStore
from resilience_core.fallback.exceptions import AllStrategiesFailedError
from resilience_core.fallback.orchestrator import FallbackOrchestrator
from resilience_core.fallback.result import (
    SOURCE_QUALITY,
    FallbackResult,
    ResultSource,
)
from resilience_core.fallback.strategy import FallbackStrategy

__all__ = [
    "SOURCE_QUALITY",
    "AllStrategiesFailedError",
    "CacheStore",
    "FallbackOrchestrator",
    "FallbackResult",
    "FallbackStrategy",
    "InMemoryCacheStore",
    "ResultSource",
]
