"""Process-wide collection of circuit breakers keyed by dependency name."""

import threading
from collections.abc import Iterator, Mapping, Sequence

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerMetrics


def normalize_dependency_name(name: str) -> str:
    """Return the canonical registry key for a dependency name."""
    return name.strip().lower()


class BreakerRegistry:
    """Own exactly one ``CircuitBreaker`` per external dependency.

    Build one registry at application start and inject it wherever breakers
    are needed. Breakers are created lazily on first lookup, using the
    per-dependency config when one was supplied and ``default_config``
    otherwise. Names are matched case-insensitively, ignoring surrounding
    whitespace; breakers carry the normalized name.
    """

    def __init__(
        self,
        *,
        default_config: CircuitBreakerConfig | None = None,
        configs: Mapping[str, CircuitBreakerConfig] | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Create an empty registry.

        Args:
            default_config: Config for dependencies without an explicit entry.
            configs: Per-dependency breaker configs.
            listeners: Listener hooks attached to every breaker created here.
        """
        self._default_config = (
            CircuitBreakerConfig() if default_config is None else default_config
        )
        self._configs = {
            normalize_dependency_name(name): config
            for name, config in (configs or {}).items()
        }
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def _build(self, name: str, config: CircuitBreakerConfig | None) -> CircuitBreaker:
        if config is None:
            config = self._configs.get(name, self._default_config)
        return CircuitBreaker(name, config=config, listeners=self._listeners)

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use."""
        name = normalize_dependency_name(name)
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = self._build(name, None)
                self._breakers[name] = breaker
            return breaker

    def register(
        self, name: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """Eagerly create the breaker for ``name``.

        Raises:
            ValueError: If a breaker for ``name`` already exists.
        """
        name = normalize_dependency_name(name)
        with self._lock:
            if name in self._breakers:
                raise ValueError(f"breaker already registered: {name}")
            breaker = self._build(name, config)
            self._breakers[name] = breaker
            return breaker

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._breakers)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        name = normalize_dependency_name(name)
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def __iter__(self) -> Iterator[CircuitBreaker]:
        with self._lock:
            breakers = tuple(self._breakers.values())
        return iter(breakers)

    async def snapshot(self) -> dict[str, BreakerMetrics]:
        """Return current metrics for every registered breaker."""
        return {breaker.name: await breaker.get_metrics() for breaker in self}

    async def reset(self, name: str) -> None:
        """Reset one breaker.

        Raises:
            KeyError: If no breaker is registered for ``name``.
        """
        name = normalize_dependency_name(name)
        with self._lock:
            breaker = self._breakers[name]
        await breaker.reset()

    async def reset_all(self) -> None:
        for breaker in self:
            await breaker.reset()
