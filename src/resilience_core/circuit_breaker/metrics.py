"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilience_core.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Listener errors are swallowed by the breaker; a broken listener never
        changes the outcome of a guarded call.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""
