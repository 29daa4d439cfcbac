from __future__ import annotations

import pytest

import resilience_core.circuit_breaker.breaker as breaker_mod
from tests.resilience_core.support.fakes import FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive breaker timing from a controllable clock."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    monkeypatch.setattr(breaker_mod, "_monotonic", clock.monotonic)
    return clock
