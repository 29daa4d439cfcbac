import asyncio
from dataclasses import dataclass, field

import pytest

import resilience_core.circuit_breaker.breaker as breaker_mod
from resilience_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from tests.resilience_core.support.fakes import CountingOperation, FakeClock, FakeLogger

pytestmark = pytest.mark.asyncio


@dataclass(slots=True)
class _RecordingListener:
    events: list[tuple[str, object]] = field(default_factory=list)

    async def on_state_change(self, name: str, old: CircuitState, new: CircuitState):
        self.events.append(("state", (name, old, new)))

    async def on_call_rejected(self, name: str):
        self.events.append(("rejected", name))

    async def on_call_succeeded(self, name: str, elapsed: float):
        self.events.append(("succeeded", name))

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float):
        self.events.append(("failed", (name, exc.__class__.__name__)))


@dataclass(slots=True)
class _ExplodingListener:
    async def on_state_change(self, name: str, old: CircuitState, new: CircuitState):
        raise RuntimeError("boom")

    async def on_call_rejected(self, name: str):
        raise RuntimeError("boom")

    async def on_call_succeeded(self, name: str, elapsed: float):
        raise RuntimeError("boom")

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float):
        raise RuntimeError("boom")


def _breaker(
    *,
    failure_threshold: int = 3,
    recovery_timeout: float = 60.0,
    success_threshold: int = 2,
    **kwargs: object,
) -> CircuitBreaker:
    return CircuitBreaker(
        "serper",
        config=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            success_threshold=success_threshold,
        ),
        **kwargs,  # type: ignore[arg-type]
    )


async def _fail_times(breaker: CircuitBreaker, count: int) -> None:
    failing = CountingOperation(error=RuntimeError("Serper API error: 503"))
    for _ in range(count):
        with pytest.raises(RuntimeError, match="503"):
            await breaker.execute(failing)


async def test_closed_call_succeeds_and_stays_closed() -> None:
    breaker = _breaker()
    operation = CountingOperation(result={"organic": []})

    assert await breaker.execute(operation) == {"organic": []}

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.failure_count == 0
    assert metrics.total_requests == 1
    assert metrics.last_success_at is not None
    assert operation.calls == 1


async def test_call_forwards_arguments() -> None:
    breaker = _breaker()

    async def _search(keyword: str, *, num: int) -> str:
        return f"{keyword}:{num}"

    assert await breaker.call(_search, "seo tools", num=10) == "seo tools:10"


async def test_failure_threshold_opens_breaker(fake_clock: FakeClock) -> None:
    breaker = _breaker(failure_threshold=3)

    await _fail_times(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    await _fail_times(breaker, 1)

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.OPEN
    assert metrics.failure_count == 3
    assert metrics.total_failures == 3
    assert metrics.next_attempt_at is not None
    assert (metrics.next_attempt_at - fake_clock.now()).total_seconds() == 60.0


async def test_success_while_closed_erases_failure_history() -> None:
    breaker = _breaker(failure_threshold=3)

    await _fail_times(breaker, 2)
    await breaker.execute(CountingOperation())
    await _fail_times(breaker, 2)

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.failure_count == 2


async def test_open_breaker_rejects_without_invoking_operation(
    fake_clock: FakeClock,
) -> None:
    breaker = _breaker(failure_threshold=1, recovery_timeout=60.0)
    await _fail_times(breaker, 1)

    fake_clock.advance(10.0)
    operation = CountingOperation()
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(operation)

    assert operation.calls == 0
    assert excinfo.value.breaker_name == "serper"
    assert excinfo.value.retry_after == pytest.approx(50.0)
    metrics = await breaker.get_metrics()
    assert metrics.total_requests == 2
    assert metrics.total_failures == 1


async def test_documented_recovery_scenario(fake_clock: FakeClock) -> None:
    breaker = _breaker(failure_threshold=3, recovery_timeout=60.0, success_threshold=2)
    await _fail_times(breaker, 3)
    assert breaker.state == CircuitState.OPEN

    fake_clock.advance(10.0)
    rejected = CountingOperation()
    with pytest.raises(CircuitOpenError):
        await breaker.execute(rejected)
    assert rejected.calls == 0

    fake_clock.advance(51.0)
    probe = CountingOperation(result="recovered")
    assert await breaker.execute(probe) == "recovered"
    assert probe.calls == 1
    assert breaker.state == CircuitState.HALF_OPEN

    assert await breaker.execute(probe) == "recovered"
    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.failure_count == 0
    assert probe.calls == 2


async def test_single_half_open_failure_reopens(fake_clock: FakeClock) -> None:
    breaker = _breaker(failure_threshold=1, recovery_timeout=5.0, success_threshold=3)
    await _fail_times(breaker, 1)

    fake_clock.advance(5.0)
    await breaker.execute(CountingOperation())
    await breaker.execute(CountingOperation())
    assert (await breaker.get_metrics()).success_count == 2

    await _fail_times(breaker, 1)

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.OPEN
    assert metrics.next_attempt_at is not None
    assert (metrics.next_attempt_at - fake_clock.now()).total_seconds() == 5.0

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(CountingOperation())
    assert excinfo.value.retry_after == pytest.approx(5.0)


async def test_entering_half_open_resets_success_count(fake_clock: FakeClock) -> None:
    breaker = _breaker(failure_threshold=1, recovery_timeout=1.0)
    await breaker.execute(CountingOperation())
    await breaker.execute(CountingOperation())
    await _fail_times(breaker, 1)

    fake_clock.advance(1.0)
    await breaker.execute(CountingOperation())

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.HALF_OPEN
    assert metrics.success_count == 1


async def test_half_open_allows_single_probe_and_rejects_concurrent() -> None:
    breaker = _breaker(failure_threshold=1, recovery_timeout=0.0, success_threshold=1)
    await _fail_times(breaker, 1)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _probe() -> str:
        started.set()
        await release.wait()
        return "ok"

    task = asyncio.create_task(breaker.execute(_probe))
    await started.wait()

    concurrent = CountingOperation()
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(concurrent)
    assert excinfo.value.retry_after == 0.0
    assert concurrent.calls == 0

    release.set()
    assert await task == "ok"
    assert breaker.state == CircuitState.CLOSED

    assert await breaker.execute(concurrent) == "ok"
    assert concurrent.calls == 1


async def test_concurrent_failures_trip_breaker_once() -> None:
    listener = _RecordingListener()
    breaker = _breaker(failure_threshold=2, listeners=[listener])
    gate = asyncio.Event()
    entered = 0

    async def _slow_fail() -> None:
        nonlocal entered
        entered += 1
        await gate.wait()
        raise RuntimeError("timeout")

    tasks = [asyncio.create_task(breaker.execute(_slow_fail)) for _ in range(5)]
    while entered < 5:
        await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, RuntimeError) for result in results)
    opened = [
        event
        for event in listener.events
        if event == ("state", ("serper", CircuitState.CLOSED, CircuitState.OPEN))
    ]
    assert len(opened) == 1
    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.OPEN
    assert metrics.total_failures == 5


async def test_operation_error_is_propagated_unchanged() -> None:
    breaker = _breaker()
    error = ValueError("bad payload")

    with pytest.raises(ValueError) as excinfo:
        await breaker.execute(CountingOperation(error=error))

    assert excinfo.value is error


async def test_excluded_exception_is_not_counted() -> None:
    class _NotFound(Exception):
        pass

    breaker = CircuitBreaker(
        "firecrawl",
        config=CircuitBreakerConfig(
            failure_threshold=1,
            excluded_exceptions=(_NotFound,),
        ),
    )

    with pytest.raises(_NotFound):
        await breaker.execute(CountingOperation(error=_NotFound("404")))

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.total_failures == 0
    assert metrics.total_requests == 1


async def test_excluded_exception_during_probe_frees_probe_slot(
    fake_clock: FakeClock,
) -> None:
    class _NotFound(Exception):
        pass

    breaker = CircuitBreaker(
        "firecrawl",
        config=CircuitBreakerConfig(
            failure_threshold=1,
            recovery_timeout=5.0,
            success_threshold=1,
            excluded_exceptions=(_NotFound,),
        ),
    )
    await _fail_times(breaker, 1)
    fake_clock.advance(5.0)

    with pytest.raises(_NotFound):
        await breaker.execute(CountingOperation(error=_NotFound("404")))
    assert breaker.state == CircuitState.HALF_OPEN

    assert await breaker.execute(CountingOperation()) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_cancelled_probe_frees_probe_slot() -> None:
    breaker = _breaker(failure_threshold=1, recovery_timeout=0.0, success_threshold=1)
    await _fail_times(breaker, 1)
    started = asyncio.Event()

    async def _hang() -> None:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.execute(_hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.execute(CountingOperation()) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_reset_returns_pristine_closed_breaker(fake_clock: FakeClock) -> None:
    listener = _RecordingListener()
    breaker = _breaker(failure_threshold=1, listeners=[listener])
    await breaker.execute(CountingOperation())
    await _fail_times(breaker, 1)
    listener.events.clear()

    await breaker.reset()

    metrics = await breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.failure_count == 0
    assert metrics.success_count == 0
    assert metrics.total_requests == 0
    assert metrics.total_failures == 0
    assert metrics.next_attempt_at is None
    assert listener.events == [
        ("state", ("serper", CircuitState.OPEN, CircuitState.CLOSED))
    ]


async def test_transitions_are_logged(
    fake_clock: FakeClock, fake_logger: FakeLogger
) -> None:
    breaker = _breaker(
        failure_threshold=1,
        recovery_timeout=1.0,
        success_threshold=1,
        logger=fake_logger,
    )
    await _fail_times(breaker, 1)
    fake_clock.advance(1.0)
    await breaker.execute(CountingOperation())

    assert fake_logger.events == [
        "circuit_breaker.opened",
        "circuit_breaker.half_open",
        "circuit_breaker.closed",
    ]
    level, _, fields = fake_logger.calls[0]
    assert level == "warning"
    assert fields["breaker"] == "serper"


async def test_listener_exceptions_are_swallowed() -> None:
    recording = _RecordingListener()
    breaker = _breaker(
        failure_threshold=1,
        recovery_timeout=10.0,
        listeners=[_ExplodingListener(), recording],
    )

    assert await breaker.execute(CountingOperation()) == "ok"
    await _fail_times(breaker, 1)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(CountingOperation())

    assert ("succeeded", "serper") in recording.events
    assert ("failed", ("serper", "RuntimeError")) in recording.events
    assert (
        "state",
        ("serper", CircuitState.CLOSED, CircuitState.OPEN),
    ) in recording.events
    assert ("rejected", "serper") in recording.events


async def test_config_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError, match="recovery_timeout"):
        CircuitBreakerConfig(recovery_timeout=-1.0)
    with pytest.raises(ValueError, match="success_threshold"):
        CircuitBreakerConfig(success_threshold=0)
    with pytest.raises(ValueError, match="monitoring_period"):
        CircuitBreakerConfig(monitoring_period=0.0)


async def test_breaker_uses_thread_lock_when_gil_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "resilience_core.circuit_breaker.breaker.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    breaker = _breaker(failure_threshold=1)

    assert breaker._thread_lock is not None
    await _fail_times(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker._thread_lock.locked() is False


async def test_failure_rate_in_metrics() -> None:
    breaker = _breaker(failure_threshold=10)
    await breaker.execute(CountingOperation())
    await _fail_times(breaker, 1)
    await breaker.execute(CountingOperation())
    await breaker.execute(CountingOperation())

    metrics = await breaker.get_metrics()
    assert metrics.failure_rate == pytest.approx(0.25)


async def test_module_clock_is_timezone_aware() -> None:
    assert breaker_mod._utcnow().tzinfo is not None
