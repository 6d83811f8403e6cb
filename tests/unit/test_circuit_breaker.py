import pytest

from app.errors import AppError, ErrorKind
from app.models.domain.recovery_domain import CircuitStateName
from app.services.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitOpenError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _ok():
    return "ok"


async def _boom():
    raise RuntimeError("boom")


async def _fallback():
    return "fallback"


def _breaker(clock=None, **kwargs) -> CircuitBreaker:
    options = {"failure_threshold": 3, "recovery_timeout": 60, "half_open_max_calls": 2}
    options.update(kwargs)
    return CircuitBreaker("github", clock=clock or FakeClock(), **options)


async def _fail_times(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(_boom)


@pytest.mark.asyncio
async def test_opens_after_threshold_failures():
    breaker = _breaker()

    await _fail_times(breaker, 2)
    assert breaker.state is CircuitStateName.CLOSED

    await _fail_times(breaker, 1)
    assert breaker.state is CircuitStateName.OPEN
    assert breaker.failure_count == 3
    assert breaker.last_failure_time is not None


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = _breaker()
    await _fail_times(breaker, 2)

    assert await breaker.execute(_ok) == "ok"

    assert breaker.failure_count == 0
    await _fail_times(breaker, 2)
    assert breaker.state is CircuitStateName.CLOSED


@pytest.mark.asyncio
async def test_open_circuit_rejects_calls():
    breaker = _breaker()
    await _fail_times(breaker, 3)

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute(_ok)

    error = exc_info.value.to_app_error()
    assert isinstance(error, AppError)
    assert error.kind is ErrorKind.GITHUB_API
    assert error.details["circuit_state"] == "OPEN"


@pytest.mark.asyncio
async def test_open_circuit_uses_fallback():
    breaker = _breaker()
    await _fail_times(breaker, 3)

    assert await breaker.execute(_ok, fallback=_fallback) == "fallback"


@pytest.mark.asyncio
async def test_failure_that_opens_circuit_returns_fallback():
    breaker = _breaker(failure_threshold=1)

    assert await breaker.execute(_boom, fallback=_fallback) == "fallback"
    assert breaker.state is CircuitStateName.OPEN


@pytest.mark.asyncio
async def test_half_open_after_timeout_then_closes_after_successes():
    clock = FakeClock()
    breaker = _breaker(clock)
    await _fail_times(breaker, 3)

    clock.now += 59
    assert not breaker.allow_request()

    clock.now += 1
    assert await breaker.execute(_ok) == "ok"
    assert breaker.state is CircuitStateName.HALF_OPEN

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state is CircuitStateName.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    clock = FakeClock()
    breaker = _breaker(clock)
    await _fail_times(breaker, 3)
    clock.now += 60

    await _fail_times(breaker, 1)

    assert breaker.state is CircuitStateName.OPEN
    assert not breaker.allow_request()


@pytest.mark.asyncio
async def test_snapshot_reports_next_attempt_only_when_open():
    breaker = _breaker()
    assert breaker.snapshot().next_attempt_time is None

    await _fail_times(breaker, 3)
    snapshot = breaker.snapshot()

    assert snapshot.state is CircuitStateName.OPEN
    assert snapshot.next_attempt_time is not None
    assert snapshot.to_dict()["state"] == "OPEN"


@pytest.mark.asyncio
async def test_reset_closes_circuit():
    breaker = _breaker()
    await _fail_times(breaker, 3)

    breaker.reset()

    assert breaker.state is CircuitStateName.CLOSED
    assert breaker.failure_count == 0
    assert await breaker.execute(_ok) == "ok"


def test_registry_has_breaker_per_dependency():
    registry = CircuitBreakerRegistry()

    assert set(registry.status()) == {"ai-provider", "github", "database"}
    assert registry.get("github") is registry.get("github")


@pytest.mark.asyncio
async def test_registry_reset_all():
    registry = CircuitBreakerRegistry(failure_threshold=1)
    for name in ("github", "database"):
        with pytest.raises(RuntimeError):
            await registry.get(name).execute(_boom)

    registry.reset_all()

    assert all(s.state is CircuitStateName.CLOSED for s in registry.status().values())
