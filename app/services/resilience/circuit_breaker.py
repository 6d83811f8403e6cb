"""
Circuit breakers for the service's external dependencies.

One ``CircuitBreaker`` per dependency, owned by a ``CircuitBreakerRegistry``
that the service container creates once and hands to whoever needs it.
"""

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from app.errors import AppError, ErrorKind
from app.infrastructure.observability.logging import get_logger
from app.models.domain.recovery_domain import CircuitSnapshot, CircuitStateName, ServiceName

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, service_name: str, state: CircuitStateName):
        super().__init__(f"Circuit breaker is {state.value} for service: {service_name}")
        self.service_name = service_name
        self.state = state

    def to_app_error(self) -> AppError:
        kind = {
            ServiceName.GITHUB.value: ErrorKind.GITHUB_API,
            ServiceName.DATABASE.value: ErrorKind.DATABASE,
        }.get(self.service_name, ErrorKind.AI_SERVICE)
        return AppError(kind, str(self), {"service_name": self.service_name, "circuit_state": self.state.value})


class CircuitBreaker:
    """
    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``recovery_timeout`` seconds have passed.
    HALF_OPEN -> CLOSED after ``half_open_max_calls`` successes, back to OPEN on any failure.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self.state = CircuitStateName.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: datetime | None = None
        self._opened_at: float | None = None

    def _next_attempt_at(self) -> float | None:
        if self._opened_at is None:
            return None
        return self._opened_at + self.recovery_timeout

    def allow_request(self) -> bool:
        """Decide whether a call may go through, moving OPEN -> HALF_OPEN when due."""
        if self.state is CircuitStateName.OPEN:
            next_attempt = self._next_attempt_at()
            if next_attempt is not None and self._clock() >= next_attempt:
                self.state = CircuitStateName.HALF_OPEN
                self.success_count = 0
                logger.info("Circuit breaker half-open", service_name=self.service_name)
                return True
            return False
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state is CircuitStateName.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_max_calls:
                self.state = CircuitStateName.CLOSED
                self.success_count = 0
                self._opened_at = None
                logger.info("Circuit breaker closed", service_name=self.service_name)

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.now(UTC)

        if self.state is CircuitStateName.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state is not CircuitStateName.OPEN:
                logger.warning(
                    "Circuit breaker opened",
                    service_name=self.service_name,
                    failure_count=self.failure_count,
                )
            self.state = CircuitStateName.OPEN
            self._opened_at = self._clock()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Run ``operation`` through the breaker, using ``fallback`` when open."""
        if not self.allow_request():
            logger.warning("Circuit breaker rejected call", service_name=self.service_name)
            if fallback is not None:
                return await fallback()
            raise CircuitOpenError(self.service_name, self.state)

        try:
            result = await operation()
        except Exception:
            self.record_failure()
            if fallback is not None and self.state is CircuitStateName.OPEN:
                return await fallback()
            raise

        self.record_success()
        return result

    def reset(self) -> None:
        self.state = CircuitStateName.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self._opened_at = None
        logger.info("Circuit breaker manually reset", service_name=self.service_name)

    def snapshot(self) -> CircuitSnapshot:
        next_attempt_time = None
        next_attempt = self._next_attempt_at()
        if next_attempt is not None and self.state is CircuitStateName.OPEN:
            next_attempt_time = datetime.fromtimestamp(
                time.time() + max(0.0, next_attempt - self._clock()), UTC
            )
        return CircuitSnapshot(
            state=self.state,
            failure_count=self.failure_count,
            last_failure_time=self.last_failure_time,
            next_attempt_time=next_attempt_time,
        )


class CircuitBreakerRegistry:
    """Holds one breaker per dependency name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._options = {
            "failure_threshold": failure_threshold,
            "recovery_timeout": recovery_timeout,
            "half_open_max_calls": half_open_max_calls,
            "clock": clock,
        }
        self._circuits: dict[str, CircuitBreaker] = {}
        for service in ServiceName:
            self.get(service.value)

    def get(self, service_name: str) -> CircuitBreaker:
        if service_name not in self._circuits:
            self._circuits[service_name] = CircuitBreaker(service_name, **self._options)
        return self._circuits[service_name]

    def reset(self, service_name: str) -> None:
        self.get(service_name).reset()

    def reset_all(self) -> None:
        for circuit in self._circuits.values():
            circuit.reset()

    def status(self) -> dict[str, CircuitSnapshot]:
        return {name: circuit.snapshot() for name, circuit in self._circuits.items()}
