"""
Recovery coordinator for the AI provider, GitHub and database dependencies.

One ``RecoveryCoordinator`` is created by the service container and shared by
reference; it owns the in-progress flag so overlapping recovery runs are
refused instead of queued.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import Settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.recovery_domain import CircuitStateName, RecoveryKind, RecoveryResult, ServiceName
from app.services.resilience.circuit_breaker import CircuitBreakerRegistry

logger = get_logger(__name__)

Probe = Callable[[], Awaitable[Any]]

RECOVERY_COOLDOWN = timedelta(minutes=5)

# service -> (fallback strategy, settings it cannot work without)
SERVICE_STRATEGIES: dict[ServiceName, tuple[str, tuple[str, ...]]] = {
    ServiceName.AI_PROVIDER: ("fallback_ai_analysis", ("OPENAI_API_KEY",)),
    ServiceName.GITHUB: ("skip_comment_posting", ("GITHUB_APP_ID", "GITHUB_APP_PRIVATE_KEY")),
    ServiceName.DATABASE: ("in_memory_fallback", ("DATABASE_URL",)),
}

REQUIRED_SETTINGS = ("OPENAI_API_KEY", "GITHUB_APP_ID", "GITHUB_APP_PRIVATE_KEY", "DATABASE_URL")


class RecoveryCoordinator:
    """
    Runs recovery strategies against the circuit breaker registry.

    Args:
        settings: Application settings, used for configuration checks
        circuits: Registry shared with the services being protected
        probes: Lightweight connectivity check per service name
    """

    def __init__(
        self,
        settings: Settings,
        circuits: CircuitBreakerRegistry,
        probes: dict[str, Probe] | None = None,
    ):
        self.settings = settings
        self.circuits = circuits
        self.probes = probes or {}

        self.in_progress = False
        self.last_attempt: datetime | None = None
        self.attempt_count = 0

    async def attempt_system_recovery(
        self, kind: RecoveryKind | str, context: dict[str, Any] | None = None
    ) -> RecoveryResult:
        """
        Attempt recovery; returns immediately if another run is in flight.

        The flag is checked and set with no await in between, so two tasks on
        the same loop cannot both get past it.
        """
        context = context or {}
        if self.in_progress:
            logger.warning("System recovery is already in progress", kind=str(kind), context=context)
            return RecoveryResult(
                success=False, strategy="none", message="Recovery already in progress", retryable=True
            )

        self.in_progress = True
        self.last_attempt = datetime.now(UTC)
        self.attempt_count += 1

        try:
            try:
                kind = RecoveryKind(kind)
            except ValueError:
                return RecoveryResult(
                    success=False, strategy="unknown", message=f"Unknown failure type: {kind}", retryable=False
                )

            logger.info("Starting recovery attempt", kind=kind.value, attempt=self.attempt_count, context=context)

            if kind is RecoveryKind.SERVICE:
                result = await self._recover_service(context.get("service_name"))
            elif kind is RecoveryKind.CIRCUIT_BREAKER:
                result = await self._recover_circuit(context.get("service_name"))
            else:
                result = await self._complete_recovery()

            logger.info(
                "Recovery attempt completed",
                kind=kind.value,
                success=result.success,
                strategy=result.strategy,
            )
            return result

        except Exception as e:
            logger.error("Recovery attempt failed", kind=str(kind), error=str(e), error_type=type(e).__name__)
            return RecoveryResult(
                success=False, strategy="error", message=f"Recovery failed: {e}", error=str(e)
            )
        finally:
            self.in_progress = False

    async def _recover_service(self, service_name: str | None) -> RecoveryResult:
        try:
            service = ServiceName(service_name)
        except ValueError:
            return RecoveryResult(
                success=False,
                strategy="unknown_service",
                message=f"Unknown service: {service_name}",
                retryable=False,
            )

        strategy, required = SERVICE_STRATEGIES[service]
        logger.info("Attempting to recover service", service_name=service.value)

        self.circuits.reset(service.value)

        missing = self.settings.missing_settings(*required)
        if missing:
            return RecoveryResult(
                success=False,
                strategy=strategy,
                message=f"{service.value} not configured - using fallback",
                retryable=False,
                details={"missing": missing},
            )

        probe = self.probes.get(service.value)
        if probe is not None:
            try:
                await probe()
            except Exception as e:
                logger.warning("Service probe failed", service_name=service.value, error=str(e))
                return RecoveryResult(
                    success=False,
                    strategy=strategy,
                    message=f"{service.value} still unavailable - using fallback",
                    error=str(e),
                )

        return RecoveryResult(
            success=True, strategy="service_restart", message=f"{service.value} service recovered successfully"
        )

    async def _recover_circuit(self, service_name: str | None) -> RecoveryResult:
        if not service_name:
            self.circuits.reset_all()
            return RecoveryResult(success=True, strategy="circuit_reset", message="All circuit breakers reset")

        self.circuits.reset(service_name)
        snapshot = self.circuits.get(service_name).snapshot()
        recovered = snapshot.state is CircuitStateName.CLOSED
        return RecoveryResult(
            success=recovered,
            strategy="circuit_reset",
            message=(
                f"Circuit breaker for {service_name} recovered"
                if recovered
                else f"Circuit breaker for {service_name} still open"
            ),
        )

    async def _complete_recovery(self) -> RecoveryResult:
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("reset_circuit_breakers", self._step_reset_circuits),
            ("test_database_connection", self._step_probe_database),
            ("verify_service_configuration", self._step_check_configuration),
        ]

        breakdown: list[dict[str, Any]] = []
        for name, action in steps:
            try:
                await action()
                breakdown.append({"step": name, "success": True})
            except Exception as e:
                logger.warning("Recovery step failed", step=name, error=str(e))
                breakdown.append({"step": name, "success": False, "error": str(e)})

        succeeded = sum(1 for step in breakdown if step["success"])
        success = succeeded == len(steps)
        return RecoveryResult(
            success=success,
            strategy="complete_recovery",
            message=(
                "Complete system recovery successful"
                if success
                else f"Partial recovery: {succeeded}/{len(steps)} steps successful"
            ),
            details={"steps": breakdown},
        )

    async def _step_reset_circuits(self) -> None:
        self.circuits.reset_all()

    async def _step_probe_database(self) -> None:
        probe = self.probes.get(ServiceName.DATABASE.value)
        if probe is None:
            raise RuntimeError("No database probe registered")
        await probe()

    async def _step_check_configuration(self) -> None:
        missing = self.settings.missing_settings(*REQUIRED_SETTINGS)
        if missing:
            raise RuntimeError(f"Missing configuration: {', '.join(missing)}")

    def get_recovery_status(self) -> dict[str, Any]:
        can_attempt = self.last_attempt is None or datetime.now(UTC) - self.last_attempt > RECOVERY_COOLDOWN
        return {
            "in_progress": self.in_progress,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "attempt_count": self.attempt_count,
            "can_attempt_recovery": not self.in_progress and can_attempt,
            "circuits": {name: snap.to_dict() for name, snap in self.circuits.status().items()},
        }

    def reset_recovery_state(self) -> None:
        self.in_progress = False
        self.last_attempt = None
        self.attempt_count = 0
        logger.info("Recovery state reset")
