# app/routes/health.py
"""
Health check endpoints plus the recovery controls for circuit breakers.
"""

import time

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.container import ServiceContainer, get_container
from app.infrastructure.observability.logging import log_health_check
from app.models.domain.recovery_domain import CircuitStateName
from app.services.resilience.error_recovery_service import REQUIRED_SETTINGS

router = APIRouter()


class RecoveryRequest(BaseModel):
    kind: str = "complete"
    service_name: str | None = None


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "bounty-review"}


@router.get("/readyz")
async def readyz(container: ServiceContainer = Depends(get_container)):
    """
    Readiness check: database pool, configuration and circuit states.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await container.db.health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)

        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, checks["database"].get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Configuration
    missing = container.settings.missing_settings("GITHUB_WEBHOOK_SECRET", *REQUIRED_SETTINGS)
    checks["configuration"] = {
        "ok": not missing,
        "issues": [f"{name} not set" for name in missing] or None,
        "environment": container.settings.environment,
    }
    overall_ok = overall_ok and not missing

    # 3) Circuit breakers
    circuits = container.circuits.status()
    circuits_ok = all(snapshot.state is not CircuitStateName.OPEN for snapshot in circuits.values())
    checks["circuits"] = {
        "ok": circuits_ok,
        "states": {name: snapshot.to_dict() for name, snapshot in circuits.items()},
    }
    overall_ok = overall_ok and circuits_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/recovery")
async def recovery_status(container: ServiceContainer = Depends(get_container)):
    return container.recovery.get_recovery_status()


@router.post("/health/recovery")
async def attempt_recovery(request: RecoveryRequest, container: ServiceContainer = Depends(get_container)):
    """Run one recovery attempt; a concurrent attempt is refused, not queued."""
    context = {"service_name": request.service_name} if request.service_name else {}
    result = await container.recovery.attempt_system_recovery(request.kind, context)
    return result.to_dict()


@router.post("/health/recovery/reset")
async def reset_recovery(container: ServiceContainer = Depends(get_container)):
    container.recovery.reset_recovery_state()
    return container.recovery.get_recovery_status()
