"""Domain models for circuit breakers and recovery runs."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class CircuitStateName(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class ServiceName(str, Enum):
    AI_PROVIDER = "ai-provider"
    GITHUB = "github"
    DATABASE = "database"


class RecoveryKind(str, Enum):
    SERVICE = "service"
    CIRCUIT_BREAKER = "circuit_breaker"
    COMPLETE = "complete"


@dataclass(slots=True)
class CircuitSnapshot:
    state: CircuitStateName
    failure_count: int
    last_failure_time: datetime | None
    next_attempt_time: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "next_attempt_time": self.next_attempt_time.isoformat() if self.next_attempt_time else None,
        }


@dataclass(slots=True)
class RecoveryResult:
    success: bool
    strategy: str
    message: str
    retryable: bool = True
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy,
            "message": self.message,
            "retryable": self.retryable,
            "error": self.error,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }
