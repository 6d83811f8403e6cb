"""Domain models for the in-process analysis job queue."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(slots=True)
class AnalysisJob:
    """One queued unit of work. Only the queue's worker loop mutates it."""

    id: str
    type: str
    data: dict[str, Any]
    created_at: datetime
    max_retries: int
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_run_at: datetime | None = None
    result: Any = None
    error: str | None = None
    dedupe_key: str | None = None
    history: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = self.result
        if hasattr(result, "model_dump"):
            result = result.model_dump(mode="json")
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "result": result,
            "error": self.error,
        }
