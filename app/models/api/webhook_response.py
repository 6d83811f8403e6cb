from typing import Any

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Envelope for every successful webhook and manual-analysis response."""

    success: bool = True
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str


class JobStatusResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]


class QueueStatsResponse(BaseModel):
    pending: int
    active: int
    completed: int
    failed: int
    activeJobsCount: int


class ServiceHealthResponse(BaseModel):
    healthy: bool
    services: dict[str, Any]
    recovery: dict[str, Any] | None = None


class JobListResponse(BaseModel):
    success: bool = True
    data: list[dict[str, Any]]
