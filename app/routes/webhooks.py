"""
GitHub webhook routes.

The delivery body is read as raw bytes and verified before it is parsed.
Errors are raised as ``AppError`` and rendered by the app-level handler.
"""

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from app.container import ServiceContainer, get_container
from app.errors import AppError, ErrorKind
from app.infrastructure.observability.logging import get_logger
from app.models.api.webhook_request import ManualAnalysisRequest
from app.models.api.webhook_response import (
    JobListResponse,
    JobStatusResponse,
    QueueStatsResponse,
    ServiceHealthResponse,
    WebhookResponse,
)
from app.models.domain.webhook_domain import WebhookEvent, WebhookOutcome
from app.security.webhook_signature import verify_and_parse

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _outcome_response(outcome: WebhookOutcome) -> JSONResponse:
    body = WebhookResponse(message=outcome.message, data=outcome.data)
    return JSONResponse(status_code=outcome.status_code, content=body.model_dump(mode="json"))


@router.post("/github", response_model=WebhookResponse)
async def github_webhook(
    request: Request,
    x_github_event: str | None = Header(default=None),
    x_hub_signature_256: str | None = Header(default=None),
    x_github_delivery: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
):
    """Verify, classify and dispatch one GitHub delivery."""
    body = await request.body()
    try:
        payload = verify_and_parse(body, x_hub_signature_256, container.settings.GITHUB_WEBHOOK_SECRET)
    except AppError as e:
        logger.warning(
            "Webhook rejected",
            code=e.code,
            event_type=x_github_event,
            delivery_id=x_github_delivery,
        )
        raise

    if not x_github_event:
        raise AppError(ErrorKind.MALFORMED_PAYLOAD, "Missing X-GitHub-Event header")

    event = WebhookEvent(
        event_type=x_github_event,
        action=payload.get("action"),
        delivery_id=x_github_delivery,
        payload=payload,
    )
    logger.info(
        "Webhook received",
        event_type=event.event_type,
        action=event.action,
        delivery_id=event.delivery_id,
        repository_name=event.repository_name,
    )
    outcome = await container.workflow.handle_webhook(event)
    return _outcome_response(outcome)


@router.post("/github/manual-analysis", response_model=WebhookResponse)
async def trigger_manual_analysis(
    body: ManualAnalysisRequest | None = None,
    container: ServiceContainer = Depends(get_container),
):
    """Queue an analysis for a PR without waiting for a webhook."""
    body = body or ManualAnalysisRequest()
    missing = body.missing_fields()
    if missing:
        raise AppError(
            ErrorKind.VALIDATION,
            f"Missing required fields: {', '.join(missing)}",
            {"missing": missing},
        )

    outcome = await container.workflow.queue_manual_analysis(
        str(body.installation_id), body.repository_name, body.pr_number
    )
    return _outcome_response(outcome)


@router.get("/jobs", response_model=JobListResponse)
async def list_pr_jobs(
    installation_id: str = Query(alias="installationId"),
    repository_name: str = Query(alias="repositoryName"),
    pr_number: int = Query(alias="prNumber"),
    container: ServiceContainer = Depends(get_container),
):
    """Jobs queued for one PR, newest first, while they are retained."""
    jobs = container.job_queue.get_jobs_for_pr(installation_id, repository_name, pr_number)
    return JobListResponse(data=[job.to_dict() for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, container: ServiceContainer = Depends(get_container)):
    job = container.job_queue.get_job_data(job_id)
    if job is None:
        raise AppError(ErrorKind.NOT_FOUND, "Job not found", {"job_id": job_id})
    return JobStatusResponse(data=job.to_dict())


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def get_queue_stats(container: ServiceContainer = Depends(get_container)):
    stats = container.job_queue.get_queue_stats()
    return QueueStatsResponse(**stats, activeJobsCount=container.job_queue.get_active_jobs_count())


@router.get("/health", response_model=ServiceHealthResponse)
async def webhook_health(container: ServiceContainer = Depends(get_container)):
    """503 when the queue is down, the secret is unset or a circuit is open."""
    health = container.workflow.health_check(
        circuits=container.circuits,
        webhook_secret_configured=bool(container.settings.GITHUB_WEBHOOK_SECRET),
    )
    body = ServiceHealthResponse(
        healthy=health["healthy"],
        services=health["services"],
        recovery=container.recovery.get_recovery_status(),
    )
    return JSONResponse(status_code=200 if body.healthy else 503, content=body.model_dump(mode="json"))
