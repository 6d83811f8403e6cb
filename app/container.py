"""
Service container.

Every long-lived collaborator is built once here at startup and reached
through ``app.state.container``; nothing below keeps module-level state.
"""

from dataclasses import dataclass

from fastapi import Request

from app.config import Settings
from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger
from app.jobs.job_queue import JobQueue
from app.models.domain.recovery_domain import ServiceName
from app.repositories.code_chunk_repository import CodeChunkRepository
from app.repositories.review_repository import ReviewResultRepository
from app.repositories.task_repository import InstallationRepository, TaskRepository
from app.services.ai_review_service import AIReviewService
from app.services.github.github_client import GitHubAppClient
from app.services.payments.bounty_payout_service import BountyPayoutService
from app.services.payments.payment_service import EscrowClient
from app.services.pr_review.context_enrichment_service import ContextEnrichmentService
from app.services.pr_review.pr_analysis_service import PRAnalysisService
from app.services.pr_review.review_comment_service import ReviewCommentService
from app.services.resilience.circuit_breaker import CircuitBreakerRegistry
from app.services.resilience.error_recovery_service import RecoveryCoordinator
from app.services.workflow_service import ANALYSIS_JOB_TYPE, WorkflowService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: DatabasePoolManager
    github: GitHubAppClient
    ai_service: AIReviewService
    escrow: EscrowClient
    circuits: CircuitBreakerRegistry
    recovery: RecoveryCoordinator
    job_queue: JobQueue
    workflow: WorkflowService


def build_container(settings: Settings) -> ServiceContainer:
    """Wire collaborators together. Nothing is opened yet; see ``start_container``."""
    db = DatabasePoolManager(settings)
    github = GitHubAppClient(settings)
    ai_service = AIReviewService(settings)
    escrow = EscrowClient(settings)

    circuits = CircuitBreakerRegistry(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
        half_open_max_calls=settings.CIRCUIT_HALF_OPEN_MAX_CALLS,
    )
    recovery = RecoveryCoordinator(
        settings,
        circuits,
        probes={
            ServiceName.DATABASE.value: db.ping,
            ServiceName.GITHUB.value: github.check_connectivity,
            ServiceName.AI_PROVIDER.value: ai_service.check_connectivity,
        },
    )

    task_repository = TaskRepository(db)
    installation_repository = InstallationRepository(db)
    review_repository = ReviewResultRepository(db)

    enrichment = ContextEnrichmentService(settings, github, ai_service, CodeChunkRepository(db))
    analysis_service = PRAnalysisService(github, ai_service, circuits, enrichment)
    comment_service = ReviewCommentService(github, review_repository)
    payout_service = BountyPayoutService(task_repository, installation_repository, escrow, github)

    job_queue = JobQueue.from_settings(settings)
    workflow = WorkflowService(
        job_queue,
        analysis_service,
        comment_service,
        payout_service,
        github,
        review_repository=review_repository,
        installation_repository=installation_repository,
    )
    job_queue.register_handler(ANALYSIS_JOB_TYPE, workflow.run_analysis_job)

    return ServiceContainer(
        settings=settings,
        db=db,
        github=github,
        ai_service=ai_service,
        escrow=escrow,
        circuits=circuits,
        recovery=recovery,
        job_queue=job_queue,
        workflow=workflow,
    )


async def start_container(container: ServiceContainer) -> None:
    """
    Open the database pool and start the job queue.

    A missing DATABASE_URL is logged and the app keeps serving; persistence
    calls then fail with a database error instead of the process crashing.
    """
    if container.settings.DATABASE_URL:
        await container.db.initialize()
    else:
        logger.warning("DATABASE_URL not configured, running without database")
    await container.job_queue.start()


async def close_container(container: ServiceContainer) -> None:
    """Shut down in reverse start order, collecting errors instead of stopping at the first."""
    shutdown_errors = []

    for name, close in (
        ("job_queue", container.job_queue.stop),
        ("escrow", container.escrow.close),
        ("ai_service", container.ai_service.close),
        ("github", container.github.close),
        ("database_pool", container.db.close),
    ):
        try:
            await close()
        except Exception as e:
            logger.error("Error closing service", service=name, error=str(e))
            shutdown_errors.append(f"{name}: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the app's container."""
    return request.app.state.container
