"""
Webhook workflow.

Turns a verified ``WebhookEvent`` into an outcome: analysis requests are
queued, merged PRs go to the payout state machine, installation lifecycle
events archive or reactivate the installation. The queued analysis itself runs
in ``run_analysis_job`` on the job queue's worker loop.
"""

import asyncio
from typing import Any

from app.db.helpers import DatabaseError
from app.errors import AppError, ErrorKind, GitHubAPIError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.job_domain import AnalysisJob
from app.models.domain.recovery_domain import CircuitStateName
from app.models.domain.review_domain import AnalysisRequest, ReviewResult
from app.models.domain.webhook_domain import Classification, EventRoute, SkipReason, WebhookEvent, WebhookOutcome
from app.services.pr_review.event_classifier import check_default_branch, classify_event
from app.services.pr_review.pr_analysis_service import pull_request_from_payload, should_analyze_pr

logger = get_logger(__name__)

ANALYSIS_JOB_TYPE = "pr_analysis"


def analysis_dedupe_key(installation_id: str, repository_name: str, pr_number: int) -> str:
    return f"{installation_id}:{repository_name}:{pr_number}"


def _not_eligible(pr_number: int, message: str, **data) -> WebhookOutcome:
    return WebhookOutcome(200, f"PR #{pr_number} is not eligible for analysis: {message}", data)


class WorkflowService:
    def __init__(
        self,
        job_queue,
        analysis_service,
        comment_service,
        payout_service,
        github,
        review_repository=None,
        installation_repository=None,
    ):
        self.job_queue = job_queue
        self.analysis_service = analysis_service
        self.comment_service = comment_service
        self.payout_service = payout_service
        self.github = github
        self.review_repository = review_repository
        self.installation_repository = installation_repository

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    async def handle_webhook(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Route one verified delivery.

        Raises:
            AppError(MALFORMED_PAYLOAD): a processed event lacks installation or repository
            AppError: payout or GitHub failures that must reach the caller
        """
        classification = classify_event(event.event_type, event.action, event.payload)
        log = logger.bind(
            event_type=event.event_type,
            action=event.action,
            delivery_id=event.delivery_id,
            route=classification.route.value,
        )

        if not classification.processed:
            log.info("Webhook skipped", reason=classification.reason.value)
            return self._skip_outcome(event, classification)

        if classification.route is EventRoute.INSTALLATION:
            return await self._handle_installation(event)

        installation_id, repository_name = self._require_scope(event)

        if classification.route is EventRoute.ANALYZE:
            return await self._handle_pull_request(event, installation_id, repository_name, classification)
        if classification.route is EventRoute.PAYOUT:
            outcome = await self.payout_service.handle_merged_pr(installation_id, repository_name, event.pull_request)
            return WebhookOutcome(200, outcome.message, outcome.to_dict())
        return await self._handle_review_comment(event, installation_id, repository_name, classification)

    async def queue_manual_analysis(
        self, installation_id: str, repository_name: str, pr_number: int
    ) -> WebhookOutcome:
        """Queue a review requested through the API. Normal eligibility rules apply."""
        pull_request = await self._fetch_pull_request(installation_id, repository_name, pr_number)
        pr_data = pull_request_from_payload(pull_request, installation_id, repository_name)

        eligibility = should_analyze_pr(pr_data)
        if not eligibility.eligible:
            return _not_eligible(pr_number, eligibility.message, reason=eligibility.reason.value)

        job_id = self._enqueue(AnalysisRequest(installation_id, repository_name, pr_number))
        return WebhookOutcome(
            202,
            "Manual analysis queued successfully",
            {
                "jobId": job_id,
                "installationId": installation_id,
                "repositoryName": repository_name,
                "prNumber": pr_number,
                "status": "queued",
                "reason": "manual_trigger",
            },
        )

    def health_check(self, circuits=None, webhook_secret_configured: bool = True) -> dict[str, Any]:
        """Webhook pipeline health; unhealthy details carry the queue state."""
        services = {
            "jobQueue": self.job_queue.is_running,
            "webhookSecret": webhook_secret_configured,
        }
        if circuits is not None:
            for name, snapshot in circuits.status().items():
                services[name] = snapshot.state is not CircuitStateName.OPEN

        healthy = all(services.values())
        health: dict[str, Any] = {"healthy": healthy, "services": services}
        if not healthy:
            health["details"] = {
                "queueStats": self.job_queue.get_queue_stats(),
                "activeJobs": self.job_queue.get_active_jobs_count(),
            }
        return health

    # ------------------------------------------------------------------
    # Job handler
    # ------------------------------------------------------------------

    async def run_analysis_job(self, job: AnalysisJob) -> ReviewResult | dict[str, Any]:
        """
        Analyze the PR of a queued job and publish the review.

        On the last attempt a failure, including a timeout cancellation, is
        reported on the PR before it is re-raised.
        """
        request = AnalysisRequest(**job.data)
        log = logger.bind(
            job_id=job.id,
            installation_id=request.installation_id,
            repository_name=request.repository_name,
            pr_number=request.pr_number,
        )

        try:
            pr_data = await self.analysis_service.load_pull_request(request)
            eligibility = should_analyze_pr(pr_data)
            if not eligibility.eligible:
                log.info("Queued PR no longer eligible", reason=eligibility.reason.value)
                return {"skipped": True, "reason": eligibility.reason.value, "message": eligibility.message}

            if job.retry_count == 0:
                await self.comment_service.post_in_progress_comment(
                    request.installation_id, request.repository_name, request.pr_number
                )
            result = await self.analysis_service.analyze(pr_data)
        except Exception as e:
            error = AppError.wrap(e)
            final = not error.retryable or job.retry_count >= job.max_retries
            log.error("Analysis job failed", error=error.message, code=error.code, final_attempt=final)
            if final:
                await self.comment_service.post_error_comment(
                    request.installation_id, request.repository_name, request.pr_number, error.message
                )
            if error is e:
                raise
            raise error from e
        except asyncio.CancelledError:
            if job.retry_count >= job.max_retries:
                log.error("Analysis job cancelled on final attempt")
                await self.comment_service.post_error_comment(
                    request.installation_id,
                    request.repository_name,
                    request.pr_number,
                    "Analysis timed out before it could finish",
                )
            raise

        if self.review_repository is not None:
            try:
                await self.review_repository.save_result(result)
            except DatabaseError as e:
                log.warning("Failed to save review result", error=str(e))

        post = await self.comment_service.post_review_comment(result)
        log.info(
            "Analysis job finished",
            merge_score=result.merge_score,
            comment_posted=post.success,
            comment_id=post.comment_id,
        )
        return result

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def _handle_pull_request(
        self, event: WebhookEvent, installation_id: str, repository_name: str, classification: Classification
    ) -> WebhookOutcome:
        pull_request = event.pull_request
        pr_number = pull_request.get("number")

        base = pull_request.get("base") or {}
        branch = await check_default_branch(
            self.github,
            installation_id,
            repository_name,
            base.get("ref"),
            known_default=(base.get("repo") or {}).get("default_branch"),
        )
        if not branch.eligible:
            return WebhookOutcome(200, branch.message, {"reason": branch.reason.value, "prNumber": pr_number})

        job_id = self._enqueue(AnalysisRequest(installation_id, repository_name, pr_number))
        linked_issues = classification.details.get("linked_issues", [])
        return WebhookOutcome(
            202,
            "PR webhook processed successfully - analysis queued",
            {
                "jobId": job_id,
                "installationId": installation_id,
                "repositoryName": repository_name,
                "prNumber": pr_number,
                "prUrl": pull_request.get("html_url"),
                "linkedIssuesCount": len(linked_issues),
                "eligibleForAnalysis": True,
                "status": "queued",
            },
        )

    async def _handle_review_comment(
        self, event: WebhookEvent, installation_id: str, repository_name: str, classification: Classification
    ) -> WebhookOutcome:
        pr_number = classification.details.get("pr_number")
        commenter = ((event.payload.get("comment") or {}).get("user") or {}).get("login")

        if self.installation_repository is not None and not await self.installation_repository.is_member(
            installation_id, commenter
        ):
            logger.info("Review command from non-member ignored", commenter=commenter, pr_number=pr_number)
            return self._skip_outcome(
                event, Classification.skip(event.event_type, event.action, SkipReason.NOT_INSTALLATION_MEMBER)
            )

        pull_request = await self._fetch_pull_request(installation_id, repository_name, pr_number)
        pr_data = pull_request_from_payload(pull_request, installation_id, repository_name, manual_trigger=True)

        eligibility = should_analyze_pr(pr_data)
        if not eligibility.eligible:
            return _not_eligible(pr_number, eligibility.message, reason=eligibility.reason.value)

        branch = await check_default_branch(
            self.github,
            installation_id,
            repository_name,
            pr_data.base_branch,
            known_default=((pull_request.get("base") or {}).get("repo") or {}).get("default_branch"),
        )
        if not branch.eligible:
            return WebhookOutcome(200, branch.message, {"reason": branch.reason.value, "prNumber": pr_number})

        job_id = self._enqueue(AnalysisRequest(installation_id, repository_name, pr_number, manual_trigger=True))
        return WebhookOutcome(
            202,
            "Review comment processed successfully - analysis queued",
            {
                "jobId": job_id,
                "installationId": installation_id,
                "repositoryName": repository_name,
                "prNumber": pr_number,
                "prUrl": pr_data.pr_url,
                "linkedIssuesCount": len(pr_data.linked_issues),
                "eligibleForAnalysis": True,
                "status": "queued",
            },
        )

    async def _handle_installation(self, event: WebhookEvent) -> WebhookOutcome:
        installation_id = event.installation_id
        if installation_id is None:
            raise AppError(ErrorKind.MALFORMED_PAYLOAD, "Missing installation id in payload")

        if event.action == "created":
            logger.info("Installation created", installation_id=installation_id)
            return WebhookOutcome(200, "Installation creation logged", {"installationId": installation_id})

        if event.action == "unsuspend":
            updated = await self.payout_service.reactivate_installation(installation_id)
            return WebhookOutcome(200, "Installation reactivated", {"installationId": installation_id, "updated": updated})

        outcome = await self.payout_service.archive_installation(installation_id)
        if not outcome.found:
            return WebhookOutcome(
                200, "Installation not found - nothing to archive", {"installationId": installation_id}
            )
        return WebhookOutcome(
            200,
            f"Installation archived and {outcome.refunded_amount} USDC refunded",
            {
                "installationId": installation_id,
                "refundedAmount": outcome.refunded_amount,
                "refundedTaskIds": outcome.refunded_task_ids,
                "txHash": outcome.tx_hash,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_pull_request(self, installation_id: str, repository_name: str, pr_number: int) -> dict:
        try:
            return await self.github.get_pull_request(installation_id, repository_name, pr_number)
        except GitHubAPIError as e:
            raise e.to_app_error() from e

    def _enqueue(self, request: AnalysisRequest) -> str:
        return self.job_queue.enqueue(
            ANALYSIS_JOB_TYPE,
            request.to_dict(),
            dedupe_key=analysis_dedupe_key(request.installation_id, request.repository_name, request.pr_number),
        )

    @staticmethod
    def _require_scope(event: WebhookEvent) -> tuple[str, str]:
        installation_id, repository_name = event.installation_id, event.repository_name
        if installation_id is None or not repository_name:
            raise AppError(
                ErrorKind.MALFORMED_PAYLOAD,
                "Missing installation or repository in payload",
                {"event_type": event.event_type},
            )
        return installation_id, repository_name

    @staticmethod
    def _skip_outcome(event: WebhookEvent, classification: Classification) -> WebhookOutcome:
        if classification.reason in (SkipReason.DRAFT, SkipReason.NO_LINKED_ISSUES):
            pr_number = classification.details.get("pr_number")
            return _not_eligible(pr_number, classification.message, reason=classification.reason.value)
        return WebhookOutcome(
            200,
            classification.message,
            {"reason": classification.reason.value, "eventType": event.event_type, "action": event.action},
        )
