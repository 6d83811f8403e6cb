"""
Bounty payout state machine.

A merged PR pays out the task on the issue it closes: OPEN/IN_PROGRESS/
MARKED_AS_COMPLETED -> PAYOUT_PENDING -> COMPLETED with settled=true. The
PAYOUT_PENDING claim is taken before any money moves, so overlapping
deliveries of the same merge release the bounty once. Business dead ends (no
linked issue, no task, no wallet) are returned as outcomes, never raised.
Installation removal refunds open work and archives the installation.
"""

from app.errors import AppError, ErrorKind, PaymentError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.task_domain import ArchiveOutcome, InstallationStatus, PayoutOutcome, PayoutStatus
from app.services.pr_review.pr_analysis_service import extract_linked_issues

logger = get_logger(__name__)


class BountyPayoutService:
    def __init__(self, task_repository, installation_repository, escrow, github=None):
        self.task_repository = task_repository
        self.installation_repository = installation_repository
        self.escrow = escrow
        self.github = github

    async def handle_merged_pr(
        self, installation_id: str, repository_name: str, pull_request: dict
    ) -> PayoutOutcome:
        """
        Release the bounty for a merged pull request.

        Raises:
            AppError(PAYMENT): the escrow release failed; the claim is released
        """
        pr_number = pull_request.get("number")
        author = (pull_request.get("user") or {}).get("login")
        log = logger.bind(installation_id=installation_id, repository_name=repository_name, pr_number=pr_number)

        linked = [
            issue
            for issue in extract_linked_issues(pull_request.get("body"), repository_name)
            if (issue.repository or "").lower() == repository_name.lower()
        ]
        issue_numbers = [issue.number for issue in linked]

        outcome = PayoutOutcome(
            status=PayoutStatus.NO_LINKED_ISSUES,
            pr_number=pr_number,
            repository_name=repository_name,
            linked_issues=issue_numbers,
        )
        if not linked:
            log.info("No linked issues found - no payment triggered")
            return outcome

        task = await self.task_repository.find_payable_task(installation_id, repository_name, issue_numbers, author)
        if task is None:
            outcome.status = PayoutStatus.NO_MATCHING_TASK
            log.info("No matching active or submitted task found", linked_issues=issue_numbers, author=author)
            return outcome

        outcome.task_id = task.id
        if not task.contributor_wallet:
            outcome.status = PayoutStatus.NO_WALLET
            log.info("No wallet address found for contributor", task_id=task.id, contributor_id=task.contributor_id)
            return outcome

        if not await self.task_repository.claim_for_payout(task):
            outcome.status = PayoutStatus.ALREADY_CLAIMED
            log.info("Task already claimed by another payout", task_id=task.id)
            return outcome

        try:
            receipt = await self.escrow.release_funds(
                task.escrow_ref or task.id,
                task.contributor_wallet,
                task.bounty,
                idempotency_key=task.id,
            )
        except PaymentError as e:
            log.error("Bounty release failed", task_id=task.id, error=str(e))
            await self.task_repository.release_payout_claim(task)
            raise e.to_app_error() from e

        try:
            await self.task_repository.complete_task(task, receipt.tx_hash)
        except Exception as e:
            log.error(
                "Bounty released but task update failed",
                task_id=task.id,
                tx_hash=receipt.tx_hash,
                error=str(e),
            )
            raise AppError(
                ErrorKind.DATABASE,
                "Payment released but task state could not be updated",
                {"task_id": task.id, "tx_hash": receipt.tx_hash},
                retryable=False,
            ) from e

        outcome.status = PayoutStatus.PAID
        outcome.tx_hash = receipt.tx_hash
        outcome.amount = task.bounty
        log.info("PR merged - payment processed successfully", task_id=task.id, tx_hash=receipt.tx_hash)
        return outcome

    async def archive_installation(self, installation_id: str) -> ArchiveOutcome:
        """Refund open bounties in one escrow call and archive the installation."""
        installation = await self.installation_repository.get_installation(installation_id)
        if installation is None:
            logger.info("Installation not found in database, skipping archive", installation_id=installation_id)
            return ArchiveOutcome(installation_id=installation_id, found=False)

        tasks = await self.task_repository.list_refundable_tasks(installation_id)
        total = round(sum(task.bounty for task in tasks), 7)
        outcome = ArchiveOutcome(installation_id=installation_id, found=True)

        refunded = False
        if tasks and total > 0:
            escrow_ref = installation.get("escrow_ref") or installation_id
            try:
                receipt = await self.escrow.refund(escrow_ref, total)
            except PaymentError as e:
                logger.error("Refund failed during installation archive", installation_id=installation_id, error=str(e))
            else:
                refunded = True
                outcome.tx_hash = receipt.tx_hash
                outcome.refunded_amount = total
                outcome.refunded_task_ids = [task.id for task in tasks]

        await self.installation_repository.archive(
            installation_id,
            [task.id for task in tasks],
            refunded=refunded,
            tx_hash=outcome.tx_hash,
            refund_amount=outcome.refunded_amount,
        )

        for task in tasks:
            await self._remove_bounty_markers(installation_id, task)

        logger.info(
            "Installation archived",
            installation_id=installation_id,
            refunded_amount=outcome.refunded_amount,
            tasks=len(tasks),
        )
        return outcome

    async def reactivate_installation(self, installation_id: str) -> bool:
        updated = await self.installation_repository.set_status(installation_id, InstallationStatus.ACTIVE)
        logger.info("Installation reactivated", installation_id=installation_id, updated=updated)
        return updated

    async def _remove_bounty_markers(self, installation_id: str, task) -> None:
        """Best effort: strip the bounty label and comment from the task's issue."""
        if self.github is None or not task.repository_name:
            return
        try:
            if task.bounty_label:
                await self.github.remove_label(installation_id, task.repository_name, task.issue_number, task.bounty_label)
            if task.bounty_comment_id:
                await self.github.delete_comment(installation_id, task.repository_name, task.bounty_comment_id)
        except Exception as e:
            logger.warning(
                "Failed to remove bounty label and comment during installation archive",
                task_id=task.id,
                error=str(e),
            )
