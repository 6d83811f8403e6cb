"""
Persistence for bounty tasks and installations.

Reads go through a pooled connection; the payout and archive writes run in a
single transaction each so a task is never completed without its ledger row.
"""

from decimal import Decimal
from typing import Any

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger
from app.models.domain.task_domain import (
    PAYABLE_STATUSES,
    REFUNDABLE_STATUSES,
    BountyTask,
    InstallationStatus,
    TaskStatus,
)

logger = get_logger(__name__)


class TaskRepositoryError(DatabaseError):
    """More specific exception for task persistence failures."""


class TaskRepository:
    TASK_SELECT = """
        SELECT t.id, t.installation_id, t.repository_name, t.issue_number, t.bounty,
               t.status, t.settled, t.creator_id, t.contributor_id, t.escrow_ref,
               t.bounty_label, t.bounty_comment_id,
               u.username AS contributor_username,
               u.wallet_address AS contributor_wallet
        FROM tasks t
        LEFT JOIN users u ON u.user_id = t.contributor_id
    """

    def __init__(self, db: DatabasePoolManager):
        self.db = db

    @staticmethod
    def _row_to_task(row: dict[str, Any] | None) -> BountyTask | None:
        if not row:
            return None

        return BountyTask(
            id=str(row["id"]),
            installation_id=str(row["installation_id"]),
            issue_number=row["issue_number"],
            bounty=float(row["bounty"] or 0),
            status=TaskStatus(row["status"]),
            settled=bool(row["settled"]),
            creator_id=row.get("creator_id"),
            contributor_id=row.get("contributor_id"),
            contributor_username=row.get("contributor_username"),
            contributor_wallet=row.get("contributor_wallet"),
            escrow_ref=row.get("escrow_ref"),
            bounty_label=row.get("bounty_label"),
            bounty_comment_id=row.get("bounty_comment_id"),
            repository_name=row.get("repository_name"),
        )

    async def find_payable_task(
        self,
        installation_id: str,
        repository_name: str,
        issue_numbers: list[int],
        contributor_username: str,
    ) -> BountyTask | None:
        """First task on a linked issue that the PR author is working on and can be paid."""
        if not issue_numbers:
            return None

        query = f"""
            {self.TASK_SELECT}
            WHERE t.installation_id = %s
              AND t.repository_name = %s
              AND t.issue_number = ANY(%s)
              AND t.status = ANY(%s)
              AND t.settled = FALSE
              AND u.username = %s
            ORDER BY array_position(%s::int[], t.issue_number)
            LIMIT 1
        """
        statuses = [status.value for status in PAYABLE_STATUSES]
        async with self.db.connection() as conn:
            row = await fetch_one(
                query,
                (installation_id, repository_name, issue_numbers, statuses, contributor_username, issue_numbers),
                connection=conn,
            )
        return self._row_to_task(row)

    async def list_refundable_tasks(self, installation_id: str) -> list[BountyTask]:
        query = f"""
            {self.TASK_SELECT}
            WHERE t.installation_id = %s
              AND t.status = ANY(%s)
              AND t.bounty > 0
            ORDER BY t.created_at
        """
        statuses = [status.value for status in REFUNDABLE_STATUSES]
        async with self.db.connection() as conn:
            rows = await fetch_all(query, (installation_id, statuses), connection=conn)
        return [self._row_to_task(row) for row in rows]

    async def claim_for_payout(self, task: BountyTask) -> bool:
        """
        Move a payable task to PAYOUT_PENDING. Only one caller can win the
        claim; everyone else gets False and must not release funds.
        """
        statuses = [status.value for status in PAYABLE_STATUSES]
        async with self.db.transaction() as conn:
            updated = await execute_query(
                """
                UPDATE tasks
                SET status = %s, updated_at = NOW()
                WHERE id = %s AND status = ANY(%s) AND settled = FALSE
                """,
                (TaskStatus.PAYOUT_PENDING.value, task.id, statuses),
                connection=conn,
            )
        return updated == 1

    async def release_payout_claim(self, task: BountyTask) -> None:
        """Put a claimed task back to the status it was claimed from."""
        async with self.db.transaction() as conn:
            await execute_query(
                "UPDATE tasks SET status = %s, updated_at = NOW() WHERE id = %s AND status = %s AND settled = FALSE",
                (task.status.value, task.id, TaskStatus.PAYOUT_PENDING.value),
                connection=conn,
            )
        logger.info("Payout claim released", task_id=task.id, status=task.status.value)

    async def complete_task(self, task: BountyTask, tx_hash: str) -> None:
        """
        Mark a claimed task COMPLETED and settled, record the payout and bump
        the contributor's summary. All three writes commit together or not at all.
        """
        amount = Decimal(str(task.bounty))

        async with self.db.transaction() as conn:
            updated = await execute_query(
                """
                UPDATE tasks
                SET status = %s, settled = TRUE, completed_at = NOW(), updated_at = NOW()
                WHERE id = %s AND status = %s AND settled = FALSE
                """,
                (TaskStatus.COMPLETED.value, task.id, TaskStatus.PAYOUT_PENDING.value),
                connection=conn,
            )
            if updated != 1:
                raise TaskRepositoryError(
                    f"Task {task.id} is not claimed for payout", operation="complete_task", recoverable=False
                )

            await execute_query(
                """
                INSERT INTO transactions (tx_hash, category, amount, task_id, user_id)
                VALUES (%s, 'BOUNTY', %s, %s, %s)
                """,
                (tx_hash, amount, task.id, task.contributor_id),
                connection=conn,
            )

            await execute_query(
                """
                INSERT INTO contribution_summaries (user_id, tasks_completed, total_earnings)
                VALUES (%s, 1, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET tasks_completed = contribution_summaries.tasks_completed + 1,
                    total_earnings = contribution_summaries.total_earnings + EXCLUDED.total_earnings
                """,
                (task.contributor_id, amount),
                connection=conn,
            )

        logger.info("Task completed", task_id=task.id, tx_hash=tx_hash, amount=task.bounty)


class InstallationRepository:
    def __init__(self, db: DatabasePoolManager):
        self.db = db

    async def get_installation(self, installation_id: str) -> dict[str, Any] | None:
        async with self.db.connection() as conn:
            return await fetch_one(
                "SELECT id, status, escrow_ref FROM installations WHERE id = %s",
                (installation_id,),
                connection=conn,
            )

    async def is_member(self, installation_id: str, username: str | None) -> bool:
        if not username:
            return False

        query = """
            SELECT EXISTS (
                SELECT 1
                FROM installation_members m
                JOIN users u ON u.user_id = m.user_id
                WHERE m.installation_id = %s AND u.username = %s
            )
        """
        async with self.db.connection() as conn:
            return bool(await fetch_val(query, (installation_id, username), connection=conn))

    async def archive(
        self,
        installation_id: str,
        task_ids: list[str],
        refunded: bool,
        tx_hash: str | None = None,
        refund_amount: float = 0.0,
    ) -> None:
        """Archive the installation and its refundable tasks in one transaction."""
        async with self.db.transaction() as conn:
            await execute_query(
                "UPDATE installations SET status = %s, updated_at = NOW() WHERE id = %s",
                (InstallationStatus.ARCHIVED.value, installation_id),
                connection=conn,
            )
            if task_ids:
                await execute_query(
                    "UPDATE tasks SET status = %s, settled = %s, updated_at = NOW() WHERE id = ANY(%s)",
                    (TaskStatus.ARCHIVED.value, refunded, task_ids),
                    connection=conn,
                )
            if tx_hash:
                await execute_query(
                    """
                    INSERT INTO transactions (tx_hash, category, amount)
                    VALUES (%s, 'REFUND', %s)
                    ON CONFLICT (tx_hash) DO NOTHING
                    """,
                    (tx_hash, Decimal(str(refund_amount))),
                    connection=conn,
                )

        logger.info("Installation archived", installation_id=installation_id, tasks=len(task_ids), refunded=refunded)

    async def set_status(self, installation_id: str, status: InstallationStatus) -> bool:
        async with self.db.connection() as conn:
            updated = await execute_query(
                "UPDATE installations SET status = %s, updated_at = NOW() WHERE id = %s",
                (status.value, installation_id),
                connection=conn,
            )
        return updated > 0
