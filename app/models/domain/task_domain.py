"""Domain models for bounty tasks and payout outcomes."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    MARKED_AS_COMPLETED = "MARKED_AS_COMPLETED"
    PAYOUT_PENDING = "PAYOUT_PENDING"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


# Tasks a merged PR can pay out
PAYABLE_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.MARKED_AS_COMPLETED, TaskStatus.OPEN)

# Tasks whose escrow is refunded when the installation goes away
REFUNDABLE_STATUSES = (TaskStatus.OPEN, TaskStatus.IN_PROGRESS)


class InstallationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


@dataclass(slots=True)
class BountyTask:
    """A tasks row joined with the fields the payout path needs."""

    id: str
    installation_id: str
    issue_number: int
    bounty: float
    status: TaskStatus
    settled: bool
    creator_id: str | None = None
    contributor_id: str | None = None
    contributor_username: str | None = None
    contributor_wallet: str | None = None
    escrow_ref: str | None = None
    bounty_label: str | None = None
    bounty_comment_id: str | None = None
    repository_name: str | None = None


class PayoutStatus(str, Enum):
    PAID = "paid"
    NO_LINKED_ISSUES = "no_linked_issues"
    NO_MATCHING_TASK = "no_matching_task"
    NO_WALLET = "no_wallet"
    ALREADY_CLAIMED = "already_claimed"


PAYOUT_MESSAGES = {
    PayoutStatus.PAID: "PR merged - payment processed successfully",
    PayoutStatus.NO_LINKED_ISSUES: "No linked issues found - no payment triggered",
    PayoutStatus.NO_MATCHING_TASK: "No matching active or submitted task found",
    PayoutStatus.NO_WALLET: "No wallet address found for contributor",
    PayoutStatus.ALREADY_CLAIMED: "Payout already in progress for this task",
}


@dataclass(slots=True)
class PayoutOutcome:
    """Result of handling a merged PR. Only ``PAID`` moved money."""

    status: PayoutStatus
    pr_number: int
    repository_name: str
    linked_issues: list[int] = field(default_factory=list)
    task_id: str | None = None
    tx_hash: str | None = None
    amount: float | None = None

    @property
    def message(self) -> str:
        return PAYOUT_MESSAGES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "pr_number": self.pr_number,
            "repository_name": self.repository_name,
            "linked_issues": self.linked_issues,
            "task_id": self.task_id,
            "tx_hash": self.tx_hash,
            "amount": self.amount,
        }


@dataclass(slots=True)
class ArchiveOutcome:
    installation_id: str
    found: bool
    refunded_amount: float = 0.0
    refunded_task_ids: list[str] = field(default_factory=list)
    tx_hash: str | None = None
