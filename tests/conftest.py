import asyncio
import hashlib
import hmac
import json
from collections import defaultdict
from typing import Any

import pytest

from app.config import Settings
from app.container import ServiceContainer
from app.errors import GitHubAPIError, PaymentError
from app.jobs.job_queue import JobQueue
from app.models.domain.review_domain import AIReview
from app.models.domain.task_domain import BountyTask, TaskStatus
from app.services.payments.bounty_payout_service import BountyPayoutService
from app.services.payments.payment_service import PaymentReceipt
from app.services.pr_review.pr_analysis_service import PRAnalysisService
from app.services.pr_review.review_comment_service import ReviewCommentService
from app.services.resilience.circuit_breaker import CircuitBreakerRegistry
from app.services.resilience.error_recovery_service import RecoveryCoordinator
from app.services.workflow_service import ANALYSIS_JOB_TYPE, WorkflowService

WEBHOOK_SECRET = "test-secret"
INSTALLATION_ID = "4242"
REPOSITORY = "acme/widgets"


def make_settings(**overrides) -> Settings:
    values = {
        "GITHUB_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "GITHUB_APP_ID": "123",
        "GITHUB_APP_PRIVATE_KEY": "key",
        "OPENAI_API_KEY": "sk-test",
        "DATABASE_URL": None,
        "ESCROW_API_URL": "https://escrow.test",
        "ESCROW_API_KEY": "escrow-key",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def pr_payload(
    number: int = 7,
    body: str = "Closes #12",
    draft: bool = False,
    base_ref: str = "main",
    author: str = "octocat",
    merged: bool = False,
    default_branch: str = "main",
) -> dict[str, Any]:
    return {
        "number": number,
        "html_url": f"https://github.com/{REPOSITORY}/pull/{number}",
        "title": "Fix widget alignment",
        "body": body,
        "draft": draft,
        "merged": merged,
        "user": {"login": author},
        "base": {"ref": base_ref, "repo": {"default_branch": default_branch}},
    }


def webhook_payload(action: str, pull_request: dict | None = None, **extra) -> dict[str, Any]:
    payload = {
        "action": action,
        "installation": {"id": int(INSTALLATION_ID)},
        "repository": {"full_name": REPOSITORY},
    }
    if pull_request is not None:
        payload["pull_request"] = pull_request
    payload.update(extra)
    return payload


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


class FakeGitHub:
    """In-memory stand-in for ``GitHubAppClient``.

    Queue exceptions per method in ``failures`` to make the next calls fail.
    """

    def __init__(self):
        self.default_branch = "main"
        self.pull_requests: dict[int, dict] = {}
        self.files: dict[int, list[dict]] = {}
        self.issues: dict[int, dict] = {}
        self.file_contents: dict[str, str] = {}
        self.comments: dict[str, dict] = {}
        self.removed_labels: list[tuple] = []
        self.deleted_comments: list[str] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.calls: list[str] = []
        self._next_comment_id = 1000

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self.failures[name]:
            raise self.failures[name].pop(0)

    async def get_default_branch(self, installation_id, repository_name):
        self._maybe_fail("get_default_branch")
        return self.default_branch

    async def get_pull_request(self, installation_id, repository_name, pr_number):
        self._maybe_fail("get_pull_request")
        if pr_number not in self.pull_requests:
            raise GitHubAPIError("Not Found", 404, "get_pull_request")
        return self.pull_requests[pr_number]

    async def list_pull_request_files(self, installation_id, repository_name, pr_number):
        self._maybe_fail("list_pull_request_files")
        return self.files.get(pr_number, [])

    async def get_issue(self, installation_id, repository_name, issue_number):
        self._maybe_fail("get_issue")
        if issue_number not in self.issues:
            raise GitHubAPIError("Not Found", 404, "get_issue")
        return self.issues[issue_number]

    async def get_file_content(self, installation_id, repository_name, path):
        self._maybe_fail("get_file_content")
        return self.file_contents.get(path)

    async def list_issue_comments(self, installation_id, repository_name, issue_number):
        self._maybe_fail("list_issue_comments")
        return [c for c in self.comments.values() if c["issue_number"] == issue_number]

    async def get_comment(self, installation_id, repository_name, comment_id):
        self._maybe_fail("get_comment")
        if str(comment_id) not in self.comments:
            raise GitHubAPIError("Not Found", 404, "get_comment")
        return self.comments[str(comment_id)]

    async def create_comment(self, installation_id, repository_name, issue_number, body):
        self._maybe_fail("create_comment")
        self._next_comment_id += 1
        comment = {"id": self._next_comment_id, "issue_number": issue_number, "body": body}
        self.comments[str(comment["id"])] = comment
        return comment

    async def update_comment(self, installation_id, repository_name, comment_id, body):
        self._maybe_fail("update_comment")
        self.comments[str(comment_id)]["body"] = body
        return self.comments[str(comment_id)]

    async def delete_comment(self, installation_id, repository_name, comment_id):
        self._maybe_fail("delete_comment")
        self.deleted_comments.append(str(comment_id))
        self.comments.pop(str(comment_id), None)

    async def remove_label(self, installation_id, repository_name, issue_number, label):
        self._maybe_fail("remove_label")
        self.removed_labels.append((repository_name, issue_number, label))

    async def check_connectivity(self):
        self._maybe_fail("check_connectivity")

    async def close(self):
        pass


class FakeAI:
    def __init__(self, review: AIReview | None = None):
        self.review = review or AIReview(
            merge_score=82,
            rules_violated=["Missing tests"],
            rules_passed=["Links an issue"],
            summary="Solid change.",
            confidence=0.8,
        )
        self.prompts: list[str] = []
        self.error: Exception | None = None

    async def generate_review(self, prompt: str) -> AIReview:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.review

    async def generate_embedding(self, text: str) -> list[float]:
        return [0.1, 0.2, 0.3]

    async def check_connectivity(self):
        if self.error is not None:
            raise self.error

    async def close(self):
        pass


class FakeReviewRepository:
    def __init__(self):
        self.results: dict[tuple, Any] = {}
        self.comment_ids: dict[tuple, str] = {}

    async def save_result(self, result):
        self.results[(result.installation_id, result.repository_name, result.pr_number)] = result

    async def get_comment_id(self, installation_id, repository_name, pr_number):
        return self.comment_ids.get((installation_id, repository_name, pr_number))

    async def save_comment_id(self, installation_id, repository_name, pr_number, comment_id):
        self.comment_ids[(installation_id, repository_name, pr_number)] = comment_id


class FakeTaskRepository:
    """Tasks held in memory. Lookups yield to the loop so overlapping payouts interleave."""

    PAYABLE = (TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.MARKED_AS_COMPLETED)

    def __init__(self, tasks: list[BountyTask] | None = None):
        self.tasks = tasks or []
        self.completed: list[tuple[str, str]] = []
        self.complete_error: Exception | None = None
        self.claimed_from: dict[str, TaskStatus] = {}

    async def find_payable_task(self, installation_id, repository_name, issue_numbers, contributor_username):
        match = None
        for task in self.tasks:
            if (
                task.installation_id == installation_id
                and task.repository_name == repository_name
                and task.issue_number in issue_numbers
                and task.status in self.PAYABLE
                and not task.settled
                and task.contributor_username == contributor_username
            ):
                match = task
                break
        await asyncio.sleep(0)
        return match

    async def list_refundable_tasks(self, installation_id):
        return [
            task
            for task in self.tasks
            if task.installation_id == installation_id
            and task.status in (TaskStatus.OPEN, TaskStatus.IN_PROGRESS)
            and not task.settled
        ]

    async def claim_for_payout(self, task):
        if task.status not in self.PAYABLE or task.settled:
            return False
        self.claimed_from[task.id] = task.status
        task.status = TaskStatus.PAYOUT_PENDING
        return True

    async def release_payout_claim(self, task):
        task.status = self.claimed_from.pop(task.id)

    async def complete_task(self, task, tx_hash):
        if self.complete_error is not None:
            raise self.complete_error
        assert task.status is TaskStatus.PAYOUT_PENDING
        task.status = TaskStatus.COMPLETED
        task.settled = True
        self.completed.append((task.id, tx_hash))


class FakeInstallationRepository:
    def __init__(self, installations: dict[str, dict] | None = None, members: set[str] | None = None):
        self.installations = installations if installations is not None else {}
        self.members = members if members is not None else set()
        self.archived: list[dict] = []
        self.status_updates: list[tuple[str, str]] = []

    async def get_installation(self, installation_id):
        return self.installations.get(installation_id)

    async def is_member(self, installation_id, username):
        return username in self.members

    async def archive(self, installation_id, task_ids, refunded, tx_hash=None, refund_amount=0.0):
        self.archived.append(
            {
                "installation_id": installation_id,
                "task_ids": task_ids,
                "refunded": refunded,
                "tx_hash": tx_hash,
                "refund_amount": refund_amount,
            }
        )

    async def set_status(self, installation_id, status):
        self.status_updates.append((installation_id, status))
        return installation_id in self.installations


class FakeEscrow:
    def __init__(self):
        self.releases: list[tuple] = []
        self.refunds: list[tuple] = []
        self.idempotency_keys: list[str | None] = []
        self.error: PaymentError | None = None

    async def release_funds(self, escrow_ref, destination, amount, idempotency_key=None):
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.idempotency_keys.append(idempotency_key)
        self.releases.append((escrow_ref, destination, amount))
        return PaymentReceipt(tx_hash=f"tx-release-{len(self.releases)}")

    async def refund(self, escrow_ref, amount):
        if self.error is not None:
            raise self.error
        self.refunds.append((escrow_ref, amount))
        return PaymentReceipt(tx_hash=f"tx-refund-{len(self.refunds)}")

    async def close(self):
        pass


class FakeDB:
    def __init__(self, healthy: bool = True):
        self.healthy = healthy

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def ping(self):
        if not self.healthy:
            raise RuntimeError("connection refused")

    async def health_check(self):
        if not self.healthy:
            return {"healthy": False, "error": "Connection test failed: connection refused"}
        return {"healthy": True, "pool_stats": {"pool_size": 2, "pool_available": 2, "requests_waiting": 0}}


def make_task(**overrides) -> BountyTask:
    values = {
        "id": "task-1",
        "installation_id": INSTALLATION_ID,
        "issue_number": 12,
        "bounty": 150.0,
        "status": TaskStatus.IN_PROGRESS,
        "settled": False,
        "creator_id": "creator-1",
        "contributor_id": "user-1",
        "contributor_username": "octocat",
        "contributor_wallet": "GWALLET",
        "escrow_ref": "escrow-1",
        "repository_name": REPOSITORY,
    }
    values.update(overrides)
    return BountyTask(**values)


def build_test_container(
    settings: Settings | None = None,
    github: FakeGitHub | None = None,
    ai: FakeAI | None = None,
    tasks: FakeTaskRepository | None = None,
    installations: FakeInstallationRepository | None = None,
    escrow: FakeEscrow | None = None,
    db: FakeDB | None = None,
) -> ServiceContainer:
    """Same wiring as ``build_container`` with every I/O collaborator faked."""
    settings = settings or make_settings()
    github = github or FakeGitHub()
    ai = ai or FakeAI()
    escrow = escrow or FakeEscrow()
    db = db or FakeDB()
    tasks = tasks or FakeTaskRepository()
    installations = installations or FakeInstallationRepository()
    review_repository = FakeReviewRepository()

    circuits = CircuitBreakerRegistry()
    recovery = RecoveryCoordinator(
        settings,
        circuits,
        probes={"database": db.ping, "github": github.check_connectivity, "ai-provider": ai.check_connectivity},
    )
    job_queue = JobQueue(retry_base_seconds=0, poll_interval=0.01)
    workflow = WorkflowService(
        job_queue,
        PRAnalysisService(github, ai, circuits),
        ReviewCommentService(github, review_repository, base_delay=0),
        BountyPayoutService(tasks, installations, escrow, github),
        github,
        review_repository=review_repository,
        installation_repository=installations,
    )
    job_queue.register_handler(ANALYSIS_JOB_TYPE, workflow.run_analysis_job)

    return ServiceContainer(
        settings=settings,
        db=db,
        github=github,
        ai_service=ai,
        escrow=escrow,
        circuits=circuits,
        recovery=recovery,
        job_queue=job_queue,
        workflow=workflow,
    )


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def review_repository():
    return FakeReviewRepository()


@pytest.fixture
def settings():
    return make_settings()
