import asyncio

import pytest

from app.errors import AppError, ErrorKind, PaymentError
from app.models.domain.task_domain import InstallationStatus, PayoutStatus, TaskStatus
from app.services.payments.bounty_payout_service import BountyPayoutService

from tests.conftest import (
    INSTALLATION_ID,
    REPOSITORY,
    FakeEscrow,
    FakeGitHub,
    FakeInstallationRepository,
    FakeTaskRepository,
    make_task,
    pr_payload,
)


def _service(tasks=None, installations=None, escrow=None, github=None):
    return BountyPayoutService(
        tasks or FakeTaskRepository(),
        installations or FakeInstallationRepository(),
        escrow or FakeEscrow(),
        github,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.MARKED_AS_COMPLETED])
async def test_merged_pr_pays_out_matching_task(status):
    task = make_task(status=status)
    tasks = FakeTaskRepository([task])
    escrow = FakeEscrow()

    outcome = await _service(tasks, escrow=escrow).handle_merged_pr(
        INSTALLATION_ID, REPOSITORY, pr_payload(merged=True)
    )

    assert outcome.status is PayoutStatus.PAID
    assert outcome.message == "PR merged - payment processed successfully"
    assert outcome.tx_hash == "tx-release-1"
    assert outcome.amount == 150.0
    assert escrow.releases == [("escrow-1", "GWALLET", 150.0)]
    assert task.status is TaskStatus.COMPLETED
    assert task.settled is True
    assert tasks.completed == [("task-1", "tx-release-1")]
    assert escrow.idempotency_keys == ["task-1"]


@pytest.mark.asyncio
async def test_no_linked_issue_is_benign():
    escrow = FakeEscrow()

    outcome = await _service(FakeTaskRepository([make_task()]), escrow=escrow).handle_merged_pr(
        INSTALLATION_ID, REPOSITORY, pr_payload(body="Refactor only", merged=True)
    )

    assert outcome.status is PayoutStatus.NO_LINKED_ISSUES
    assert outcome.message == "No linked issues found - no payment triggered"
    assert escrow.releases == []


@pytest.mark.asyncio
async def test_issue_in_other_repository_is_ignored():
    outcome = await _service(FakeTaskRepository([make_task()])).handle_merged_pr(
        INSTALLATION_ID, REPOSITORY, pr_payload(body="Closes other/repo#12", merged=True)
    )

    assert outcome.status is PayoutStatus.NO_LINKED_ISSUES


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "task_overrides",
    [
        {"status": TaskStatus.COMPLETED},
        {"settled": True},
        {"issue_number": 99},
        {"contributor_username": "someone-else"},
    ],
)
async def test_no_matching_task(task_overrides):
    escrow = FakeEscrow()

    outcome = await _service(FakeTaskRepository([make_task(**task_overrides)]), escrow=escrow).handle_merged_pr(
        INSTALLATION_ID, REPOSITORY, pr_payload(merged=True)
    )

    assert outcome.status is PayoutStatus.NO_MATCHING_TASK
    assert outcome.message == "No matching active or submitted task found"
    assert escrow.releases == []


@pytest.mark.asyncio
async def test_contributor_without_wallet_is_benign():
    task = make_task(contributor_wallet=None)
    escrow = FakeEscrow()

    outcome = await _service(FakeTaskRepository([task]), escrow=escrow).handle_merged_pr(
        INSTALLATION_ID, REPOSITORY, pr_payload(merged=True)
    )

    assert outcome.status is PayoutStatus.NO_WALLET
    assert outcome.task_id == "task-1"
    assert escrow.releases == []
    assert task.status is TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_release_failure_leaves_task_untouched():
    task = make_task()
    tasks = FakeTaskRepository([task])
    escrow = FakeEscrow()
    escrow.error = PaymentError("insufficient escrow balance", 409, "release_funds")

    with pytest.raises(AppError) as exc_info:
        await _service(tasks, escrow=escrow).handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))

    assert exc_info.value.kind is ErrorKind.PAYMENT
    assert task.status is TaskStatus.IN_PROGRESS
    assert task.settled is False
    assert tasks.completed == []


@pytest.mark.asyncio
async def test_overlapping_deliveries_release_once():
    task = make_task()
    tasks = FakeTaskRepository([task])
    escrow = FakeEscrow()
    service = _service(tasks, escrow=escrow)
    payload = pr_payload(merged=True)

    first, second = await asyncio.gather(
        service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, payload),
        service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, payload),
    )

    assert sorted([first.status, second.status], key=lambda s: s.value) == [
        PayoutStatus.ALREADY_CLAIMED,
        PayoutStatus.PAID,
    ]
    assert escrow.releases == [("escrow-1", "GWALLET", 150.0)]
    assert tasks.completed == [("task-1", "tx-release-1")]
    assert task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_redelivered_merge_after_payout_is_benign():
    tasks = FakeTaskRepository([make_task()])
    escrow = FakeEscrow()
    service = _service(tasks, escrow=escrow)

    await service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))
    again = await service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))

    assert again.status is PayoutStatus.NO_MATCHING_TASK
    assert len(escrow.releases) == 1


@pytest.mark.asyncio
async def test_release_failure_frees_claim_for_retry():
    task = make_task(status=TaskStatus.MARKED_AS_COMPLETED)
    tasks = FakeTaskRepository([task])
    escrow = FakeEscrow()
    escrow.error = PaymentError("escrow unavailable", 503, "release_funds")
    service = _service(tasks, escrow=escrow)

    with pytest.raises(AppError):
        await service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))
    assert task.status is TaskStatus.MARKED_AS_COMPLETED

    escrow.error = None
    outcome = await service.handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))

    assert outcome.status is PayoutStatus.PAID
    assert escrow.idempotency_keys == ["task-1"]


@pytest.mark.asyncio
async def test_task_update_failure_after_release_keeps_tx_hash():
    tasks = FakeTaskRepository([make_task()])
    tasks.complete_error = RuntimeError("deadlock detected")

    with pytest.raises(AppError) as exc_info:
        await _service(tasks).handle_merged_pr(INSTALLATION_ID, REPOSITORY, pr_payload(merged=True))

    assert exc_info.value.kind is ErrorKind.DATABASE
    assert exc_info.value.details["tx_hash"] == "tx-release-1"
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_archive_refunds_total_once_and_removes_markers():
    tasks = FakeTaskRepository(
        [
            make_task(id="t1", bounty=100.0, status=TaskStatus.OPEN, bounty_label="💰 Bounty", bounty_comment_id="55"),
            make_task(id="t2", bounty=50.5, issue_number=13),
            make_task(id="t3", bounty=999.0, status=TaskStatus.COMPLETED, settled=True),
        ]
    )
    installations = FakeInstallationRepository({INSTALLATION_ID: {"id": INSTALLATION_ID, "escrow_ref": "inst-escrow"}})
    escrow = FakeEscrow()
    github = FakeGitHub()

    outcome = await _service(tasks, installations, escrow, github).archive_installation(INSTALLATION_ID)

    assert outcome.found
    assert outcome.refunded_amount == 150.5
    assert outcome.refunded_task_ids == ["t1", "t2"]
    assert escrow.refunds == [("inst-escrow", 150.5)]
    assert installations.archived == [
        {
            "installation_id": INSTALLATION_ID,
            "task_ids": ["t1", "t2"],
            "refunded": True,
            "tx_hash": "tx-refund-1",
            "refund_amount": 150.5,
        }
    ]
    assert github.removed_labels == [(REPOSITORY, 12, "💰 Bounty")]
    assert github.deleted_comments == ["55"]


@pytest.mark.asyncio
async def test_archive_unknown_installation():
    escrow = FakeEscrow()

    outcome = await _service(escrow=escrow).archive_installation("missing")

    assert not outcome.found
    assert escrow.refunds == []


@pytest.mark.asyncio
async def test_archive_continues_when_refund_fails():
    tasks = FakeTaskRepository([make_task()])
    installations = FakeInstallationRepository({INSTALLATION_ID: {"id": INSTALLATION_ID, "escrow_ref": None}})
    escrow = FakeEscrow()
    escrow.error = PaymentError("escrow offline", 503, "refund")

    outcome = await _service(tasks, installations, escrow).archive_installation(INSTALLATION_ID)

    assert outcome.refunded_amount == 0.0
    assert installations.archived[0]["refunded"] is False


@pytest.mark.asyncio
async def test_marker_removal_failure_is_not_fatal():
    tasks = FakeTaskRepository([make_task(bounty_label="bounty")])
    installations = FakeInstallationRepository({INSTALLATION_ID: {"id": INSTALLATION_ID}})
    github = FakeGitHub()
    github.failures["remove_label"].append(RuntimeError("boom"))

    outcome = await _service(tasks, installations, github=github).archive_installation(INSTALLATION_ID)

    assert outcome.found
    assert len(installations.archived) == 1


@pytest.mark.asyncio
async def test_reactivate_installation():
    installations = FakeInstallationRepository({INSTALLATION_ID: {"id": INSTALLATION_ID}})

    updated = await _service(installations=installations).reactivate_installation(INSTALLATION_ID)

    assert updated is True
    assert installations.status_updates == [(INSTALLATION_ID, InstallationStatus.ACTIVE)]
