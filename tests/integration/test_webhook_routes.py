import pytest
from fastapi.testclient import TestClient

from app.errors import PaymentError
from app.main import create_app
from tests.conftest import (
    INSTALLATION_ID,
    REPOSITORY,
    FakeEscrow,
    FakeGitHub,
    FakeTaskRepository,
    build_test_container,
    encode,
    make_settings,
    make_task,
    pr_payload,
    sign,
    webhook_payload,
)


@pytest.fixture
def github():
    github = FakeGitHub()
    github.pull_requests[7] = pr_payload()
    return github


def _app(github=None, tasks=None, escrow=None, **settings):
    app_settings = make_settings(**settings)
    return create_app(
        app_settings,
        lambda s: build_test_container(settings=s, github=github, tasks=tasks, escrow=escrow),
    )


def _deliver(client: TestClient, event_type: str, payload: dict, signature: str | None = "sign"):
    raw = encode(payload)
    headers = {"Content-Type": "application/json", "X-GitHub-Event": event_type, "X-GitHub-Delivery": "d-1"}
    if signature == "sign":
        headers["X-Hub-Signature-256"] = sign(raw)
    elif signature is not None:
        headers["X-Hub-Signature-256"] = signature
    return client.post("/webhooks/github", content=raw, headers=headers)


def test_opened_pr_is_queued(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "pull_request", webhook_payload("opened", pr_payload()))

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "PR webhook processed successfully - analysis queued"
    assert body["data"]["status"] == "queued"
    assert body["data"]["installationId"] == INSTALLATION_ID
    assert body["data"]["repositoryName"] == REPOSITORY


def test_draft_pr_is_not_eligible(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "pull_request", webhook_payload("opened", pr_payload(draft=True)))

    assert response.status_code == 200
    assert response.json()["message"] == "PR #7 is not eligible for analysis: PR is in draft status"


def test_closed_unmerged_pr_is_ignored(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "pull_request", webhook_payload("closed", pr_payload(merged=False)))

    assert response.status_code == 200
    assert response.json()["message"] == "PR action not processed"


def test_unhandled_event_type(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "push", {"ref": "refs/heads/main"})

    assert response.status_code == 200
    assert response.json()["message"] == "Event type not processed"


def test_invalid_signature_is_rejected(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "pull_request", webhook_payload("opened", pr_payload()), signature="sha256=bad")

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid webhook signature", "code": "INVALID_SIGNATURE"}


def test_missing_signature_is_rejected(github):
    with TestClient(_app(github)) as client:
        response = _deliver(client, "pull_request", webhook_payload("opened", pr_payload()), signature=None)

    assert response.status_code == 401
    assert response.json()["code"] == "MISSING_SIGNATURE"


def test_missing_event_header_is_malformed(github):
    raw = encode(webhook_payload("opened", pr_payload()))
    with TestClient(_app(github)) as client:
        response = client.post(
            "/webhooks/github",
            content=raw,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(raw)},
        )

    assert response.status_code == 400
    assert response.json()["code"] == "MALFORMED_PAYLOAD"


def test_merged_pr_triggers_payout():
    escrow = FakeEscrow()
    tasks = FakeTaskRepository([make_task()])
    with TestClient(_app(FakeGitHub(), tasks=tasks, escrow=escrow)) as client:
        response = _deliver(client, "pull_request", webhook_payload("closed", pr_payload(merged=True)))

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "PR merged - payment processed successfully"
    assert body["data"]["status"] == "paid"
    assert tasks.completed == [("task-1", "tx-release-1")]


def test_failed_release_returns_payment_error():
    escrow = FakeEscrow()
    escrow.error = PaymentError("Escrow release_funds failed (500)", status_code=500, operation="release_funds")
    tasks = FakeTaskRepository([make_task()])
    with TestClient(_app(FakeGitHub(), tasks=tasks, escrow=escrow)) as client:
        response = _deliver(client, "pull_request", webhook_payload("closed", pr_payload(merged=True)))

    assert response.status_code == 502
    assert response.json()["code"] == "PAYMENT_ERROR"
    assert tasks.completed == []


def test_manual_analysis_requires_fields(github):
    with TestClient(_app(github)) as client:
        response = client.post("/webhooks/github/manual-analysis", json={"installationId": 4242})

    assert response.status_code == 400
    assert response.json()["error"] == "Missing required fields: repositoryName, prNumber"


def test_manual_analysis_queues_and_reports_job(github):
    with TestClient(_app(github)) as client:
        response = client.post(
            "/webhooks/github/manual-analysis",
            json={"installationId": 4242, "repositoryName": REPOSITORY, "prNumber": 7},
        )
        job_id = response.json()["data"]["jobId"]
        job = client.get(f"/webhooks/jobs/{job_id}")

    assert response.status_code == 202
    assert response.json()["data"]["reason"] == "manual_trigger"
    assert job.status_code == 200
    assert job.json()["data"]["id"] == job_id
    assert job.json()["data"]["data"]["pr_number"] == 7


def test_manual_analysis_with_wrongly_typed_field(github):
    with TestClient(_app(github)) as client:
        response = client.post(
            "/webhooks/github/manual-analysis",
            json={"installationId": 4242, "repositoryName": REPOSITORY, "prNumber": "abc"},
        )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "VALIDATION_ERROR"
    assert body["error"].startswith("Invalid request: prNumber")


def test_jobs_for_pr_are_listed(github):
    with TestClient(_app(github)) as client:
        queued = client.post(
            "/webhooks/github/manual-analysis",
            json={"installationId": 4242, "repositoryName": REPOSITORY, "prNumber": 7},
        )
        listed = client.get(
            "/webhooks/jobs",
            params={"installationId": INSTALLATION_ID, "repositoryName": REPOSITORY, "prNumber": 7},
        )
        other = client.get(
            "/webhooks/jobs",
            params={"installationId": INSTALLATION_ID, "repositoryName": REPOSITORY, "prNumber": 8},
        )

    assert listed.status_code == 200
    assert [job["id"] for job in listed.json()["data"]] == [queued.json()["data"]["jobId"]]
    assert other.json() == {"success": True, "data": []}


def test_jobs_for_pr_requires_query(github):
    with TestClient(_app(github)) as client:
        response = client.get("/webhooks/jobs", params={"installationId": INSTALLATION_ID})

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_manual_analysis_unknown_pr(github):
    with TestClient(_app(github)) as client:
        response = client.post(
            "/webhooks/github/manual-analysis",
            json={"installationId": 4242, "repositoryName": REPOSITORY, "prNumber": 99},
        )

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_unexpected_error_is_rendered(github):
    github.failures["get_pull_request"].append(RuntimeError("kaboom"))
    with TestClient(_app(github), raise_server_exceptions=False) as client:
        response = client.post(
            "/webhooks/github/manual-analysis",
            json={"installationId": 4242, "repositoryName": REPOSITORY, "prNumber": 7},
        )

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error", "code": "UNEXPECTED_ERROR"}


def test_unknown_job_is_404(github):
    with TestClient(_app(github)) as client:
        response = client.get("/webhooks/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "Job not found"


def test_queue_stats(github):
    with TestClient(_app(github)) as client:
        response = client.get("/webhooks/queue/stats")

    assert response.status_code == 200
    assert set(response.json()) == {"pending", "active", "completed", "failed", "activeJobsCount"}


def test_webhook_health(github):
    with TestClient(_app(github)) as client:
        response = client.get("/webhooks/health")

    assert response.status_code == 200
    body = response.json()
    assert body["healthy"] is True
    assert body["services"]["jobQueue"] is True
    assert body["recovery"]["in_progress"] is False


def test_webhook_health_without_secret(github):
    with TestClient(_app(github, GITHUB_WEBHOOK_SECRET=None)) as client:
        response = client.get("/webhooks/health")

    assert response.status_code == 503
    assert response.json()["services"]["webhookSecret"] is False


def test_webhook_without_secret_is_configuration_error(github):
    with TestClient(_app(github, GITHUB_WEBHOOK_SECRET=None)) as client:
        response = _deliver(client, "pull_request", webhook_payload("opened", pr_payload()))

    assert response.status_code == 500
    assert response.json()["code"] == "CONFIGURATION_ERROR"
