"""
Webhook event classification.

``classify_event`` is a pure function of (event type, action, payload). The
default-branch rule needs GitHub and lives in ``check_default_branch``, which
never blocks processing when the lookup fails.
"""

from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.webhook_domain import Classification, Eligibility, EventRoute, SkipReason
from app.services.pr_review.pr_analysis_service import pull_request_from_payload, should_analyze_pr

logger = get_logger(__name__)

ANALYZE_ACTIONS = frozenset({"opened", "synchronize", "ready_for_review"})
INSTALLATION_ACTIONS = frozenset({"created", "deleted", "suspend", "unsuspend"})
REVIEW_COMMAND = "review"


def classify_event(event_type: str, action: str | None, payload: dict[str, Any]) -> Classification:
    if event_type == "pull_request":
        return _classify_pull_request(action, payload)

    if event_type == "installation":
        if action in INSTALLATION_ACTIONS:
            return Classification(EventRoute.INSTALLATION, event_type, action)
        return Classification.skip(event_type, action, SkipReason.ACTION_NOT_PROCESSED, action=action)

    if event_type == "issue_comment":
        return _classify_comment(action, payload)

    return Classification.skip(event_type, action, SkipReason.EVENT_NOT_PROCESSED, event_type=event_type)


def _classify_pull_request(action: str | None, payload: dict[str, Any]) -> Classification:
    pull_request = payload.get("pull_request") or {}

    if action == "closed":
        if pull_request.get("merged") is True:
            return Classification(EventRoute.PAYOUT, "pull_request", action)
        return Classification.skip("pull_request", action, SkipReason.ACTION_NOT_PROCESSED, action=action)

    if action not in ANALYZE_ACTIONS:
        return Classification.skip("pull_request", action, SkipReason.ACTION_NOT_PROCESSED, action=action)

    installation_id = (payload.get("installation") or {}).get("id")
    repository_name = (payload.get("repository") or {}).get("full_name") or ""
    pr_data = pull_request_from_payload(pull_request, str(installation_id), repository_name)

    eligibility = should_analyze_pr(pr_data)
    if not eligibility.eligible:
        return Classification.skip("pull_request", action, eligibility.reason, pr_number=pr_data.pr_number)

    return Classification(
        EventRoute.ANALYZE,
        "pull_request",
        action,
        details={"linked_issues": [issue.number for issue in pr_data.linked_issues]},
    )


def _classify_comment(action: str | None, payload: dict[str, Any]) -> Classification:
    if action != "created":
        return Classification.skip("issue_comment", action, SkipReason.ACTION_NOT_PROCESSED, action=action)

    issue = payload.get("issue") or {}
    if not issue.get("pull_request"):
        return Classification.skip("issue_comment", action, SkipReason.NOT_PULL_REQUEST_COMMENT)

    body = ((payload.get("comment") or {}).get("body") or "").strip()
    if body.lower() != REVIEW_COMMAND:
        return Classification.skip("issue_comment", action, SkipReason.NOT_REVIEW_COMMAND)

    return Classification(EventRoute.REVIEW_COMMENT, "issue_comment", action, details={"pr_number": issue.get("number")})


async def check_default_branch(
    github,
    installation_id: str,
    repository_name: str,
    target_branch: str | None,
    known_default: str | None = None,
) -> Eligibility:
    """
    Skip PRs that do not target the repository's default branch.

    Uses ``known_default`` from the payload when present, otherwise asks
    GitHub. A failed lookup logs a warning and lets the PR through.
    """
    default_branch = known_default
    if not default_branch:
        try:
            default_branch = await github.get_default_branch(installation_id, repository_name)
        except Exception as e:
            logger.warning(
                "Failed to validate default branch, continuing with processing",
                repository_name=repository_name,
                target_branch=target_branch,
                error=str(e),
            )
            return Eligibility(True)

    if target_branch and default_branch and target_branch != default_branch:
        logger.info(
            "PR skipped - not targeting default branch",
            repository_name=repository_name,
            target_branch=target_branch,
            default_branch=default_branch,
        )
        return Eligibility(False, SkipReason.NOT_DEFAULT_BRANCH)

    return Eligibility(True)
