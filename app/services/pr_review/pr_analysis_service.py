"""
PR analysis pipeline.

Extracts linked issues from the PR body, collects changed files, renders the
prompt blob and asks the AI service for a review. The pure helpers at module
level (issue extraction, eligibility, prompt rendering) do no I/O and are
shared with the event classifier and the payout path.
"""

import re
import time
from typing import Any

from app.errors import AIServiceError, AppError, ErrorKind, GitHubAPIError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.recovery_domain import ServiceName
from app.models.domain.review_domain import (
    AnalysisRequest,
    ChangedFile,
    IssueLabel,
    LinkedIssue,
    PullRequestData,
    ReviewContext,
    ReviewResult,
)
from app.models.domain.webhook_domain import Eligibility, SkipReason
from app.services.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError

logger = get_logger(__name__)

README_PROMPT_LIMIT = 4000  # characters
STYLE_GUIDE_PROMPT_LIMIT = 4000
CHUNK_PROMPT_LIMIT = 1500

_ISSUE_REF_RE = re.compile(
    r"\b(?P<keyword>close[sd]?|fix(?:e[sd])?|resolve[sd]?):?\s+"
    r"(?:https?://github\.com/(?P<url_repo>[\w.-]+/[\w.-]+)/issues/(?P<url_number>\d+)"
    r"|(?P<short_repo>[\w.-]+/[\w.-]+)?#(?P<number>\d+))",
    re.IGNORECASE,
)


def _link_type(keyword: str) -> str:
    keyword = keyword.lower()
    if keyword.startswith("clos"):
        return "closes"
    if keyword.startswith("fix"):
        return "fixes"
    return "resolves"


def extract_linked_issues(body: str | None, repository_name: str) -> list[LinkedIssue]:
    """
    Find issues a PR body closes via GitHub closing keywords.

    Handles ``closes #12``, ``fixes owner/repo#12`` and full issue URLs.
    Bare ``#12`` references resolve against ``repository_name``. Duplicates
    (same repository and number) are kept once, in first-seen order.
    """
    issues: list[LinkedIssue] = []
    seen: set[tuple[str, int]] = set()

    for match in _ISSUE_REF_RE.finditer(body or ""):
        if match.group("url_number"):
            repository = match.group("url_repo")
            number = int(match.group("url_number"))
        else:
            repository = match.group("short_repo") or repository_name
            number = int(match.group("number"))

        key = (repository.lower(), number)
        if key in seen:
            continue
        seen.add(key)

        issues.append(
            LinkedIssue(
                number=number,
                url=f"https://github.com/{repository}/issues/{number}",
                link_type=_link_type(match.group("keyword")),
                repository=repository,
            )
        )

    return issues


def normalize_file_status(status: str | None) -> str:
    if status in ("added", "removed"):
        return status
    return "modified"


def pull_request_from_payload(
    pull_request: dict[str, Any],
    installation_id: str,
    repository_name: str,
    manual_trigger: bool = False,
) -> PullRequestData:
    """Build a ``PullRequestData`` from a webhook or REST pull request object."""
    body = pull_request.get("body") or ""
    return PullRequestData(
        installation_id=str(installation_id),
        repository_name=repository_name,
        pr_number=pull_request.get("number"),
        pr_url=pull_request.get("html_url") or "",
        title=pull_request.get("title") or "",
        body=body,
        author=(pull_request.get("user") or {}).get("login") or "",
        is_draft=bool(pull_request.get("draft")),
        base_branch=(pull_request.get("base") or {}).get("ref"),
        linked_issues=extract_linked_issues(body, repository_name),
        manual_trigger=manual_trigger,
    )


def should_analyze_pr(pr_data: PullRequestData) -> Eligibility:
    """
    Decide whether a PR is worth reviewing. Pure; call before any network I/O.

    Drafts are never analyzed. A PR must link at least one issue unless the
    review was requested manually.
    """
    if pr_data.is_draft:
        return Eligibility(False, SkipReason.DRAFT)
    if not pr_data.linked_issues and not pr_data.manual_trigger:
        return Eligibility(False, SkipReason.NO_LINKED_ISSUES)
    return Eligibility(True)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def _format_labels(labels: list[IssueLabel]) -> str:
    if not labels:
        return "none"
    return ", ".join(f"{label.name} ({label.description})" if label.description else label.name for label in labels)


def build_prompt(pr_data: PullRequestData, context: ReviewContext | None = None) -> str:
    """
    Render the text blob handed to the AI service.

    Output depends only on the inputs; files and issues keep their given order.
    """
    issue_lines = []
    for issue in pr_data.linked_issues:
        issue_lines.append(
            f"- #{issue.number} ({issue.url})\n"
            f"  title: {issue.title or 'Unknown'}\n"
            f"  body: {issue.body.strip() or 'No description'}\n"
            f"  labels: {_format_labels(issue.labels)}"
        )

    file_lines = []
    for file in pr_data.changed_files:
        line = f"{file.filename} ({file.status}, +{file.additions}/-{file.deletions})"
        if file.previous_filename:
            line += f" (renamed from {file.previous_filename})"
        file_lines.append(line)

    diffs = [f"--- {file.filename} ({file.status}) ---\n{file.patch or '(no patch available)'}" for file in pr_data.changed_files]

    sections = [
        "Here's the pull request summary:",
        "PULL REQUEST CHANGES:\n"
        f"Repository: {pr_data.repository_name}\n"
        f"PR #{pr_data.pr_number}: {pr_data.title}\n"
        f"Author: {pr_data.author}",
        f"Body:\n{pr_data.body.strip() or 'No body provided'}",
        "Linked Issue(s):\n" + ("\n\n".join(issue_lines) if issue_lines else "None (manual review request)"),
        "CHANGED FILES:\n" + ("\n".join(file_lines) if file_lines else "No files changed"),
        "CODE CHANGES PREVIEW:\n" + "\n\n".join(diffs),
    ]

    if context is not None and not context.is_empty:
        context_parts = []
        if context.readme:
            context_parts.append(f"README:\n{_truncate(context.readme.strip(), README_PROMPT_LIMIT)}")
        if context.style_guide:
            context_parts.append(
                f"CONTRIBUTING GUIDELINES:\n{_truncate(context.style_guide.strip(), STYLE_GUIDE_PROMPT_LIMIT)}"
            )
        for chunk in context.relevant_chunks:
            context_parts.append(
                f"RELATED CODE ({chunk.file_path}, similarity {chunk.similarity:.2f}):\n"
                f"{_truncate(chunk.content, CHUNK_PROMPT_LIMIT)}"
            )
        sections.append("REPOSITORY CONTEXT:\n" + "\n\n".join(context_parts))

    return "\n\n".join(sections)


class PRAnalysisService:
    """
    Runs the review pipeline for one pull request.

    GitHub and AI calls go through their circuit breakers; context enrichment
    is optional and never fails the pipeline.
    """

    def __init__(self, github, ai_service, circuits: CircuitBreakerRegistry, enrichment=None):
        self.github = github
        self.ai_service = ai_service
        self.circuits = circuits
        self.enrichment = enrichment

    async def _github_call(self, operation):
        return await self.circuits.get(ServiceName.GITHUB.value).execute(operation)

    async def load_pull_request(self, request: AnalysisRequest) -> PullRequestData:
        """Fetch the current PR state for a queued analysis request."""
        pull_request = await self._github_call(
            lambda: self.github.get_pull_request(request.installation_id, request.repository_name, request.pr_number)
        )
        return pull_request_from_payload(
            pull_request, request.installation_id, request.repository_name, request.manual_trigger
        )

    async def fetch_issue_details(self, pr_data: PullRequestData) -> list[LinkedIssue]:
        """Fill in title, body and labels. Issues that cannot be fetched keep empty details."""
        for issue in pr_data.linked_issues:
            repository = issue.repository or pr_data.repository_name
            try:
                data = await self.github.get_issue(pr_data.installation_id, repository, issue.number)
            except GitHubAPIError as e:
                logger.warning(
                    "Failed to fetch linked issue details",
                    repository_name=repository,
                    issue_number=issue.number,
                    status_code=e.status_code,
                )
                continue

            issue.title = data.get("title") or ""
            issue.body = data.get("body") or ""
            issue.url = data.get("html_url") or issue.url
            issue.labels = [
                IssueLabel(name=label.get("name", ""), description=label.get("description"))
                for label in data.get("labels") or []
                if isinstance(label, dict)
            ]
        return pr_data.linked_issues

    async def fetch_changed_files(self, installation_id: str, repository_name: str, pr_number: int) -> list[ChangedFile]:
        files = await self._github_call(
            lambda: self.github.list_pull_request_files(installation_id, repository_name, pr_number)
        )
        return [
            ChangedFile(
                filename=file["filename"],
                status=normalize_file_status(file.get("status")),
                additions=file.get("additions", 0),
                deletions=file.get("deletions", 0),
                patch=file.get("patch") or "",
                previous_filename=file.get("previous_filename"),
            )
            for file in files
        ]

    async def analyze(self, pr_data: PullRequestData) -> ReviewResult:
        """
        Review a pull request.

        Raises:
            AppError(NOT_ELIGIBLE): draft or no linked issues
            AppError: GitHub or AI failure, converted from the collaborator error
        """
        eligibility = should_analyze_pr(pr_data)
        if not eligibility.eligible:
            raise AppError(
                ErrorKind.NOT_ELIGIBLE,
                f"PR #{pr_data.pr_number} is not eligible for analysis: {eligibility.message}",
                {"reason": eligibility.reason.value},
            )

        started = time.monotonic()
        log = logger.bind(
            installation_id=pr_data.installation_id,
            repository_name=pr_data.repository_name,
            pr_number=pr_data.pr_number,
        )
        log.info("Starting PR analysis", manual_trigger=pr_data.manual_trigger)

        try:
            await self.fetch_issue_details(pr_data)
            if not pr_data.changed_files:
                pr_data.changed_files = await self.fetch_changed_files(
                    pr_data.installation_id, pr_data.repository_name, pr_data.pr_number
                )

            context = ReviewContext()
            if self.enrichment is not None:
                context = await self.enrichment.build_context(pr_data)

            prompt = build_prompt(pr_data, context)
            review = await self.circuits.get(ServiceName.AI_PROVIDER.value).execute(
                lambda: self.ai_service.generate_review(prompt)
            )
        except (AIServiceError, GitHubAPIError, CircuitOpenError) as e:
            log.error("PR analysis failed", error=str(e), error_type=type(e).__name__)
            raise AppError.wrap(e) from e

        result = ReviewResult(
            installation_id=pr_data.installation_id,
            repository_name=pr_data.repository_name,
            pr_number=pr_data.pr_number,
            merge_score=review.merge_score,
            rules_violated=review.rules_violated,
            rules_passed=review.rules_passed,
            suggestions=review.suggestions,
            review_status="COMPLETED",
            summary=review.summary,
            confidence=review.confidence,
            processing_time=round(time.monotonic() - started, 3),
        )
        log.info(
            "PR analysis completed",
            merge_score=result.merge_score,
            processing_time=result.processing_time,
            changed_files=len(pr_data.changed_files),
        )
        return result
