"""
Domain models for the PR review pipeline.

Pull request snapshots and linked issues are plain dataclasses built by the
analysis service; ``ReviewResult`` is a pydantic model because it crosses the
persistence and comment-posting boundaries and must be validated there.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

FileStatus = Literal["added", "modified", "removed"]
LinkType = Literal["closes", "resolves", "fixes"]


@dataclass(slots=True)
class IssueLabel:
    name: str
    description: str | None = None


@dataclass(slots=True)
class LinkedIssue:
    """An issue referenced from a PR body by a closing keyword."""

    number: int
    url: str
    link_type: LinkType
    title: str = ""
    body: str = ""
    labels: list[IssueLabel] = field(default_factory=list)
    repository: str | None = None


@dataclass(slots=True)
class ChangedFile:
    filename: str
    status: FileStatus
    additions: int
    deletions: int
    patch: str = ""
    previous_filename: str | None = None


@dataclass(slots=True)
class CodeChunk:
    """Previously indexed code fragment returned by similarity search."""

    file_path: str
    content: str
    similarity: float
    chunk_index: int = 0


@dataclass(slots=True)
class ReviewContext:
    """Optional repository context appended to the review prompt."""

    readme: str | None = None
    style_guide: str | None = None
    relevant_chunks: list[CodeChunk] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.readme or self.style_guide or self.relevant_chunks)


@dataclass(slots=True)
class PullRequestData:
    """Everything the pipeline knows about one pull request."""

    installation_id: str
    repository_name: str
    pr_number: int
    pr_url: str
    title: str
    body: str
    author: str
    is_draft: bool
    base_branch: str | None = None
    linked_issues: list[LinkedIssue] = field(default_factory=list)
    changed_files: list[ChangedFile] = field(default_factory=list)
    manual_trigger: bool = False


@dataclass(slots=True)
class AnalysisRequest:
    """Input of a queued analysis job."""

    installation_id: str
    repository_name: str
    pr_number: int
    manual_trigger: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "installation_id": self.installation_id,
            "repository_name": self.repository_name,
            "pr_number": self.pr_number,
            "manual_trigger": self.manual_trigger,
        }


class CodeSuggestion(BaseModel):
    file: str | None = None
    line_number: int | None = None
    type: Literal["fix", "improvement", "optimization", "style"] = "improvement"
    severity: Literal["low", "medium", "high"] = "medium"
    description: str
    reasoning: str = ""
    suggested_code: str | None = None
    language: str | None = None


class AIReview(BaseModel):
    """Parsed response of the AI provider."""

    merge_score: int = Field(ge=0, le=100)
    rules_violated: list[str] = Field(default_factory=list)
    rules_passed: list[str] = Field(default_factory=list)
    suggestions: list[CodeSuggestion] = Field(default_factory=list)
    summary: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


ReviewStatus = Literal["PENDING", "IN_PROGRESS", "COMPLETED", "FAILED"]


class ReviewResult(BaseModel):
    installation_id: str
    repository_name: str
    pr_number: int
    merge_score: int = Field(ge=0, le=100)
    rules_violated: list[str] = Field(default_factory=list)
    rules_passed: list[str] = Field(default_factory=list)
    suggestions: list[CodeSuggestion] = Field(default_factory=list)
    review_status: ReviewStatus = "COMPLETED"
    summary: str = ""
    confidence: float = 0.5
    processing_time: float = 0.0  # seconds
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    comment_id: str | None = None


REVIEW_REQUIRED_FIELDS = ("installation_id", "repository_name", "pr_number", "merge_score")
REVIEW_LIST_FIELDS = ("rules_violated", "rules_passed", "suggestions")


def validate_review_result(result: ReviewResult | dict[str, Any] | None) -> list[str]:
    """
    Check the shape of a review result before it is posted.

    Works on raw dicts and on models built with ``model_construct`` (which
    skips pydantic validation), so nothing malformed reaches GitHub.

    Returns:
        List of problems; empty when the result is valid
    """
    if result is None:
        return ["review result is missing"]

    data = result.__dict__ if isinstance(result, BaseModel) else result
    if not isinstance(data, dict):
        return ["review result must be an object"]

    problems = []
    for name in REVIEW_REQUIRED_FIELDS:
        if data.get(name) is None:
            problems.append(f"missing required field: {name}")

    score = data.get("merge_score")
    if score is not None:
        if isinstance(score, bool) or not isinstance(score, int | float):
            problems.append("merge_score must be a number")
        elif not 0 <= score <= 100:
            problems.append(f"merge_score out of range: {score}")

    for name in REVIEW_LIST_FIELDS:
        if not isinstance(data.get(name), list):
            problems.append(f"{name} must be a list")

    return problems
