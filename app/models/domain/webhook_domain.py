"""Domain models for inbound GitHub webhooks and their classification."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(slots=True)
class WebhookEvent:
    """One verified webhook delivery. Never persisted."""

    event_type: str
    action: str | None
    delivery_id: str | None
    payload: dict[str, Any]

    @property
    def installation_id(self) -> str | None:
        installation = self.payload.get("installation") or {}
        return str(installation["id"]) if installation.get("id") is not None else None

    @property
    def repository_name(self) -> str | None:
        return (self.payload.get("repository") or {}).get("full_name")

    @property
    def pull_request(self) -> dict[str, Any]:
        return self.payload.get("pull_request") or {}


class EventRoute(str, Enum):
    ANALYZE = "analyze"
    PAYOUT = "payout"
    INSTALLATION = "installation"
    REVIEW_COMMENT = "review_comment"
    SKIP = "skip"


class SkipReason(str, Enum):
    EVENT_NOT_PROCESSED = "event_not_processed"
    ACTION_NOT_PROCESSED = "action_not_processed"
    NOT_DEFAULT_BRANCH = "not_default_branch"
    DRAFT = "draft"
    NO_LINKED_ISSUES = "no_linked_issues"
    NOT_PULL_REQUEST_COMMENT = "not_pull_request_comment"
    NOT_REVIEW_COMMAND = "not_review_command"
    NOT_INSTALLATION_MEMBER = "not_installation_member"


SKIP_MESSAGES = {
    SkipReason.EVENT_NOT_PROCESSED: "Event type not processed",
    SkipReason.ACTION_NOT_PROCESSED: "PR action not processed",
    SkipReason.NOT_DEFAULT_BRANCH: "PR not targeting default branch - skipping review",
    SkipReason.DRAFT: "PR is in draft status",
    SkipReason.NO_LINKED_ISSUES: "PR does not link to any issues",
    SkipReason.NOT_PULL_REQUEST_COMMENT: "Comment is not on a pull request - skipping",
    SkipReason.NOT_REVIEW_COMMAND: "Comment body is not 'review' - skipping",
    SkipReason.NOT_INSTALLATION_MEMBER: "User is not part of this installation - skipping",
}


@dataclass(slots=True)
class Classification:
    """Verdict of the event classifier."""

    route: EventRoute
    event_type: str
    action: str | None = None
    reason: SkipReason | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def processed(self) -> bool:
        return self.route is not EventRoute.SKIP

    @property
    def message(self) -> str:
        if self.reason is None:
            return "Event accepted"
        return SKIP_MESSAGES[self.reason]

    @classmethod
    def skip(cls, event_type: str, action: str | None, reason: SkipReason, **details) -> "Classification":
        return cls(EventRoute.SKIP, event_type, action, reason, details)


@dataclass(slots=True)
class Eligibility:
    eligible: bool
    reason: SkipReason | None = None

    @property
    def message(self) -> str:
        return "" if self.reason is None else SKIP_MESSAGES[self.reason]


@dataclass(slots=True)
class WebhookOutcome:
    """What the webhook endpoint reports back to GitHub."""

    status_code: int
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def queued(self) -> bool:
        return self.status_code == 202
