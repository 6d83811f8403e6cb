"""
Review comment publishing.

Keeps exactly one AI review comment per pull request: the stored comment id
is tried first, then existing comments are scanned for the review marker, and
only if neither turns up a live comment is a new one created.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

from app.db.helpers import DatabaseError
from app.errors import AppError, ErrorKind, GitHubAPIError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.review_domain import ReviewResult, validate_review_result
from app.services.pr_review.review_formatter import (
    format_error_comment,
    format_in_progress_comment,
    format_review,
    marker_pattern,
)

logger = get_logger(__name__)

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0


@dataclass(slots=True)
class CommentPostResult:
    success: bool
    comment_id: str | None = None
    attempts: int = 0
    error: str | None = None
    fallback_posted: bool = False


def is_permanent_failure(error: Exception) -> bool:
    """403/404 from GitHub and permission problems will not go away on retry."""
    if isinstance(error, GitHubAPIError) and error.is_permanent:
        return True
    if isinstance(error, AppError) and error.kind in (ErrorKind.CONFIGURATION, ErrorKind.NOT_FOUND):
        return True
    return "permission" in str(error).lower()


class ReviewCommentService:
    def __init__(self, github, review_repository, base_delay: float = BASE_DELAY_SECONDS):
        self.github = github
        self.review_repository = review_repository
        self.base_delay = base_delay

    async def post_review_comment(self, result: ReviewResult) -> CommentPostResult:
        """
        Create or update the review comment for ``result``'s PR.

        Raises:
            AppError(VALIDATION): the result is malformed; nothing is posted
        """
        problems = validate_review_result(result)
        if problems:
            logger.warning(
                "Refusing to post invalid review result",
                pr_number=getattr(result, "pr_number", None),
                problems=problems,
            )
            raise AppError(ErrorKind.VALIDATION, "Invalid review result data", {"problems": problems})
        if isinstance(result, dict):
            result = ReviewResult.model_validate(result)

        log = logger.bind(
            installation_id=result.installation_id,
            repository_name=result.repository_name,
            pr_number=result.pr_number,
        )
        body = format_review(result)
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(MAX_ATTEMPTS):
            attempts += 1
            try:
                comment_id = await self._upsert_comment(
                    result.installation_id, result.repository_name, result.pr_number, body
                )
            except Exception as e:
                last_error = e
                if is_permanent_failure(e):
                    log.warning("Review comment posting aborted", error=str(e), attempt=attempts)
                    break
                if attempt < MAX_ATTEMPTS - 1:
                    delay = self.base_delay * (2**attempt)
                    log.info("Review comment posting failed, retrying", attempt=attempts, delay_seconds=delay)
                    await asyncio.sleep(delay)
                continue

            await self._store_comment_id(result, comment_id)
            result.comment_id = comment_id
            log.info("Review comment posted", comment_id=comment_id, attempts=attempts)
            return CommentPostResult(success=True, comment_id=comment_id, attempts=attempts)

        error_message = str(last_error) if last_error else "Unknown error occurred"
        log.error("Failed to post review comment", error=error_message, attempts=attempts)

        fallback_id = await self.post_error_comment(
            result.installation_id, result.repository_name, result.pr_number, error_message
        )
        return CommentPostResult(
            success=False,
            comment_id=fallback_id,
            attempts=attempts,
            error=error_message,
            fallback_posted=fallback_id is not None,
        )

    async def post_error_comment(
        self, installation_id: str, repository_name: str, pr_number: int, error_message: str
    ) -> str | None:
        """Tell the PR author the review failed. Returns the comment id, or None if that failed too."""
        body = format_error_comment(installation_id, pr_number, error_message, datetime.now(UTC))
        try:
            comment_id = await self._upsert_comment(installation_id, repository_name, pr_number, body)
        except Exception as e:
            logger.error("Failed to post error comment", pr_number=pr_number, error=str(e))
            return None

        logger.info("Posted error comment", pr_number=pr_number, comment_id=comment_id)
        return comment_id

    async def post_in_progress_comment(self, installation_id: str, repository_name: str, pr_number: int) -> str | None:
        body = format_in_progress_comment(installation_id, pr_number, datetime.now(UTC))
        try:
            return await self._upsert_comment(installation_id, repository_name, pr_number, body)
        except Exception as e:
            logger.warning("Failed to post in-progress comment", pr_number=pr_number, error=str(e))
            return None

    async def find_existing_comment(self, installation_id: str, repository_name: str, pr_number: int) -> str | None:
        """Stored comment id if it still exists on GitHub, else a comment carrying this PR's marker."""
        stored_id = await self._stored_comment_id(installation_id, repository_name, pr_number)
        if stored_id:
            try:
                await self.github.get_comment(installation_id, repository_name, stored_id)
                return stored_id
            except GitHubAPIError as e:
                if e.status_code != 404:
                    raise
                logger.info("Stored review comment no longer exists", comment_id=stored_id, pr_number=pr_number)

        pattern = marker_pattern(installation_id, pr_number)
        comments = await self.github.list_issue_comments(installation_id, repository_name, pr_number)
        for comment in comments:
            if pattern.search(comment.get("body") or ""):
                return str(comment["id"])
        return None

    async def _upsert_comment(self, installation_id: str, repository_name: str, pr_number: int, body: str) -> str:
        existing_id = await self.find_existing_comment(installation_id, repository_name, pr_number)
        if existing_id:
            await self.github.update_comment(installation_id, repository_name, existing_id, body)
            return existing_id

        comment = await self.github.create_comment(installation_id, repository_name, pr_number, body)
        return str(comment["id"])

    async def _stored_comment_id(self, installation_id: str, repository_name: str, pr_number: int) -> str | None:
        if self.review_repository is None:
            return None
        try:
            return await self.review_repository.get_comment_id(installation_id, repository_name, pr_number)
        except DatabaseError as e:
            logger.warning("Could not load stored comment id", pr_number=pr_number, error=str(e))
            return None

    async def _store_comment_id(self, result: ReviewResult, comment_id: str) -> None:
        if self.review_repository is None:
            return
        try:
            await self.review_repository.save_comment_id(
                result.installation_id, result.repository_name, result.pr_number, comment_id
            )
        except DatabaseError as e:
            logger.warning("Could not store review comment id", pr_number=result.pr_number, error=str(e))
