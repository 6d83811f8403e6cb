"""Persistence for AI review results and the comment id of each PR's review."""

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_val, with_db_retry
from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger
from app.models.domain.review_domain import ReviewResult

logger = get_logger(__name__)


class ReviewResultRepository:
    def __init__(self, db: DatabasePoolManager):
        self.db = db

    @with_db_retry()
    async def save_result(self, result: ReviewResult) -> None:
        """Insert or replace the review for a PR, keeping any stored comment id."""
        query = """
            INSERT INTO ai_review_results (
                installation_id, repository_name, pr_number, merge_score,
                rules_violated, rules_passed, suggestions, review_status,
                summary, confidence, processing_time, comment_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (installation_id, repository_name, pr_number) DO UPDATE
            SET merge_score = EXCLUDED.merge_score,
                rules_violated = EXCLUDED.rules_violated,
                rules_passed = EXCLUDED.rules_passed,
                suggestions = EXCLUDED.suggestions,
                review_status = EXCLUDED.review_status,
                summary = EXCLUDED.summary,
                confidence = EXCLUDED.confidence,
                processing_time = EXCLUDED.processing_time,
                comment_id = COALESCE(EXCLUDED.comment_id, ai_review_results.comment_id),
                updated_at = NOW()
        """
        params = (
            result.installation_id,
            result.repository_name,
            result.pr_number,
            result.merge_score,
            Jsonb(result.rules_violated),
            Jsonb(result.rules_passed),
            Jsonb([suggestion.model_dump() for suggestion in result.suggestions]),
            result.review_status,
            result.summary,
            result.confidence,
            result.processing_time,
            result.comment_id,
        )
        async with self.db.connection() as conn:
            await execute_query(query, params, connection=conn)

        logger.info(
            "Review result saved",
            installation_id=result.installation_id,
            repository_name=result.repository_name,
            pr_number=result.pr_number,
            merge_score=result.merge_score,
        )

    async def get_comment_id(self, installation_id: str, repository_name: str, pr_number: int) -> str | None:
        query = """
            SELECT comment_id FROM ai_review_results
            WHERE installation_id = %s AND repository_name = %s AND pr_number = %s
        """
        async with self.db.connection() as conn:
            value = await fetch_val(query, (installation_id, repository_name, pr_number), connection=conn)
        return str(value) if value else None

    async def save_comment_id(
        self, installation_id: str, repository_name: str, pr_number: int, comment_id: str
    ) -> None:
        query = """
            UPDATE ai_review_results
            SET comment_id = %s, updated_at = NOW()
            WHERE installation_id = %s AND repository_name = %s AND pr_number = %s
        """
        async with self.db.connection() as conn:
            updated = await execute_query(query, (comment_id, installation_id, repository_name, pr_number), connection=conn)

        if updated == 0:
            raise DatabaseError(
                f"No review row for PR #{pr_number} in {repository_name}",
                operation="save_comment_id",
                recoverable=False,
            )
