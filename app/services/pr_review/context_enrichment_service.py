"""
Optional repository context for reviews.

Pulls the README and contribution guidelines from GitHub and the most similar
indexed code chunks from pgvector. Any failure yields an empty context.
"""

from app.config import Settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.review_domain import PullRequestData, ReviewContext

logger = get_logger(__name__)

README_PATHS = ("README.md", "readme.md", "README")
STYLE_GUIDE_PATHS = ("CONTRIBUTING.md", ".github/CONTRIBUTING.md", "docs/CONTRIBUTING.md")
EMBEDDING_PATCH_LIMIT = 8000  # characters of diff used as the search query


class ContextEnrichmentService:
    def __init__(self, settings: Settings, github, ai_service, chunk_repository=None):
        self.settings = settings
        self.github = github
        self.ai_service = ai_service
        self.chunk_repository = chunk_repository

    async def build_context(self, pr_data: PullRequestData) -> ReviewContext:
        if not self.settings.CONTEXT_ENRICHMENT_ENABLED:
            return ReviewContext()

        try:
            readme = await self._first_file(pr_data, README_PATHS)
            style_guide = await self._first_file(pr_data, STYLE_GUIDE_PATHS)
            chunks = await self._similar_chunks(pr_data)
        except Exception as e:
            logger.warning(
                "Context enrichment failed, continuing without context",
                installation_id=pr_data.installation_id,
                repository_name=pr_data.repository_name,
                pr_number=pr_data.pr_number,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ReviewContext()

        context = ReviewContext(readme=readme, style_guide=style_guide, relevant_chunks=chunks)
        logger.info(
            "Review context built",
            repository_name=pr_data.repository_name,
            pr_number=pr_data.pr_number,
            has_readme=readme is not None,
            has_style_guide=style_guide is not None,
            chunks=len(chunks),
        )
        return context

    async def _first_file(self, pr_data: PullRequestData, paths: tuple[str, ...]) -> str | None:
        for path in paths:
            content = await self.github.get_file_content(pr_data.installation_id, pr_data.repository_name, path)
            if content:
                return content
        return None

    async def _similar_chunks(self, pr_data: PullRequestData):
        if self.chunk_repository is None or not pr_data.changed_files:
            return []

        query_text = "\n".join(
            f"{file.filename}\n{file.patch}" for file in pr_data.changed_files
        )[:EMBEDDING_PATCH_LIMIT]
        embedding = await self.ai_service.generate_embedding(query_text)
        return await self.chunk_repository.search_similar(
            pr_data.installation_id,
            pr_data.repository_name,
            embedding,
            limit=self.settings.CONTEXT_CHUNK_LIMIT,
            threshold=self.settings.CONTEXT_SIMILARITY_THRESHOLD,
        )
