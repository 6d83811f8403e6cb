"""pgvector similarity search over previously indexed code chunks."""

from app.db.helpers import fetch_all
from app.db.pool import DatabasePoolManager
from app.models.domain.review_domain import CodeChunk


def _vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(f"{value:.8f}" for value in embedding) + "]"


class CodeChunkRepository:
    def __init__(self, db: DatabasePoolManager):
        self.db = db

    async def search_similar(
        self,
        installation_id: str,
        repository_name: str,
        embedding: list[float],
        limit: int = 10,
        threshold: float = 0.6,
    ) -> list[CodeChunk]:
        """Chunks of the repository whose cosine similarity is at least ``threshold``, best first."""
        query = """
            SELECT file_path, chunk_index, content,
                   1 - (embedding <=> %s::vector) AS similarity
            FROM code_chunks
            WHERE installation_id = %s
              AND repository_name = %s
              AND 1 - (embedding <=> %s::vector) >= %s
            ORDER BY embedding <=> %s::vector
            LIMIT %s
        """
        vector = _vector_literal(embedding)
        async with self.db.connection() as conn:
            rows = await fetch_all(
                query,
                (vector, installation_id, repository_name, vector, threshold, vector, limit),
                connection=conn,
            )

        return [
            CodeChunk(
                file_path=row["file_path"],
                content=row["content"],
                similarity=float(row["similarity"]),
                chunk_index=row["chunk_index"],
            )
            for row in rows
        ]
