"""
Vector index over email embeddings, stored with pgvector.
One row per (user_id, message_id); similarity is cosine (1 - <=> distance).
"""

import json
from dataclasses import dataclass, field
from typing import Any

from app.db.helpers import DatabaseError, execute_query, fetch_all
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class VectorMatch:
    message_id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


def _to_vector_literal(vector: list[float]) -> str:
    return "[" + ",".join(str(float(v)) for v in vector) + "]"


class VectorIndexService:
    """upsert / search_similar / delete against the email_embeddings table."""

    async def upsert_embedding(
        self,
        message_id: str,
        user_id: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Store or replace a message's vector. Returns False on failure."""
        try:
            await execute_query(
                """
                INSERT INTO email_embeddings (user_id, message_id, embedding, metadata, updated_at)
                VALUES (%s, %s, %s::vector, %s::jsonb, NOW())
                ON CONFLICT (user_id, message_id)
                DO UPDATE SET
                    embedding = EXCLUDED.embedding,
                    metadata = EXCLUDED.metadata,
                    updated_at = NOW()
                """,
                (
                    user_id,
                    message_id,
                    _to_vector_literal(vector),
                    json.dumps(metadata or {}, default=str),
                ),
            )
            return True
        except DatabaseError as e:
            logger.error(
                "Failed to upsert embedding", user_id=user_id, message_id=message_id, error=str(e)
            )
            return False

    async def search_similar(
        self, user_id: str, vector: list[float], k: int = 20, min_score: float = 0.5
    ) -> list[VectorMatch]:
        """Nearest neighbours for the user, best first, at or above min_score."""
        literal = _to_vector_literal(vector)
        rows = await fetch_all(
            """
            SELECT message_id, metadata, 1 - (embedding <=> %s::vector) AS score
            FROM email_embeddings
            WHERE user_id = %s
              AND 1 - (embedding <=> %s::vector) >= %s
            ORDER BY embedding <=> %s::vector
            LIMIT %s
            """,
            (literal, user_id, literal, min_score, literal, k),
        )
        return [
            VectorMatch(
                message_id=row["message_id"],
                score=float(row["score"]),
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    async def delete_embedding(self, user_id: str, message_id: str) -> bool:
        try:
            deleted = await execute_query(
                "DELETE FROM email_embeddings WHERE user_id = %s AND message_id = %s",
                (user_id, message_id),
            )
            return deleted > 0
        except DatabaseError as e:
            logger.error(
                "Failed to delete embedding", user_id=user_id, message_id=message_id, error=str(e)
            )
            return False


vector_index_service = VectorIndexService()
