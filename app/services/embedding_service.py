"""
Embedding generation for cached items.

Runs detached from requests (see background_tasks.spawn) and from the
backfill job. has_embedding is only set once the vector is stored.
"""

from app.infrastructure.observability.logging import get_logger
from app.repositories.email_item_repository import EmailItemRepository
from app.services import background_tasks
from app.services.openai_service import openai_service
from app.services.vector_index_service import vector_index_service

logger = get_logger(__name__)


class EmbeddingService:
    def __init__(self, items=None, ai=None, index=None):
        self.items = items or EmailItemRepository
        self.ai = ai or openai_service
        self.index = index or vector_index_service

    async def generate_and_store(self, user_id: str, message_id: str) -> bool:
        """Embed one cached item. Returns False when the item is gone or the upsert failed."""
        item = await self.items.get(user_id, message_id)
        if item is None:
            logger.debug("Skipping embedding for missing item", user_id=user_id, message_id=message_id)
            return False

        vector = await self.ai.generate_email_embedding(
            subject=item.subject,
            from_name=item.sender_name,
            snippet=item.snippet,
            summary=item.summary,
        )

        metadata = {
            "subject": item.subject,
            "senderName": item.sender_name,
            "senderEmail": item.sender_email,
            "snippet": item.snippet,
            "summary": item.summary,
            "createdAt": item.created_at.isoformat() if item.created_at else None,
        }
        stored = await self.index.upsert_embedding(message_id, user_id, vector, metadata)
        if not stored:
            logger.warning("Embedding not stored", user_id=user_id, message_id=message_id)
            return False

        await self.items.mark_embedded(user_id, message_id)
        logger.debug("Embedding stored", user_id=user_id, message_id=message_id, dims=len(vector))
        return True

    def schedule(self, user_id: str, message_id: str) -> None:
        """Embed in the background; failures are logged by the task boundary."""
        background_tasks.spawn(
            self.generate_and_store(user_id, message_id),
            name=f"embed:{user_id}:{message_id}",
        )


embedding_service = EmbeddingService()
