"""
Embedding backfill job.

One-shot pass that embeds cached items whose background embedding never
landed (OpenAI outage, process restart mid-task). Runs in batches until no
item is missing a vector or a whole batch fails.
"""

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.jobs.periodic import JobMetrics
from app.repositories.email_item_repository import EmailItemRepository
from app.services.embedding_service import embedding_service
from app.services.openai_service import OpenAIServiceError

logger = get_logger(__name__)

JOB_NAME = "embedding_backfill"


class EmbeddingBackfillJob:
    def __init__(self, items=None, embeddings=None):
        self.items = items or EmailItemRepository
        self.embeddings = embeddings or embedding_service
        self.job_metrics = JobMetrics(JOB_NAME)

    async def run_once(self, batch_size: int | None = None) -> dict:
        batch_size = batch_size or settings.EMBEDDING_BACKFILL_BATCH_SIZE
        self.job_metrics.reset()

        while True:
            batch = await self.items.items_missing_embeddings(batch_size)
            if not batch:
                break

            stored = 0
            for item in batch:
                try:
                    if await self.embeddings.generate_and_store(item.user_id, item.message_id):
                        stored += 1
                        self.job_metrics.record_success()
                    else:
                        self.job_metrics.record_failure(item.message_id, "embedding not stored")
                except OpenAIServiceError as e:
                    self.job_metrics.record_failure(item.message_id, str(e))

            # Nothing moved forward, the same rows would come back again
            if stored == 0:
                logger.warning("Embedding backfill made no progress, stopping", batch=len(batch))
                break
            if len(batch) < batch_size:
                break

        self.job_metrics.finalize()
        metrics = self.job_metrics.to_dict()
        logger.info("Embedding backfill completed", **metrics)
        return metrics


embedding_backfill_job = EmbeddingBackfillJob()


async def run_embedding_backfill() -> dict:
    await db_pool.initialize()
    try:
        return await embedding_backfill_job.run_once()
    finally:
        await db_pool.close()
