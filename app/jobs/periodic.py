"""
Shared scaffolding for periodic maintenance jobs.

Each job owns a run_once() coroutine; run_periodic() wraps it in the
interval loop, honours settings.cron_enabled() and keeps the loop alive
across failed iterations.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Pause after a failed iteration before trying again
ERROR_BACKOFF_SECONDS = 60


class JobMetrics:
    """Counters for one job run."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, count: int = 1):
        self.processed += count
        self.succeeded += count

    def record_failure(self, subject: str, error: str):
        self.processed += 1
        self.failed += 1
        self.errors.append(
            {"subject": subject, "error": error, "timestamp": datetime.now(UTC).isoformat()}
        )
        logger.warning("Job item failed", job_run=self.job_name, subject=subject, error=error)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": self.job_name,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors_count": len(self.errors),
        }


async def run_periodic(
    job_name: str, interval_seconds: int, run_once: Callable[[], Awaitable[dict]]
) -> None:
    """Run `run_once` every `interval_seconds` until cancelled."""
    if not settings.cron_enabled(job_name):
        logger.info("Periodic job disabled, not starting", job=job_name)
        return

    await db_pool.initialize()
    logger.info("Starting periodic job", job=job_name, interval_seconds=interval_seconds)

    while True:
        try:
            metrics = await run_once()
            if not metrics.get("skipped", False):
                logger.info("Periodic job cycle completed", **metrics)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Periodic job stopped", job=job_name)
            raise
        except Exception as e:
            logger.error(
                "Error in periodic job", job=job_name, error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)
