"""
Snooze wake job.
Returns due snoozed items to their original columns for every user, so
they reappear even when nobody loads the board.
"""

from datetime import UTC, datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.periodic import JobMetrics, run_periodic
from app.services.status_service import status_service

logger = get_logger(__name__)

JOB_NAME = "snooze_wake"


class SnoozeWakeJob:
    def __init__(self, service=None):
        self.service = service or status_service
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = JobMetrics(JOB_NAME)

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Snooze wake job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        if not settings.cron_enabled(JOB_NAME):
            return {"skipped": True, "reason": "disabled"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            woken = await self.service.wake_expired_snoozed(settings.SNOOZE_WAKE_BATCH_SIZE)
            self.job_metrics.record_success(woken)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            return self.job_metrics.to_dict()
        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": JOB_NAME,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": settings.SNOOZE_WAKE_INTERVAL_SECONDS,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


snooze_wake_job = SnoozeWakeJob()


async def run_snooze_wake_job() -> dict:
    return await snooze_wake_job.run_once()


async def start_snooze_wake_scheduler():
    await run_periodic(JOB_NAME, settings.SNOOZE_WAKE_INTERVAL_SECONDS, run_snooze_wake_job)
