"""
Gmail watch renewal job.
Gmail push registrations lapse after about a week; this re-registers any
that expire within the next day.
"""

from datetime import UTC, datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.periodic import JobMetrics, run_periodic
from app.services.push_sync_service import push_sync_service

logger = get_logger(__name__)

JOB_NAME = "watch_renewal"


class WatchRenewalJob:
    def __init__(self, service=None):
        self.service = service or push_sync_service
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = JobMetrics(JOB_NAME)

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Watch renewal job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        if not settings.cron_enabled(JOB_NAME):
            return {"skipped": True, "reason": "disabled"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            outcome = await self.service.renew_expiring_watches()
            self.job_metrics.record_success(outcome["renewed"])
            self.job_metrics.processed += outcome["failed"]
            self.job_metrics.failed += outcome["failed"]

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            metrics = self.job_metrics.to_dict()
            metrics["checked"] = outcome["checked"]
            return metrics
        finally:
            self.is_running = False


watch_renewal_job = WatchRenewalJob()


async def run_watch_renewal_job() -> dict:
    return await watch_renewal_job.run_once()


async def start_watch_renewal_scheduler():
    await run_periodic(JOB_NAME, settings.WATCH_RENEWAL_INTERVAL_SECONDS, run_watch_renewal_job)
