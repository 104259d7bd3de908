from unittest.mock import AsyncMock

import pytest

from app.config import settings
from app.jobs import worker
from app.jobs.embedding_backfill_job import EmbeddingBackfillJob
from app.jobs.snooze_wake_job import SnoozeWakeJob
from app.jobs.watch_renewal_job import WatchRenewalJob
from app.services.openai_service import OpenAIServiceError


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_registry_lists_maintenance_jobs():
    assert set(worker.JOB_REGISTRY) == {"snooze_wake", "watch_renewal", "embedding_backfill"}


@pytest.mark.asyncio
async def test_snooze_wake_job_reports_woken_items(monkeypatch):
    monkeypatch.setattr(settings, "DISABLE_CRON", False)
    monkeypatch.setattr(settings, "SNOOZE_WAKE_ENABLED", True)
    service = AsyncMock()
    service.wake_expired_snoozed.return_value = 4
    job = SnoozeWakeJob(service=service)

    metrics = await job.run_once()

    assert metrics["succeeded"] == 4
    assert job.is_running is False
    assert job.get_job_status()["last_run_metrics"]["processed"] == 4


@pytest.mark.asyncio
async def test_disabled_cron_skips_jobs(monkeypatch):
    monkeypatch.setattr(settings, "DISABLE_CRON", True)
    service = AsyncMock()

    assert await SnoozeWakeJob(service=service).run_once() == {"skipped": True, "reason": "disabled"}
    assert await WatchRenewalJob(service=service).run_once() == {"skipped": True, "reason": "disabled"}
    service.wake_expired_snoozed.assert_not_called()


@pytest.mark.asyncio
async def test_watch_renewal_counts_failures(monkeypatch):
    monkeypatch.setattr(settings, "DISABLE_CRON", False)
    monkeypatch.setattr(settings, "WATCH_RENEWAL_ENABLED", True)
    service = AsyncMock()
    service.renew_expiring_watches.return_value = {"checked": 3, "renewed": 2, "failed": 1}

    metrics = await WatchRenewalJob(service=service).run_once()

    assert (metrics["checked"], metrics["succeeded"], metrics["failed"]) == (3, 2, 1)


@pytest.mark.asyncio
async def test_embedding_backfill_stops_when_nothing_progresses(items):
    items.add("user-1", "m1", "INBOX")
    items.add("user-1", "m2", "INBOX")

    class FlakyEmbeddings:
        async def generate_and_store(self, user_id, message_id):
            if message_id == "m1":
                await items.mark_embedded(user_id, message_id)
                return True
            raise OpenAIServiceError("rate limited")

    job = EmbeddingBackfillJob(items=items, embeddings=FlakyEmbeddings())

    metrics = await job.run_once(batch_size=2)

    assert (metrics["succeeded"], metrics["failed"]) == (1, 2)
    assert items.rows[("user-1", "m1")].has_embedding is True
