import asyncio
from time import time

import pytest

from errors import ConfigurationError
from job_queue import JobQueue
from pipeline import PipelineResult


class FakePipeline:
    """Records runs; raises `error` when set, and can run a hook mid-run."""

    def __init__(self, error=None, during_run=None):
        self.error = error
        self.during_run = during_run
        self.runs = []

    async def process_single_feed(self, source, settings):
        self.runs.append((source.id, settings))
        if self.during_run is not None:
            await self.during_run()
        if self.error is not None:
            raise self.error
        return PipelineResult(source_id=source.id)


def make_queue(db, pipeline, **kwargs):
    options = dict(max_retries=3, backoff_base_minutes=1, backoff_cap_minutes=60, stuck_threshold_minutes=30)
    options.update(kwargs)
    return JobQueue(db, pipeline, **options)


async def make_due(db, job_id):
    await db.execute("update_job", job_id=job_id, scheduled_at=int(time()) - 1)


def test_backoff_is_exponential_and_capped():
    queue = JobQueue(None, None, backoff_base_minutes=1, backoff_cap_minutes=5)
    delays = [queue.backoff_seconds(n) for n in range(1, 6)]
    assert delays == [120, 240, 300, 300, 300]
    assert delays == sorted(delays)


@pytest.mark.asyncio
async def test_create_job_requires_settings(db):
    queue = make_queue(db, FakePipeline())
    with pytest.raises(ConfigurationError, match="AI crawler settings not found"):
        await queue.create_job(source_id=1, user_id="nobody")


@pytest.mark.asyncio
async def test_create_job_snapshots_merged_settings(db, user_source):
    await db.execute("set_user_preference", user_id="u1", default_ai_language="fr")
    queue = make_queue(db, FakePipeline())

    job = await queue.create_job(user_source.id, "u1", priority=2)

    assert job.status == "pending"
    assert job.priority == 2
    assert job.max_retries == 3
    assert job.settings.default_ai_language == "fr"
    assert job.settings.max_articles_per_source == 5


@pytest.mark.asyncio
async def test_successful_job_completes(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline)
    job = await queue.create_job(user_source.id, "u1")

    assert await queue.process_pending_jobs() == 1

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "completed"
    assert stored.completed_at is not None
    assert stored.lease_token
    assert pipeline.runs == [(user_source.id, job.settings)]


@pytest.mark.asyncio
async def test_failed_job_is_rescheduled_with_backoff(db, user_source):
    queue = make_queue(db, FakePipeline(error=RuntimeError("site down")))
    job = await queue.create_job(user_source.id, "u1")
    before = int(time())

    await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "pending"
    assert stored.retry_count == 1
    assert stored.error_message == "site down"
    assert before + 120 <= stored.scheduled_at <= int(time()) + 120
    # not due yet
    assert await queue.process_pending_jobs() == 0


@pytest.mark.asyncio
async def test_exhausted_retries_fail_job_and_source(db, user_source):
    pipeline = FakePipeline(error=RuntimeError("site down"))
    queue = make_queue(db, pipeline)
    job = await queue.create_job(user_source.id, "u1")

    for _ in range(3):
        await make_due(db, job.id)
        await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "failed"
    assert stored.retry_count == 3
    assert stored.completed_at is not None
    assert len(pipeline.runs) == 3
    source = await db.execute("get_source", source_id=user_source.id)
    assert source.status == "failed"


@pytest.mark.asyncio
async def test_stuck_job_is_reclaimed_and_costs_a_retry(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline)
    job = await queue.create_job(user_source.id, "u1")
    await db.execute("claim_job", job_id=job.id, lease_token="crashed", started_at=int(time()) - 3600)

    await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "completed"
    assert stored.retry_count == 1
    assert stored.lease_token != "crashed"
    assert len(pipeline.runs) == 1


@pytest.mark.asyncio
async def test_stuck_job_out_of_retries_fails_without_running(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline)
    job = await queue.create_job(user_source.id, "u1")
    await db.execute("update_job", job_id=job.id, retry_count=2)
    await db.execute("claim_job", job_id=job.id, lease_token="crashed", started_at=int(time()) - 3600)

    await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "failed"
    assert stored.retry_count == 3
    assert pipeline.runs == []


@pytest.mark.asyncio
async def test_recent_running_job_is_left_alone(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline)
    job = await queue.create_job(user_source.id, "u1")
    await db.execute("claim_job", job_id=job.id, lease_token="busy")

    assert await queue.process_pending_jobs() == 0
    assert (await db.execute("get_job", job_id=job.id)).status == "running"


@pytest.mark.asyncio
async def test_missing_source_fails_job(db, user_source, settings):
    queue = make_queue(db, FakePipeline())
    job = await db.execute("insert_job", source_id=999, user_id="u1", settings=settings)

    await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=job.id)
    assert stored.status == "failed"
    assert stored.error_message == "Source not found"


@pytest.mark.asyncio
async def test_reclaimed_job_ignores_stale_completion(db, user_source):
    holder = {}

    async def steal():
        await db.execute("claim_job", job_id=holder["job"].id, lease_token="thief")

    queue = make_queue(db, FakePipeline(during_run=steal))
    holder["job"] = await queue.create_job(user_source.id, "u1")

    await queue.process_pending_jobs()

    stored = await db.execute("get_job", job_id=holder["job"].id)
    assert stored.status == "running"
    assert stored.lease_token == "thief"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline)
    await queue.create_job(user_source.id, "u1")
    queue.is_processing = True

    assert await queue.process_pending_jobs() == 0
    assert pipeline.runs == []


@pytest.mark.asyncio
async def test_batch_size_limits_one_cycle(db, user_source):
    pipeline = FakePipeline()
    queue = make_queue(db, pipeline, batch_size=2)
    for _ in range(3):
        await queue.create_job(user_source.id, "u1")

    assert await queue.process_pending_jobs() == 2
    assert await queue.process_pending_jobs() == 1


@pytest.mark.asyncio
async def test_poll_loop_processes_jobs(db, user_source):
    queue = make_queue(db, FakePipeline(), poll_interval=0.01)
    job = await queue.create_job(user_source.id, "u1")

    await queue.start()
    try:
        for _ in range(200):
            if (await db.execute("get_job", job_id=job.id)).status == "completed":
                break
            await asyncio.sleep(0.01)
    finally:
        await queue.stop()

    assert (await db.execute("get_job", job_id=job.id)).status == "completed"


@pytest.mark.asyncio
async def test_stats_listing_and_cleanup(db, user_source):
    queue = make_queue(db, FakePipeline())
    old = await queue.create_job(user_source.id, "u1")
    await queue.process_pending_jobs()
    await db.execute("update_job", job_id=old.id, completed_at=int(time()) - 30 * 86400)
    await queue.create_job(user_source.id, "u1", priority=1)

    assert await queue.get_job_stats("u1") == {"pending": 1, "running": 0, "completed": 1, "failed": 0}
    assert len(await queue.get_user_jobs("u1")) == 2
    assert await queue.cleanup_old_jobs(retention_days=7) == 1
    assert await queue.get_job_stats() == {"pending": 1, "running": 0, "completed": 0, "failed": 0}
