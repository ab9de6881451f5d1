#!/usr/bin/env python3
"""
Persistent crawl job queue.

Jobs live in the `jobs` table. A background task polls for due work every
JOB_POLL_INTERVAL_SECONDS and runs up to JOB_BATCH_SIZE jobs one after the
other through the pipeline. Failures are retried with exponential backoff
until `max_retries` is reached. Jobs left `running` longer than the stuck
threshold are reclaimed, which costs them one retry.

Every claim stores a fresh lease token; completion and retry updates only
apply while the job still holds the token of the run that performs them.
"""

from asyncio import CancelledError, Task, create_task, sleep
from time import time
from typing import Dict, List, Optional
from uuid import uuid4

from config import config, get_logger
from errors import ConfigurationError, CrawlerError, JobRetryExhausted
from models import DatabaseQueue, FeedSource, Job
from pipeline import FeedPipeline
from telemetry import trace_span

logger = get_logger("job_queue")


class JobQueue:
    """Creates crawl jobs and processes them on a polling loop."""

    def __init__(self, db: DatabaseQueue, pipeline: FeedPipeline, poll_interval: Optional[float] = None,
                 batch_size: Optional[int] = None, stuck_threshold_minutes: Optional[int] = None,
                 max_retries: Optional[int] = None, backoff_base_minutes: Optional[float] = None,
                 backoff_cap_minutes: Optional[float] = None) -> None:
        self.db = db
        self.pipeline = pipeline
        self.poll_interval = poll_interval or config.JOB_POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or config.JOB_BATCH_SIZE
        self.stuck_threshold_minutes = stuck_threshold_minutes or config.JOB_STUCK_THRESHOLD_MINUTES
        self.max_retries = max_retries or config.JOB_MAX_RETRIES
        self.backoff_base_minutes = (config.JOB_BACKOFF_BASE_MINUTES if backoff_base_minutes is None
                                     else backoff_base_minutes)
        self.backoff_cap_minutes = (config.JOB_BACKOFF_CAP_MINUTES if backoff_cap_minutes is None
                                    else backoff_cap_minutes)
        self.is_processing = False
        self._task: Optional[Task] = None

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before retry number `retry_count`: min(base * 2^n, cap) minutes."""
        minutes = min(self.backoff_base_minutes * (2 ** retry_count), self.backoff_cap_minutes)
        return minutes * 60

    async def create_job(self, source_id: int, user_id: str, priority: int = 0) -> Job:
        """Queue a crawl of `source_id` using a snapshot of the user's settings.

        Raises:
            ConfigurationError: when the user has no crawler settings.
        """
        settings = await self.db.execute("get_job_settings", user_id=user_id)
        if settings is None:
            raise ConfigurationError("AI crawler settings not found", {"user_id": user_id})

        job = await self.db.execute(
            "insert_job",
            source_id=source_id,
            user_id=user_id,
            settings=settings,
            priority=priority,
            max_retries=self.max_retries,
        )
        if job is None:
            raise CrawlerError(f"Could not create job for source {source_id}", {"user_id": user_id})
        logger.info(f"📝 Created job {job.id} for source {source_id} (priority {priority})")
        return job

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = create_task(self._poll_loop())
        logger.info(f"🔄 Job queue processor started (checking every {self.poll_interval:.0f} seconds)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except CancelledError:
            pass
        self._task = None
        logger.info("Job queue processor stopped")

    async def trigger_now(self) -> int:
        """Run one poll cycle immediately, subject to the single-flight guard."""
        return await self.process_pending_jobs()

    async def _poll_loop(self) -> None:
        while True:
            await sleep(self.poll_interval)
            try:
                await self.process_pending_jobs()
            except CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Error processing pending jobs: {e}")

    @trace_span("job_queue.process_pending_jobs", tracer_name="job_queue")
    async def process_pending_jobs(self) -> int:
        """Process one batch of due jobs; returns how many were handled."""
        if self.is_processing:
            logger.warning("⚠️ Job processor already running, skipping this cycle")
            return 0

        self.is_processing = True
        try:
            now = int(time())
            due = await self.db.execute(
                "list_due_jobs",
                now=now,
                stuck_before=now - self.stuck_threshold_minutes * 60,
                limit=self.batch_size,
            )
            if not due:
                return 0

            logger.info(f"📋 Found {len(due)} jobs to process")
            handled = 0
            for job, source in due:
                try:
                    await self._process_job(job, source)
                except Exception as e:
                    logger.error(f"❌ Could not process job {job.id}: {type(e).__name__}: {e}")
                handled += 1
            return handled
        finally:
            self.is_processing = False

    async def _fail_job(self, job: Job, source: Optional[FeedSource], retry_count: int, message: str,
                        lease_token: Optional[str]) -> None:
        updated = await self.db.execute(
            "update_job",
            job_id=job.id,
            expected_lease=lease_token,
            status="failed",
            retry_count=retry_count,
            completed_at=int(time()),
            error_message=message,
        )
        if not updated:
            logger.warning(f"Job {job.id} changed hands before it could be failed; ignoring")
            return
        if source is not None:
            await self.db.execute("update_source_status", source_id=source.id, status="failed")
        logger.error(f"💀 {JobRetryExhausted(job.id, retry_count, message)}")

    async def _handle_failure(self, job: Job, source: FeedSource, lease_token: str, retry_count: int,
                              error: BaseException) -> None:
        retry_count += 1
        message = str(error) or type(error).__name__
        if retry_count >= job.max_retries:
            await self._fail_job(job, source, retry_count, message, lease_token)
            return

        retry_at = int(time() + self.backoff_seconds(retry_count))
        updated = await self.db.execute(
            "update_job",
            job_id=job.id,
            expected_lease=lease_token,
            status="pending",
            retry_count=retry_count,
            scheduled_at=retry_at,
            error_message=message,
        )
        if updated:
            logger.warning(
                f"🔄 Job {job.id} scheduled for retry in {self.backoff_seconds(retry_count) / 60:.0f} minutes "
                f"(attempt {retry_count}/{job.max_retries}): {message}"
            )
        else:
            logger.warning(f"Job {job.id} was reclaimed while running; retry update ignored")

    @trace_span(
        "job_queue.process_job",
        tracer_name="job_queue",
        attr_from_args=lambda self, job, source: {
            "job.id": job.id,
            "job.status": job.status,
            "job.retry_count": job.retry_count,
            "source.id": job.source_id,
        },
    )
    async def _process_job(self, job: Job, source: Optional[FeedSource]) -> None:
        if source is None:
            logger.error(f"❌ Source not found for job {job.id}")
            await self.db.execute(
                "update_job",
                job_id=job.id,
                status="failed",
                completed_at=int(time()),
                error_message="Source not found",
            )
            return

        retry_count = job.retry_count
        if job.status == "running":
            running_minutes = (time() - (job.started_at or time())) / 60
            logger.warning(f"🔄 Reclaiming stuck job {job.id} (running for {running_minutes:.0f} minutes)")
            retry_count += 1
            if retry_count >= job.max_retries:
                await self._fail_job(job, source, retry_count, "Job abandoned while running", job.lease_token)
                return

        lease_token = uuid4().hex
        await self.db.execute("claim_job", job_id=job.id, lease_token=lease_token)
        if retry_count != job.retry_count:
            await self.db.execute("update_job", job_id=job.id, expected_lease=lease_token, retry_count=retry_count)
        await self.db.execute("update_source_status", source_id=source.id, status="running")

        logger.info(f"🚀 Processing job {job.id} for source {source.url}")
        try:
            await self.pipeline.process_single_feed(source, job.settings)
        except Exception as e:
            logger.error(f"❌ Error processing job {job.id}: {type(e).__name__}: {e}")
            await self._handle_failure(job, source, lease_token, retry_count, e)
            return

        if await self.db.execute("finish_job", job_id=job.id, lease_token=lease_token, status="completed"):
            logger.info(f"✅ Job {job.id} completed successfully")
        else:
            logger.warning(f"Job {job.id} was reclaimed while running; completion ignored")

    async def cleanup_old_jobs(self, retention_days: Optional[int] = None) -> int:
        """Delete completed jobs older than the retention window; returns how many went."""
        days = retention_days or config.JOB_RETENTION_DAYS
        cutoff = int(time()) - days * 24 * 60 * 60
        deleted = await self.db.execute("delete_completed_jobs_before", cutoff=cutoff)
        logger.info(f"🧹 Cleaned up {deleted} completed jobs older than {days} days")
        return deleted

    async def get_user_jobs(self, user_id: str, limit: int = 50) -> List[Job]:
        return await self.db.execute("list_user_jobs", user_id=user_id, limit=limit)

    async def get_job_stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        return await self.db.execute("count_jobs_by_status", user_id=user_id)
