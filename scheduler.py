#!/usr/bin/env python3
"""
Crawl scheduler.

Wakes up at the daily times listed in schedule.yaml (or every
SCHEDULER_INTERVAL_MINUTES when no times are configured) and dispatches every
due feed source of every user with crawling enabled:

- queue mode (default): a job is created for the source unless one is already
  pending or running;
- direct mode: the pipeline runs the source in-process.

A tick that starts while the previous one is still running is skipped.
"""

from asyncio import CancelledError, Task, create_task, sleep
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import config, get_logger
from job_queue import JobQueue
from models import CrawlerSettings, DatabaseQueue, FeedSource
from pipeline import FeedPipeline
from telemetry import trace_span

logger = get_logger("scheduler")

SCHEDULER_MODES = ("queue", "direct")


class ScheduleEntry:
    """Represents a single scheduled time entry."""

    def __init__(self, time_str: str):
        """Initialize schedule entry from time string.

        Args:
            time_str: Time in format "HH:MM", "H:MM", etc.

        Raises:
            ValueError: If time format is invalid
        """
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    def _parse_time(self, time_str: str) -> time:
        try:
            parts = time_str.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")

            hour = int(parts[0])
            minute = int(parts[1])
            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")
            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz: Optional[Any] = None) -> datetime:
        """Next occurrence of this local time strictly after `from_time`, returned in UTC."""
        if tz is None:
            tz = timezone.utc
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate_local = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=1)
        return candidate_local.astimezone(timezone.utc)

    def __str__(self) -> str:
        return f"ScheduleEntry({self.time_str})"

    def __repr__(self) -> str:
        return self.__str__()


@dataclass
class TickResult:
    skipped: bool = False
    sources_due: int = 0
    dispatched: int = 0
    failed: int = 0


class CrawlScheduler:
    """Time-driven dispatcher of due feed sources."""

    def __init__(self, db: DatabaseQueue, job_queue: Optional[JobQueue] = None,
                 pipeline: Optional[FeedPipeline] = None, config_path: Optional[str] = None,
                 mode: Optional[str] = None, interval_minutes: Optional[int] = None) -> None:
        self.db = db
        self.job_queue = job_queue
        self.pipeline = pipeline
        self.mode = (mode or config.SCHEDULER_MODE).lower()
        if self.mode not in SCHEDULER_MODES:
            raise ValueError(f"Unknown scheduler mode: {self.mode}")
        if self.mode == "queue" and job_queue is None:
            raise ValueError("Queue mode needs a job queue")
        if self.mode == "direct" and pipeline is None:
            raise ValueError("Direct mode needs a pipeline")

        self.config_path = config_path or config.SCHEDULE_CONFIG_PATH
        self.interval_minutes = interval_minutes or config.SCHEDULER_INTERVAL_MINUTES
        self.schedule_entries: List[ScheduleEntry] = []
        self.schedule_timezone_name = "UTC"
        self.schedule_timezone: Any = timezone.utc
        self._set_timezone(config.SCHEDULER_TIMEZONE)
        self._load_schedule()

        self.is_running = False
        self.last_tick_at: Optional[datetime] = None
        self._task: Optional[Task] = None

    def _set_timezone(self, name: Optional[str]) -> None:
        if not name:
            return
        try:
            self.schedule_timezone = ZoneInfo(str(name))
            self.schedule_timezone_name = str(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid timezone '{name}', keeping {self.schedule_timezone_name}")

    def _load_schedule(self) -> None:
        """Load schedule times from YAML.

        Accepts either a list under `schedule`, or a mapping with `timezone`
        and `times`; entries are "HH:MM" strings or `{time: "HH:MM"}`.
        """
        data = config.load_yaml(self.config_path, 'schedule')
        section = data.get('schedule')
        if isinstance(section, dict):
            self._set_timezone(section.get('timezone') or section.get('tz'))
            raw_entries = section.get('times') or []
        elif isinstance(section, list):
            raw_entries = section
        else:
            raw_entries = []
        if not isinstance(raw_entries, list):
            logger.error("Schedule 'times' must be a list, ignoring")
            raw_entries = []

        entries: List[ScheduleEntry] = []
        for entry in raw_entries:
            value = entry.get('time') if isinstance(entry, dict) else entry
            if value is None:
                logger.warning(f"Invalid schedule entry format: {entry}")
                continue
            try:
                entries.append(ScheduleEntry(value))
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {entry}: {e}")
        self.schedule_entries = entries

        if entries:
            times_str = ", ".join(entry.time_str for entry in entries)
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): {times_str}")
        else:
            logger.info(f"No schedule times configured; crawling every {self.interval_minutes} minutes")

    def reload_schedule(self) -> None:
        logger.info("Reloading schedule configuration")
        self._load_schedule()

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> datetime:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        if self.schedule_entries:
            return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)
        interval = timedelta(minutes=self.interval_minutes)
        if self.last_tick_at is not None:
            return max(self.last_tick_at + interval, from_time)
        return from_time + interval

    def seconds_until_next_run(self, from_time: Optional[datetime] = None) -> float:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        return max(0.0, (self.get_next_run_time(from_time) - from_time).total_seconds())

    async def _dispatch(self, source: FeedSource, settings: Optional[CrawlerSettings]) -> bool:
        """Hand one due source to the queue or the pipeline; False when nothing was done."""
        if self.mode == "queue":
            if await self.db.execute("has_open_job", source_id=source.id):
                logger.debug(f"Source {source.id} already has an open job")
                return False
            await self.job_queue.create_job(source.id, source.user_id)
            return True
        await self.pipeline.process_single_feed(source, settings)
        return True

    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def run_tick(self) -> TickResult:
        """Dispatch every due source once."""
        if self.is_running:
            logger.warning("⚠️ Previous scheduler tick still running, skipping this one")
            return TickResult(skipped=True)

        self.is_running = True
        result = TickResult()
        started = datetime.now(timezone.utc)
        try:
            logger.info(f"🕒 Scheduler tick at {started.isoformat()} ({self.mode} mode)")
            enabled: List[CrawlerSettings] = await self.db.execute("get_enabled_crawler_settings")
            for settings in enabled:
                sources: List[FeedSource] = await self.db.execute(
                    "get_active_sources_due_for_crawl", user_id=settings.user_id
                )
                if not sources:
                    continue
                job_settings = None
                if self.mode == "direct":
                    job_settings = await self.db.execute("get_job_settings", user_id=settings.user_id) or settings

                for source in sources:
                    result.sources_due += 1
                    try:
                        if await self._dispatch(source, job_settings):
                            result.dispatched += 1
                    except Exception as e:
                        result.failed += 1
                        logger.error(f"❌ Error scheduling source {source.id} ({source.url}): {type(e).__name__}: {e}")
            self.last_tick_at = started
        finally:
            self.is_running = False

        logger.info(
            f"✅ Scheduler tick done: {result.sources_due} due, {result.dispatched} dispatched, {result.failed} failed"
        )
        return result

    async def trigger_now(self) -> TickResult:
        logger.info("⚡ Manually triggering scheduler tick")
        return await self.run_tick()

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            logger.info("🎬 Running a tick immediately on startup")
            await self._safe_tick()
        while True:
            next_time = self.get_next_run_time()
            sleep_time = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds())
            logger.info(f"😴 Sleeping {sleep_time / 60:.1f} minutes until next run (timezone: {self.schedule_timezone_name})")
            await sleep(sleep_time)
            await self._safe_tick()

    async def _safe_tick(self) -> None:
        try:
            await self.run_tick()
        except CancelledError:
            raise
        except Exception as e:
            logger.error(f"💥 Error in scheduler tick: {e}")

    async def start(self, run_immediately: Optional[bool] = None) -> None:
        if self._task is not None and not self._task.done():
            logger.info("ℹ️ Scheduler is already running")
            return
        if run_immediately is None:
            run_immediately = config.SCHEDULER_RUN_IMMEDIATELY
        self._task = create_task(self._loop(run_immediately))
        logger.info(f"🚀 Scheduler started in {self.mode} mode")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except CancelledError:
            pass
        self._task = None
        logger.info("🛑 Scheduler stopped")

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = (next_run - now).total_seconds()
        return {
            'current_time': now.isoformat(),
            'mode': self.mode,
            'is_running': self.is_running,
            'is_scheduled': self._task is not None and not self._task.done(),
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'interval_minutes': None if self.schedule_entries else self.interval_minutes,
            'next_run_time': next_run.isoformat(),
            'minutes_until_next_run': round(seconds_until / 60, 1),
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()

        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"⚙️ Mode: {status['mode']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        if status['schedule_times']:
            print(f"🎯 Scheduled times: {', '.join(status['schedule_times'])}")
        else:
            print(f"🔁 Interval: every {status['interval_minutes']} minutes")
        print(f"⏭️ Next run: {status['next_run_time']}")
        print(f"⏳ Time until next run: {status['minutes_until_next_run']:.1f} minutes")


def create_scheduler(db: DatabaseQueue, job_queue: Optional[JobQueue] = None,
                     pipeline: Optional[FeedPipeline] = None, **kwargs: Any) -> CrawlScheduler:
    """Create a CrawlScheduler wired to the given collaborators."""
    return CrawlScheduler(db, job_queue=job_queue, pipeline=pipeline, **kwargs)
