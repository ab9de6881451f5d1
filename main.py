#!/usr/bin/env python3
"""
AI feed crawler entry point.

Wires storage, fetching, classification, extraction, normalization,
notification, the job queue and the scheduler together and exposes them as
command line modes:

- worker: run the job queue and the scheduler until interrupted
- run: one direct-mode scheduler tick over every due source
- enqueue / process-jobs / jobs / cleanup: job queue operations
- add-source / configure: per-user setup
- status / schedule-status: reporting
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from classifier import PageClassifier
from config import config, get_logger
from errors import CrawlerError
from extractor import ArticleExtractor
from fetcher import PageFetcher
from job_queue import JobQueue
from models import DatabaseQueue
from normalizer import ContentNormalizer
from notifier import create_notifier
from pipeline import FeedPipeline
from scheduler import CrawlScheduler, create_scheduler
from telemetry import init_telemetry

logger = get_logger("main")
init_telemetry("ai-feed-crawler")


class CrawlerApplication:
    """Owns every long-lived component and their start/stop order."""

    def __init__(self, db_path: Optional[str] = None, scheduler_mode: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path)
        self.fetcher = PageFetcher()
        self.notifier = create_notifier()
        self.scheduler_mode = scheduler_mode
        self.pipeline: Optional[FeedPipeline] = None
        self.job_queue: Optional[JobQueue] = None
        self.scheduler: Optional[CrawlScheduler] = None

    async def start(self) -> None:
        await self.db.start()
        await self.fetcher.initialize()
        self.pipeline = FeedPipeline(
            self.db,
            self.fetcher,
            classifier=PageClassifier(),
            extractor=ArticleExtractor(),
            normalizer=ContentNormalizer(),
            notifier=self.notifier,
        )
        self.job_queue = JobQueue(self.db, self.pipeline)
        self.scheduler = create_scheduler(
            self.db, job_queue=self.job_queue, pipeline=self.pipeline, mode=self.scheduler_mode
        )

    async def close(self) -> None:
        if self.scheduler:
            await self.scheduler.stop()
        if self.job_queue:
            await self.job_queue.stop()
        if self.pipeline:
            await self.pipeline.close()
        await self.notifier.close()
        await self.fetcher.close()
        await self.db.stop()

    async def __aenter__(self) -> "CrawlerApplication":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def run_worker(self) -> None:
        """Run the job queue and the scheduler until cancelled."""
        missing = config.validate_configuration()
        if missing:
            logger.warning(f"⚠️ Missing configuration: {', '.join(missing)}; AI steps will use fallbacks")
        await self.job_queue.start()
        await self.scheduler.start()
        self.scheduler.print_schedule_status()
        await asyncio.Event().wait()

    async def get_status(self) -> Dict[str, Any]:
        stats = await self.db.execute("get_database_stats")
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        stats["database_path"] = self.db.db_path
        stats["config"] = config.get_config_summary()
        return stats


def print_status(status: Dict[str, Any]) -> None:
    print("\n📊 AI Feed Crawler Status")
    print(f"⏰ {status['timestamp']}")
    print(f"💾 Database: {status['database_path']}")
    settings = status.get("config", {})
    if settings:
        llm = settings["llm"]
        key_state = "configured" if llm["api_key_configured"] else "missing"
        print(f"🤖 Model: {llm['model']} (API key {key_state}), scheduler: {settings['scheduler']['mode']}")
    print(f"   🌐 Sources: {status['sources']} ({status['active_sources']} active, {status['failed_sources']} failed)")
    print(f"   📰 Articles: {status['articles']} ({status['notified_articles']} notified)")
    jobs = status.get("jobs", {})
    print("   📋 Jobs: " + ", ".join(f"{name} {count}" for name, count in jobs.items()))


def print_jobs(stats: Dict[str, int], jobs) -> None:
    print("\n📋 Jobs: " + ", ".join(f"{name} {count}" for name, count in stats.items()))
    for job in jobs:
        scheduled = datetime.fromtimestamp(job.scheduled_at, timezone.utc).isoformat()
        line = f"   #{job.id} source {job.source_id} {job.status} (retries {job.retry_count}/{job.max_retries}, scheduled {scheduled})"
        if job.error_message:
            line += f" - {job.error_message}"
        print(line)


async def run_mode(args: argparse.Namespace) -> bool:
    """Execute one CLI mode; returns True on success."""
    scheduler_mode = "direct" if args.mode == "run" else None
    async with CrawlerApplication(args.database, scheduler_mode=scheduler_mode) as app:
        if args.mode == "worker":
            await app.run_worker()

        elif args.mode == "run":
            result = await app.scheduler.run_tick()
            return result.failed == 0

        elif args.mode == "enqueue":
            job = await app.job_queue.create_job(args.source_id, args.user_id, priority=args.priority)
            print(f"📝 Created job {job.id} for source {job.source_id}")

        elif args.mode == "process-jobs":
            handled = await app.job_queue.trigger_now()
            print(f"📋 Processed {handled} jobs")

        elif args.mode == "jobs":
            stats = await app.job_queue.get_job_stats(args.user_id)
            jobs = await app.job_queue.get_user_jobs(args.user_id, limit=args.limit)
            print_jobs(stats, jobs)

        elif args.mode == "cleanup":
            deleted = await app.job_queue.cleanup_old_jobs(args.retention_days)
            print(f"🧹 Deleted {deleted} completed jobs")

        elif args.mode == "add-source":
            source_id = await app.db.execute(
                "register_source", user_id=args.user_id, url=args.url, crawl_interval=args.interval, title=args.title
            )
            if source_id is None:
                logger.error(f"❌ Could not register source {args.url}")
                return False
            print(f"🌐 Source {source_id}: {args.url} (every {args.interval} minutes)")

        elif args.mode == "configure":
            current = await app.db.execute("get_crawler_settings", user_id=args.user_id)
            is_enabled = args.enabled if args.enabled is not None else (current.is_enabled if current else False)
            max_articles = args.max_articles or (current.max_articles_per_source if current
                                                 else config.DEFAULT_MAX_ARTICLES_PER_SOURCE)
            language = args.language or (current.default_ai_language if current else "auto")
            saved = await app.db.execute(
                "upsert_crawler_settings",
                user_id=args.user_id,
                is_enabled=is_enabled,
                max_articles_per_source=max_articles,
                default_ai_language=language,
            )
            if args.user_language is not None:
                saved = saved and await app.db.execute(
                    "set_user_preference", user_id=args.user_id, default_ai_language=args.user_language or None
                )
            if not saved:
                logger.error(f"❌ Could not save settings for {args.user_id}")
                return False
            merged = await app.db.execute("get_job_settings", user_id=args.user_id)
            print(f"⚙️ {args.user_id}: enabled={merged.is_enabled} max_articles={merged.max_articles_per_source} "
                  f"language={merged.default_ai_language}")

        elif args.mode == "status":
            print_status(await app.get_status())

        elif args.mode == "schedule-status":
            app.scheduler.print_schedule_status()

    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='AI Feed Crawler')
    parser.add_argument('mode', choices=['worker', 'run', 'enqueue', 'process-jobs', 'jobs', 'cleanup',
                                         'add-source', 'configure', 'status', 'schedule-status'],
                        help='Operation mode')
    parser.add_argument('--database', type=str, help='SQLite database path (default: DATABASE_PATH)')
    parser.add_argument('--user-id', type=str, help='User the command applies to')
    parser.add_argument('--source-id', type=int, help='Feed source id (enqueue)')
    parser.add_argument('--priority', type=int, default=0, help='Job priority, higher runs sooner (enqueue)')
    parser.add_argument('--limit', type=int, default=50, help='Number of jobs to list (jobs)')
    parser.add_argument('--retention-days', type=int, help='Keep completed jobs this many days (cleanup)')
    parser.add_argument('--url', type=str, help='Source URL (add-source)')
    parser.add_argument('--title', type=str, help='Source title (add-source)')
    parser.add_argument('--interval', type=int, default=60, help='Crawl interval in minutes (add-source)')
    toggle = parser.add_mutually_exclusive_group()
    toggle.add_argument('--enable', dest='enabled', action='store_true', default=None,
                        help='Enable crawling for the user (configure)')
    toggle.add_argument('--disable', dest='enabled', action='store_false',
                        help='Disable crawling for the user (configure)')
    parser.set_defaults(enabled=None)
    parser.add_argument('--max-articles', type=int, help='New articles per source and run (configure)')
    parser.add_argument('--language', type=str, help='Crawler default AI language, or "auto" (configure)')
    parser.add_argument('--user-language', type=str,
                        help='Preferred AI language that overrides the crawler default; empty clears it (configure)')
    return parser


REQUIRED_ARGS = {
    'enqueue': ('source_id', 'user_id'),
    'jobs': ('user_id',),
    'add-source': ('user_id', 'url'),
    'configure': ('user_id',),
}


def main():
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    missing = [name for name in REQUIRED_ARGS.get(args.mode, ()) if getattr(args, name) is None]
    if missing:
        parser.error(f"{args.mode} requires " + ", ".join('--' + name.replace('_', '-') for name in missing))

    try:
        success = asyncio.run(run_mode(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Crawler shutting down")
    except CrawlerError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
