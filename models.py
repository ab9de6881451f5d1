#!/usr/bin/env python3
"""
Database models and operations for the AI feed crawler.

Row types for feed sources, crawler settings, jobs and articles, plus the
DatabaseQueue that serializes every SQLite operation through a single
worker task. Callers use ``await db.execute("<operation>", **params)``.
"""

from dataclasses import dataclass, asdict, field
from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("models")

SOURCE_STATUSES = ("idle", "running", "completed", "failed")
JOB_STATUSES = ("pending", "running", "completed", "failed")
DEFAULT_LANGUAGE = "auto"


@dataclass
class FeedSource:
    id: int
    user_id: str
    url: str
    is_active: bool = True
    crawl_interval: int = 60
    last_run_at: Optional[int] = None
    status: str = "idle"
    title: Optional[str] = None

    @classmethod
    def from_row(cls, row: Row, prefix: str = "") -> "FeedSource":
        return cls(
            id=row[f"{prefix}id"],
            user_id=row[f"{prefix}user_id"],
            url=row[f"{prefix}url"],
            is_active=bool(row[f"{prefix}is_active"]),
            crawl_interval=row[f"{prefix}crawl_interval"],
            last_run_at=row[f"{prefix}last_run_at"],
            status=row[f"{prefix}status"],
            title=row[f"{prefix}title"],
        )


@dataclass
class CrawlerSettings:
    user_id: str
    is_enabled: bool = False
    max_articles_per_source: int = 5
    default_ai_language: str = DEFAULT_LANGUAGE

    @classmethod
    def from_row(cls, row: Row) -> "CrawlerSettings":
        return cls(
            user_id=row["user_id"],
            is_enabled=bool(row["is_enabled"]),
            max_articles_per_source=row["max_articles_per_source"],
            default_ai_language=row["default_ai_language"] or DEFAULT_LANGUAGE,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "CrawlerSettings":
        data = json.loads(raw) if raw else {}
        return cls(
            user_id=data.get("user_id", ""),
            is_enabled=bool(data.get("is_enabled", False)),
            max_articles_per_source=int(data.get("max_articles_per_source") or config.DEFAULT_MAX_ARTICLES_PER_SOURCE),
            default_ai_language=data.get("default_ai_language") or DEFAULT_LANGUAGE,
        )


@dataclass
class Job:
    id: int
    source_id: int
    user_id: str
    status: str
    priority: int
    settings: CrawlerSettings
    scheduled_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    lease_token: Optional[str] = None

    @classmethod
    def from_row(cls, row: Row) -> "Job":
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            user_id=row["user_id"],
            status=row["status"],
            priority=row["priority"],
            settings=CrawlerSettings.from_json(row["settings"]),
            scheduled_at=row["scheduled_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error_message=row["error_message"],
            lease_token=row["lease_token"],
        )


@dataclass
class Article:
    source_id: int
    title: str
    original_content: str
    formatted_content: str
    summary: str
    url: str
    notification_content: str = ""
    image_url: Optional[str] = None
    published_at: Optional[int] = None
    is_deleted: bool = False
    notification_sent: bool = False
    id: Optional[int] = None
    created_at: int = field(default_factory=lambda: int(time()))

    @classmethod
    def from_row(cls, row: Row) -> "Article":
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            original_content=row["original_content"],
            formatted_content=row["formatted_content"],
            summary=row["summary"],
            url=row["url"],
            notification_content=row["notification_content"] or "",
            image_url=row["image_url"],
            published_at=row["published_at"],
            is_deleted=bool(row["is_deleted"]),
            notification_sent=bool(row["notification_sent"]),
            created_at=row["created_at"],
        )


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='jobs'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()
    try:
        # Migration 1: fencing token for reclaimed jobs
        cursor.execute("PRAGMA table_info(jobs)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'lease_token' not in columns:
            logger.info("Adding lease_token column to jobs table")
            cursor.execute("ALTER TABLE jobs ADD COLUMN lease_token TEXT")
            conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure all access happens on one connection."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so they do not hang
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before {operation_name} completed")
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Feed sources
    # ------------------------------------------------------------------
    def register_source(self, user_id: str, url: str, crawl_interval: int = 60, title: Optional[str] = None) -> Optional[int]:
        """Register a feed source for a user (idempotent) and return its id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO feed_sources (user_id, url, title, crawl_interval, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, url, title, crawl_interval, int(time()))
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM feed_sources WHERE user_id = ? AND url = ?", (user_id, url))
            row = cursor.fetchone()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error registering source {url} for {user_id}: {e}")
            return None

    def get_source(self, source_id: int) -> Optional[FeedSource]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM feed_sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return FeedSource.from_row(row) if row else None
        except Error as e:
            logger.error(f"Error loading source {source_id}: {e}")
            return None

    def set_source_active(self, source_id: int, is_active: bool) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feed_sources SET is_active = ? WHERE id = ?", (int(is_active), source_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating is_active for source {source_id}: {e}")
            return False

    def update_source_status(self, source_id: int, status: str, last_run_at: Optional[int] = None) -> bool:
        """Set a source's status, and its last_run_at when provided."""
        if status not in SOURCE_STATUSES:
            raise ValueError(f"Invalid source status: {status}")
        try:
            cursor = self.conn.cursor()
            if last_run_at is not None:
                cursor.execute(
                    "UPDATE feed_sources SET status = ?, last_run_at = ? WHERE id = ?",
                    (status, last_run_at, source_id)
                )
            else:
                cursor.execute("UPDATE feed_sources SET status = ? WHERE id = ?", (status, source_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating status for source {source_id}: {e}")
            return False

    def get_active_sources_due_for_crawl(self, user_id: str, now: Optional[int] = None) -> List[FeedSource]:
        """Active sources never crawled, or whose crawl interval has elapsed."""
        now = now if now is not None else int(time())
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT * FROM feed_sources
                WHERE user_id = ? AND is_active = 1
                  AND (last_run_at IS NULL OR ? > last_run_at + crawl_interval * 60)
                ORDER BY id
                """,
                (user_id, now)
            )
            return [FeedSource.from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing due sources for {user_id}: {e}")
            return []

    # ------------------------------------------------------------------
    # Crawler settings and preferences
    # ------------------------------------------------------------------
    def upsert_crawler_settings(self, user_id: str, is_enabled: bool, max_articles_per_source: int,
                                default_ai_language: str = DEFAULT_LANGUAGE) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO crawler_settings (user_id, is_enabled, max_articles_per_source, default_ai_language, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    is_enabled = excluded.is_enabled,
                    max_articles_per_source = excluded.max_articles_per_source,
                    default_ai_language = excluded.default_ai_language,
                    updated_at = excluded.updated_at
                """,
                (user_id, int(is_enabled), max_articles_per_source, default_ai_language or DEFAULT_LANGUAGE, int(time()))
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error saving crawler settings for {user_id}: {e}")
            return False

    def get_crawler_settings(self, user_id: str) -> Optional[CrawlerSettings]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM crawler_settings WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return CrawlerSettings.from_row(row) if row else None
        except Error as e:
            logger.error(f"Error loading crawler settings for {user_id}: {e}")
            return None

    def get_enabled_crawler_settings(self) -> List[CrawlerSettings]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM crawler_settings WHERE is_enabled = 1 ORDER BY user_id")
            return [CrawlerSettings.from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing enabled crawler settings: {e}")
            return []

    def set_user_preference(self, user_id: str, default_ai_language: Optional[str]) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO user_preferences (user_id, default_ai_language, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    default_ai_language = excluded.default_ai_language,
                    updated_at = excluded.updated_at
                """,
                (user_id, default_ai_language, int(time()))
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error saving preferences for {user_id}: {e}")
            return False

    def get_job_settings(self, user_id: str) -> Optional[CrawlerSettings]:
        """Crawler settings merged with the user's language preference.

        Returns None when the user has no crawler settings at all.
        """
        settings = self.get_crawler_settings(user_id)
        if settings is None:
            return None
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT default_ai_language FROM user_preferences WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
        except Error as e:
            logger.error(f"Error loading preferences for {user_id}: {e}")
            row = None
        if row and row['default_ai_language']:
            settings.default_ai_language = row['default_ai_language']
        if settings.max_articles_per_source <= 0:
            settings.max_articles_per_source = config.DEFAULT_MAX_ARTICLES_PER_SOURCE
        return settings

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def insert_job(self, source_id: int, user_id: str, settings: CrawlerSettings, priority: int = 0,
                   max_retries: int = 3, scheduled_at: Optional[int] = None) -> Optional[Job]:
        now = int(time())
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO jobs (source_id, user_id, status, priority, settings, scheduled_at, max_retries, created_at)
                VALUES (?, ?, 'pending', ?, ?, ?, ?, ?)
                """,
                (source_id, user_id, priority, settings.to_json(),
                 scheduled_at if scheduled_at is not None else now, max_retries, now)
            )
            self.conn.commit()
            return self.get_job(cursor.lastrowid)
        except Error as e:
            logger.error(f"Error inserting job for source {source_id}: {e}")
            return None

    def get_job(self, job_id: int) -> Optional[Job]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = cursor.fetchone()
            return Job.from_row(row) if row else None
        except Error as e:
            logger.error(f"Error loading job {job_id}: {e}")
            return None

    def list_due_jobs(self, now: int, stuck_before: int, limit: int = 5) -> List[Tuple[Job, Optional[FeedSource]]]:
        """Pending jobs that are due plus running jobs started before `stuck_before`.

        Ordered by priority (highest first) then scheduled time. The source is
        None when it no longer exists.
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT j.*,
                       s.id AS s_id, s.user_id AS s_user_id, s.url AS s_url, s.title AS s_title,
                       s.is_active AS s_is_active, s.crawl_interval AS s_crawl_interval,
                       s.last_run_at AS s_last_run_at, s.status AS s_status
                FROM jobs j
                LEFT JOIN feed_sources s ON s.id = j.source_id
                WHERE (j.status = 'pending' AND j.scheduled_at <= ?)
                   OR (j.status = 'running' AND j.started_at <= ?)
                ORDER BY j.priority DESC, j.scheduled_at ASC
                LIMIT ?
                """,
                (now, stuck_before, limit)
            )
            results = []
            for row in cursor.fetchall():
                source = FeedSource.from_row(row, prefix="s_") if row["s_id"] is not None else None
                results.append((Job.from_row(row), source))
            return results
        except Error as e:
            logger.error(f"Error listing due jobs: {e}")
            return []

    def update_job(self, job_id: int, expected_lease: Optional[str] = None, **changes) -> bool:
        """Apply column changes to a job.

        When `expected_lease` is given the update only applies while the job
        still holds that lease token. Returns True if a row changed.
        """
        allowed = {"status", "scheduled_at", "started_at", "completed_at", "retry_count",
                   "error_message", "lease_token", "priority"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        if "status" in changes and changes["status"] not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {changes['status']}")
        if not changes:
            return False

        columns = sorted(changes)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values: List[Any] = [changes[column] for column in columns]
        query = f"UPDATE jobs SET {assignments} WHERE id = ?"
        values.append(job_id)
        if expected_lease is not None:
            query += " AND lease_token = ?"
            values.append(expected_lease)
        try:
            cursor = self.conn.cursor()
            cursor.execute(query, values)
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating job {job_id}: {e}")
            return False

    def claim_job(self, job_id: int, lease_token: str, started_at: Optional[int] = None) -> bool:
        """Mark a job running under a fresh lease token."""
        return self.update_job(
            job_id,
            status="running",
            started_at=started_at if started_at is not None else int(time()),
            lease_token=lease_token,
        )

    def finish_job(self, job_id: int, lease_token: str, status: str, error_message: Optional[str] = None) -> bool:
        """Move a job to a terminal state if it still holds `lease_token`."""
        if status not in ("completed", "failed"):
            raise ValueError(f"Not a terminal job status: {status}")
        return self.update_job(
            job_id,
            expected_lease=lease_token,
            status=status,
            completed_at=int(time()),
            error_message=error_message,
        )

    def has_open_job(self, source_id: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT 1 FROM jobs WHERE source_id = ? AND status IN ('pending', 'running') LIMIT 1",
                (source_id,)
            )
            return cursor.fetchone() is not None
        except Error as e:
            logger.error(f"Error checking open jobs for source {source_id}: {e}")
            return False

    def list_user_jobs(self, user_id: str, limit: int = 50) -> List[Job]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM jobs WHERE user_id = ? ORDER BY scheduled_at DESC, id DESC LIMIT ?",
                (user_id, limit)
            )
            return [Job.from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing jobs for {user_id}: {e}")
            return []

    def count_jobs_by_status(self, user_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status: 0 for status in JOB_STATUSES}
        try:
            cursor = self.conn.cursor()
            if user_id is None:
                cursor.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
            else:
                cursor.execute("SELECT status, COUNT(*) AS n FROM jobs WHERE user_id = ? GROUP BY status", (user_id,))
            for row in cursor.fetchall():
                counts[row['status']] = row['n']
        except Error as e:
            logger.error(f"Error counting jobs: {e}")
        return counts

    def delete_completed_jobs_before(self, cutoff: int) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM jobs WHERE status = 'completed' AND completed_at < ?", (cutoff,))
            self.conn.commit()
            return cursor.rowcount
        except Error as e:
            logger.error(f"Error deleting old jobs: {e}")
            return 0

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------
    def exists_article_by_url(self, url: str) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1 FROM articles WHERE url = ? LIMIT 1", (url,))
            return cursor.fetchone() is not None
        except Error as e:
            logger.error(f"Error checking article URL {url}: {e}")
            return False

    def insert_article(self, article: Article) -> Optional[int]:
        """Insert an article; returns its id, or None when the URL already exists."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO articles (
                    source_id, title, original_content, formatted_content, summary, url,
                    image_url, notification_content, published_at, is_deleted, notification_sent, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article.source_id,
                    article.title,
                    article.original_content,
                    article.formatted_content,
                    article.summary,
                    article.url,
                    article.image_url,
                    article.notification_content,
                    article.published_at,
                    int(article.is_deleted),
                    int(article.notification_sent),
                    article.created_at,
                )
            )
            self.conn.commit()
            return cursor.lastrowid if cursor.rowcount > 0 else None
        except Error as e:
            logger.error(f"Error inserting article {article.url}: {e}")
            return None

    def get_article(self, article_id: int) -> Optional[Article]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM articles WHERE id = ?", (article_id,))
            row = cursor.fetchone()
            return Article.from_row(row) if row else None
        except Error as e:
            logger.error(f"Error loading article {article_id}: {e}")
            return None

    def mark_notification_sent(self, article_id: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE articles SET notification_sent = 1 WHERE id = ?", (article_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error marking notification sent for article {article_id}: {e}")
            return False

    def count_articles(self, source_id: Optional[int] = None) -> int:
        try:
            cursor = self.conn.cursor()
            if source_id is None:
                cursor.execute("SELECT COUNT(*) FROM articles")
            else:
                cursor.execute("SELECT COUNT(*) FROM articles WHERE source_id = ?", (source_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except Error as e:
            logger.error(f"Error counting articles: {e}")
            return 0

    def get_database_stats(self) -> Dict[str, Any]:
        """Counts used by the status command."""
        stats: Dict[str, Any] = {"sources": 0, "active_sources": 0, "failed_sources": 0,
                                 "articles": 0, "notified_articles": 0}
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_active), 0), "
                "COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) FROM feed_sources"
            )
            row = cursor.fetchone()
            stats["sources"], stats["active_sources"], stats["failed_sources"] = row[0], row[1], row[2]
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(notification_sent), 0) FROM articles")
            row = cursor.fetchone()
            stats["articles"], stats["notified_articles"] = row[0], row[1]
        except Error as e:
            logger.error(f"Error collecting database stats: {e}")
        stats["jobs"] = self.count_jobs_by_status()
        return stats
