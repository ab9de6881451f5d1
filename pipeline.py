#!/usr/bin/env python3
"""
Per-source crawl pipeline.

`FeedPipeline.process_single_feed` takes one feed source through the full
chain: fetch the source page, classify it, pick candidate article URLs, then
for each candidate skip duplicates, fetch, extract, normalize with the
language model, store and notify. Per-candidate problems are logged and the
candidate skipped; a failure to fetch the source page itself fails the run.
"""

from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from time import time
from typing import List, Optional

from classifier import PageClassifier, is_probable_article_url
from config import config, get_logger
from errors import FetchError
from extractor import ArticleExtractor, ExtractedArticle
from fetcher import PageFetcher
from models import Article, CrawlerSettings, DatabaseQueue, FeedSource
from normalizer import ContentNormalizer
from notifier import Notifier
from telemetry import trace_span

logger = get_logger("pipeline")


@dataclass
class PipelineResult:
    source_id: int
    page_type: str = "unknown"
    candidates: int = 0
    created: List[int] = field(default_factory=list)
    duplicates: int = 0
    skipped: int = 0
    notifications_sent: int = 0


class FeedPipeline:
    """Runs the crawl, extract, normalize and store chain for one source at a time."""

    def __init__(self, db: DatabaseQueue, fetcher: PageFetcher, classifier: Optional[PageClassifier] = None,
                 extractor: Optional[ArticleExtractor] = None, normalizer: Optional[ContentNormalizer] = None,
                 notifier: Optional[Notifier] = None, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self.db = db
        self.fetcher = fetcher
        self.classifier = classifier or PageClassifier()
        self.extractor = extractor or ArticleExtractor()
        self.normalizer = normalizer or ContentNormalizer()
        self.notifier = notifier or Notifier()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config.EXTRACTION_CONCURRENCY, thread_name_prefix="extract"
        )

    async def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    async def is_duplicate(self, url: str) -> bool:
        return bool(await self.db.execute("exists_article_by_url", url=url))

    async def _extract(self, html: str, url: str) -> Optional[ExtractedArticle]:
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, self.extractor.extract, html, url)

    async def _set_source_status(self, source_id: int, status: str, last_run_at: Optional[int] = None) -> None:
        await self.db.execute("update_source_status", source_id=source_id, status=status, last_run_at=last_run_at)

    async def _notify(self, source: FeedSource, article: Article, result: PipelineResult) -> None:
        try:
            outcome = await self.notifier.notify(source.user_id, article)
        except Exception as e:
            logger.warning(f"Notifier raised for article {article.id}: {type(e).__name__}: {e}")
            return
        if outcome.sent:
            await self.db.execute("mark_notification_sent", article_id=article.id)
            article.notification_sent = True
            result.notifications_sent += 1
        elif outcome.error:
            logger.debug(f"Notification not sent for article {article.id}: {outcome.error}")

    async def _ingest(self, source: FeedSource, settings: CrawlerSettings, url: str,
                      extracted: ExtractedArticle, result: PipelineResult) -> Optional[int]:
        """Normalize, store and announce one extracted article; returns its id or None on URL conflict."""
        logger.info(f"🧠 Normalizing '{extracted.title[:60]}' ({len(extracted.content)} chars)")
        normalized = await self.normalizer.normalize(
            extracted.content, extracted.title, settings.default_ai_language or "auto"
        )
        article = Article(
            source_id=source.id,
            title=normalized.translated_title or extracted.title,
            original_content=extracted.content,
            formatted_content=normalized.formatted_content,
            summary=normalized.summary,
            url=url,
            notification_content=normalized.notification_content,
            image_url=extracted.image_url,
            published_at=extracted.published_at,
        )
        article_id = await self.db.execute("insert_article", article=article)
        if article_id is None:
            logger.info(f"⏭️ Article already stored by another run: {url}")
            result.duplicates += 1
            return None

        article.id = article_id
        result.created.append(article_id)
        suffix = " (fallback content)" if normalized.used_fallback else ""
        logger.info(f"💾 Stored article {article_id}: {article.title[:60]}{suffix}")
        await self._notify(source, article, result)
        return article_id

    async def _process_source_as_article(self, source: FeedSource, settings: CrawlerSettings,
                                         html: str, result: PipelineResult) -> bool:
        """Handle the source page itself as the article; False means fall back to discovered links."""
        result.candidates = 1
        if await self.is_duplicate(source.url):
            logger.info(f"⏭️ Source page already ingested: {source.url}")
            result.duplicates += 1
            return True

        try:
            extracted = await self._extract(html, source.url)
        except Exception as e:
            logger.warning(f"Extraction of source page {source.url} failed: {type(e).__name__}: {e}")
            extracted = None
        if extracted is None:
            logger.info(f"Source page {source.url} did not yield an article; using discovered links")
            return False

        try:
            await self._ingest(source, settings, source.url, extracted, result)
        except Exception as e:
            logger.error(f"❌ Error processing article {source.url}: {type(e).__name__}: {e}")
            result.skipped += 1
        return True

    async def _process_candidates(self, source: FeedSource, settings: CrawlerSettings,
                                  candidates: List[str], result: PipelineResult) -> None:
        limit = settings.max_articles_per_source or config.DEFAULT_MAX_ARTICLES_PER_SOURCE
        result.candidates = len(candidates)
        for index, url in enumerate(candidates, start=1):
            if len(result.created) >= limit:
                logger.info(f"Reached {limit} new articles for source {source.id}; stopping")
                break
            try:
                if await self.is_duplicate(url):
                    logger.debug(f"⏭️ Duplicate article skipped: {url}")
                    result.duplicates += 1
                    continue

                logger.info(f"📝 [{index}/{len(candidates)}] Fetching {url}")
                page = await self.fetcher.fetch(url)
                if page is None:
                    result.skipped += 1
                    continue

                extracted = await self._extract(page, url)
                if extracted is None:
                    result.skipped += 1
                    continue

                await self._ingest(source, settings, url, extracted, result)
            except Exception as e:
                logger.error(f"❌ Error processing article {url}: {type(e).__name__}: {e}")
                result.skipped += 1

    async def _run(self, source: FeedSource, settings: CrawlerSettings) -> PipelineResult:
        result = PipelineResult(source_id=source.id)

        html = await self.fetcher.fetch(source.url)
        if html is None:
            raise FetchError(source.url, details={"source_id": source.id})

        classification = await self.classifier.classify(html, source.url)
        result.page_type = classification.page_type

        if classification.page_type == "article" or is_probable_article_url(source.url):
            if await self._process_source_as_article(source, settings, html, result):
                return result

        await self._process_candidates(source, settings, classification.article_urls, result)
        return result

    @trace_span(
        "pipeline.process_single_feed",
        tracer_name="pipeline",
        attr_from_args=lambda self, source, settings: {
            "source.id": source.id,
            "source.url": source.url,
            "settings.max_articles": settings.max_articles_per_source,
        },
    )
    async def process_single_feed(self, source: FeedSource, settings: CrawlerSettings) -> PipelineResult:
        """Crawl one source; raises on a source-level failure after marking it failed."""
        logger.info(f"🚀 Processing source {source.id}: {source.url}")
        start_time = time()
        await self._set_source_status(source.id, "running")
        try:
            result = await self._run(source, settings)
        except Exception as e:
            logger.error(f"💥 Source {source.id} failed: {type(e).__name__}: {e}")
            await self._set_source_status(source.id, "failed")
            raise

        await self._set_source_status(source.id, "completed", last_run_at=int(time()))
        logger.info(
            f"✅ Source {source.id} done in {time() - start_time:.1f}s: {len(result.created)} new, "
            f"{result.duplicates} duplicates, {result.skipped} skipped of {result.candidates} candidates"
        )
        return result
