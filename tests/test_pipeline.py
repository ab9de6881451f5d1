import pytest

from classifier import PageClassification
from conftest import FakeFetcher, FakeNotifier, article_html, listing_html
from errors import FetchError
from extractor import ArticleExtractor, ExtractedArticle
from normalizer import NormalizedContent
from pipeline import FeedPipeline

BASE = "https://news.example.com/"


class StubClassifier:
    def __init__(self, page_type="listing", urls=()):
        self.page_type = page_type
        self.urls = list(urls)

    async def classify(self, html, base_url):
        return PageClassification(page_type=self.page_type, article_urls=list(self.urls))


class StubExtractor:
    """Extracts pages that contain 'ARTICLE'; rejects anything else."""

    def extract(self, html, url):
        if "ARTICLE" not in html:
            return None
        return ExtractedArticle(title=f"Title for {url}", content=html, published_at=1700000000,
                                image_url="https://img.example/1.jpg")


class StubNormalizer:
    def __init__(self):
        self.languages = []

    async def normalize(self, raw_content, title, target_language="auto"):
        self.languages.append(target_language)
        return NormalizedContent(
            formatted_content=f"formatted {title}",
            summary="summary",
            notification_content=f"notify {title}",
            translated_title=f"AI {title}",
        )


def article_urls(count):
    return [f"{BASE}2024/05/{i:02d}/story" for i in range(1, count + 1)]


def make_pipeline(db, pages, urls, page_type="listing", notifier=None, extractor=None):
    fetcher = FakeFetcher(pages)
    normalizer = StubNormalizer()
    pipeline = FeedPipeline(
        db,
        fetcher,
        classifier=StubClassifier(page_type, urls),
        extractor=extractor or StubExtractor(),
        normalizer=normalizer,
        notifier=notifier or FakeNotifier(),
    )
    return pipeline, fetcher, normalizer


@pytest.mark.asyncio
async def test_listing_respects_quota_and_skips_duplicates(db, user_source, settings):
    urls = article_urls(8)
    pages = {BASE: "LISTING"}
    pages.update({url: f"ARTICLE {url}" for url in urls})
    pipeline, fetcher, _ = make_pipeline(db, pages, urls)
    settings.max_articles_per_source = 3

    try:
        first = await pipeline.process_single_feed(user_source, settings)
        assert len(first.created) == 3
        assert first.candidates == 8

        second = await pipeline.process_single_feed(user_source, settings)
        assert second.duplicates == 3
        assert len(second.created) == 3
        assert await db.execute("count_articles", source_id=user_source.id) == 6
    finally:
        await pipeline.close()

    source = await db.execute("get_source", source_id=user_source.id)
    assert source.status == "completed"
    assert source.last_run_at is not None


@pytest.mark.asyncio
async def test_failed_extractions_do_not_count_against_quota(db, user_source, settings):
    urls = article_urls(5)
    pages = {BASE: "LISTING", urls[0]: "junk", urls[2]: f"ARTICLE {urls[2]}",
             urls[3]: f"ARTICLE {urls[3]}", urls[4]: f"ARTICLE {urls[4]}"}
    pipeline, fetcher, _ = make_pipeline(db, pages, urls)
    settings.max_articles_per_source = 2

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert len(result.created) == 2
    assert result.skipped == 2
    assert urls[4] not in fetcher.requested


@pytest.mark.asyncio
async def test_stored_article_uses_normalized_content(db, user_source, settings):
    urls = article_urls(1)
    pipeline, _, normalizer = make_pipeline(db, {BASE: "LISTING", urls[0]: "ARTICLE body"}, urls)
    settings.default_ai_language = "de"

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    article = await db.execute("get_article", article_id=result.created[0])
    assert article.title == f"AI Title for {urls[0]}"
    assert article.original_content == "ARTICLE body"
    assert article.formatted_content == f"formatted Title for {urls[0]}"
    assert article.image_url == "https://img.example/1.jpg"
    assert article.published_at == 1700000000
    assert normalizer.languages == ["de"]


@pytest.mark.asyncio
async def test_source_fetch_failure_marks_source_failed(db, user_source, settings):
    pipeline, _, _ = make_pipeline(db, {}, [])
    with pytest.raises(FetchError):
        await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    source = await db.execute("get_source", source_id=user_source.id)
    assert source.status == "failed"


@pytest.mark.asyncio
async def test_notification_sets_flag(db, user_source, settings):
    urls = article_urls(1)
    notifier = FakeNotifier(sent=True)
    pipeline, _, _ = make_pipeline(db, {BASE: "LISTING", urls[0]: "ARTICLE"}, urls, notifier=notifier)

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert result.notifications_sent == 1
    assert notifier.calls[0][0] == "u1"
    article = await db.execute("get_article", article_id=result.created[0])
    assert article.notification_sent


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_article(db, user_source, settings):
    urls = article_urls(1)
    pipeline, _, _ = make_pipeline(db, {BASE: "LISTING", urls[0]: "ARTICLE"}, urls,
                                   notifier=FakeNotifier(raises=True))

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert len(result.created) == 1
    article = await db.execute("get_article", article_id=result.created[0])
    assert not article.notification_sent


@pytest.mark.asyncio
async def test_article_page_is_ingested_from_source_html(db, settings):
    url = "https://news.example.com/2024/05/01/big-story"
    source_id = await db.execute("register_source", user_id="u1", url=url)
    source = await db.execute("get_source", source_id=source_id)
    pipeline, fetcher, _ = make_pipeline(db, {url: "ARTICLE page"}, article_urls(3), page_type="article")

    result = await pipeline.process_single_feed(source, settings)
    assert result.candidates == 1
    assert len(result.created) == 1
    assert fetcher.requested == [url]

    again = await pipeline.process_single_feed(source, settings)
    await pipeline.close()
    assert again.duplicates == 1
    assert again.created == []


@pytest.mark.asyncio
async def test_failed_article_extraction_falls_back_to_discovered_links(db, user_source, settings):
    urls = article_urls(2)
    pages = {BASE: "not an article", urls[0]: "ARTICLE one", urls[1]: "ARTICLE two"}
    pipeline, _, _ = make_pipeline(db, pages, urls, page_type="article")

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert result.candidates == 2
    assert len(result.created) == 2


@pytest.mark.asyncio
async def test_real_extractor_runs_in_thread_pool(db, user_source, settings):
    urls = article_urls(1)
    pages = {BASE: listing_html(["/2024/05/01/story"]), urls[0]: article_html()}
    pipeline, _, _ = make_pipeline(db, pages, urls, extractor=ArticleExtractor())

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert len(result.created) == 1


@pytest.mark.asyncio
async def test_unparseable_article_source_falls_back_to_discovered_links(db, settings):
    url = "https://news.example.com/2024/05/01/big-story"
    source_id = await db.execute("register_source", user_id="u1", url=url)
    source = await db.execute("get_source", source_id=source_id)
    urls = article_urls(2)
    pages = {url: "<!-- consent wall -->", urls[0]: article_html(), urls[1]: article_html()}
    pipeline, _, _ = make_pipeline(db, pages, urls, page_type="article", extractor=ArticleExtractor())

    result = await pipeline.process_single_feed(source, settings)
    await pipeline.close()

    assert result.candidates == 2
    assert len(result.created) == 2
    assert (await db.execute("get_source", source_id=source_id)).status == "completed"


class ExplodingExtractor(StubExtractor):
    def extract(self, html, url):
        if "explode" in html:
            raise RuntimeError("parser blew up")
        return super().extract(html, url)


@pytest.mark.asyncio
async def test_source_extraction_error_is_treated_as_no_article(db, user_source, settings):
    urls = article_urls(1)
    pages = {BASE: "explode", urls[0]: "ARTICLE one"}
    pipeline, _, _ = make_pipeline(db, pages, urls, page_type="article", extractor=ExplodingExtractor())

    result = await pipeline.process_single_feed(user_source, settings)
    await pipeline.close()

    assert len(result.created) == 1
    assert (await db.execute("get_source", source_id=user_source.id)).status == "completed"
