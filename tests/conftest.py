import os

# Must be set before any project module imports config
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ["LLM_REQUESTS_PER_MINUTE"] = "0"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

import pytest
import pytest_asyncio

from models import CrawlerSettings, DatabaseQueue, FeedSource


LONG_PARAGRAPH = (
    "The city council approved a new transit plan on Tuesday after months of public hearings. "
    "The plan adds three bus lines and extends service hours on weekends. "
    "Officials said the first routes should open before the end of the year. "
)


def article_html(title="Council approves new transit plan for the city", paragraphs=4, extra=""):
    body = "".join(f"<p>{LONG_PARAGRAPH}</p>" for _ in range(paragraphs))
    return (
        f"<html><head><title>{title}</title>"
        f'<meta property="article:published_time" content="2024-05-01T10:00:00Z">'
        f'<meta property="og:image" content="/images/hero.jpg"></head>'
        f"<body><article><h1>{title}</h1>{body}</article>{extra}</body></html>"
    )


def listing_html(article_paths, nav_paths=()):
    nav = "".join(f'<a href="{path}">{text}</a>' for path, text in nav_paths)
    items = "".join(
        f'<li><a href="{path}">Report: new analysis of city budget number {i}</a></li>'
        for i, path in enumerate(article_paths)
    )
    return f"<html><body><nav>{nav}</nav><ul>{items}</ul></body></html>"


class FakeFetcher:
    """Serves canned pages by URL; unknown URLs fail like a 404."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requested = []

    async def fetch(self, url, timeout=None):
        self.requested.append(url)
        return self.pages.get(url)


class FakeNotifier:
    def __init__(self, sent=True, raises=False):
        self.sent = sent
        self.raises = raises
        self.calls = []

    async def notify(self, user_id, article):
        from notifier import NotificationResult, build_notification_payload

        self.calls.append((user_id, article))
        if self.raises:
            raise RuntimeError("push service down")
        return NotificationResult(sent=self.sent, payload=build_notification_payload(article))

    async def close(self):
        pass


def completion_returning(*responses):
    """Build a fake completion callable that returns (or raises) each response in turn."""
    calls = []

    async def _completion(messages, **kwargs):
        calls.append({"messages": messages, **kwargs})
        response = responses[min(len(calls), len(responses)) - 1]
        if isinstance(response, BaseException):
            raise response
        return response

    _completion.calls = calls
    return _completion


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "crawler.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def user_source(db):
    """An enabled user with one registered source."""
    await db.execute("upsert_crawler_settings", user_id="u1", is_enabled=True, max_articles_per_source=5)
    source_id = await db.execute("register_source", user_id="u1", url="https://news.example.com/")
    source = await db.execute("get_source", source_id=source_id)
    return source


@pytest.fixture
def settings():
    return CrawlerSettings(user_id="u1", is_enabled=True, max_articles_per_source=5, default_ai_language="auto")


@pytest.fixture
def source():
    return FeedSource(id=1, user_id="u1", url="https://news.example.com/")
