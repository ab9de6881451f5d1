#!/usr/bin/env python3
"""
Article notification delivery.

The pipeline hands every stored article to a notifier. Delivery is best
effort: `notify` reports what happened in a NotificationResult and never
raises for transport problems.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from models import Article

logger = get_logger("notifier")

DEFAULT_BODY = "A new AI processed article is ready for you."
SUMMARY_BODY_LENGTH = 180


@dataclass
class NotificationResult:
    sent: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def build_notification_payload(article: Article) -> Dict[str, Any]:
    """Title, body and url shown to the user for a new article."""
    body = article.notification_content or (article.summary or "")[:SUMMARY_BODY_LENGTH] or DEFAULT_BODY
    return {
        "title": article.title,
        "body": body,
        "url": article.url,
    }


class Notifier:
    """No-op notifier used when no delivery channel is configured."""

    async def notify(self, user_id: str, article: Article) -> NotificationResult:
        return NotificationResult(sent=False, payload=build_notification_payload(article),
                                  error="no notification channel configured")

    async def close(self) -> None:
        pass


class WebhookNotifier(Notifier):
    """POSTs a JSON notification to a webhook; any 2xx answer counts as delivered."""

    def __init__(self, url: str, session: Optional[ClientSession] = None, timeout: Optional[float] = None) -> None:
        self.url = url
        self.session = session
        self._owns_session = session is None
        self.timeout = ClientTimeout(total=timeout or config.NOTIFY_TIMEOUT)

    async def _post(self, client: ClientSession, body: Dict[str, Any]) -> int:
        async with client.post(self.url, json=body, timeout=self.timeout,
                               headers={"User-Agent": config.USER_AGENT}) as resp:
            return resp.status

    async def notify(self, user_id: str, article: Article) -> NotificationResult:
        payload = build_notification_payload(article)
        body = {"user_id": user_id, "article_id": article.id, **payload}
        try:
            if self.session is None or self.session.closed:
                self.session = ClientSession()
                self._owns_session = True
            status = await self._post(self.session, body)
        except (ClientError, TimeoutError) as e:
            logger.warning(f"Notification webhook error for article {article.id}: {type(e).__name__}: {e}")
            return NotificationResult(sent=False, payload=payload, error=str(e) or type(e).__name__)

        if 200 <= status < 300:
            return NotificationResult(sent=True, payload=payload)
        logger.warning(f"Notification webhook answered HTTP {status} for article {article.id}")
        return NotificationResult(sent=False, payload=payload, error=f"HTTP {status}")

    async def close(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None


def create_notifier(url: Optional[str] = None) -> Notifier:
    """Webhook notifier when a URL is configured, otherwise the no-op notifier."""
    url = url or config.NOTIFY_WEBHOOK_URL
    if url:
        logger.info(f"Article notifications will be posted to {url}")
        return WebhookNotifier(url)
    return Notifier()
