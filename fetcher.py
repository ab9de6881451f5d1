#!/usr/bin/env python3
"""
Page fetcher.

Retrieves raw HTML for a URL with browser-like headers and a bounded timeout.
Every failure (timeout, network error, non-2xx status, undecodable body) is
reported as ``None``; retry policy belongs to the job queue.
"""

from asyncio import TimeoutError
from typing import Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("fetcher")


def browser_headers(user_agent: Optional[str] = None) -> Dict[str, str]:
    """Headers resembling a desktop browser navigation request."""
    return {
        'User-Agent': user_agent or config.USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.9',
        'Accept-Encoding': 'gzip, deflate',
        'Cache-Control': 'no-cache',
        'Pragma': 'no-cache',
        'Upgrade-Insecure-Requests': '1',
    }


class PageFetcher:
    """Fetches HTML pages over a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None, timeout: Optional[float] = None,
                 user_agent: Optional[str] = None) -> None:
        self.session = session
        self._owns_session = session is None
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.headers = browser_headers(user_agent)

    async def initialize(self) -> None:
        if self.session is None or self.session.closed:
            self.session = ClientSession(headers=self.headers)
            self._owns_session = True
            logger.debug("PageFetcher session created")

    async def close(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "PageFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span(
        "fetch_page",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None: {"http.url": url},
    )
    async def fetch(self, url: str, timeout: Optional[float] = None) -> Optional[str]:
        """Return the page body as text, or None on any failure."""
        if self.session is None or self.session.closed:
            await self.initialize()

        budget = timeout or self.timeout
        try:
            async with self.session.get(
                url,
                headers=self.headers,
                timeout=ClientTimeout(total=budget),
                allow_redirects=True,
            ) as response:
                if not 200 <= response.status < 300:
                    logger.warning(f"Fetch of {url} failed: HTTP {response.status}")
                    return None
                return await response.text(errors="replace")
        except TimeoutError:
            logger.warning(f"Timeout after {budget:.0f}s fetching {url}")
            return None
        except ClientError as e:
            logger.warning(f"Error fetching {url}: {self._format_client_error(e)}")
            return None
        except (UnicodeDecodeError, LookupError, ValueError) as e:
            logger.warning(f"Could not decode response from {url}: {e}")
            return None

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
