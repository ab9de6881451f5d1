#!/usr/bin/env python3
"""
Utility classes and functions for the crawler pipeline.

Shared helpers used by the fetcher, extractor, classifier and normalizer:
rate limiting, retry backoff, HTML-to-text cleanup, timestamp parsing and
tolerant JSON parsing of language model output.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from json import loads, JSONDecodeError
from random import uniform
from time import time
from typing import Any, Optional
import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from config import get_logger

logger = get_logger("utils")

warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

WHITESPACE_PATTERN = re.compile(r'\s+')
SENTENCE_SPLIT_PATTERN = re.compile(r'[.!?]+')
CODE_FENCE_PATTERN = re.compile(r'^\s*```(?:json|JSON)?\s*|\s*```\s*$')


class RateLimiter:
    """A simple rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate limit by introducing delays
    when necessary.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Wait, if necessary, until another request is allowed."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            time_since_last = time() - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)
            self.last_request_time = time()


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0, jitter: float = 0.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries (before jitter)
            jitter: Upper bound of a random delay added to each wait
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            ``min(base_delay * 2**attempt, max_delay)`` plus jitter
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += uniform(0, self.jitter)
        return delay


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def normalize_whitespace(text: Optional[str]) -> str:
    if not text:
        return ""
    return WHITESPACE_PATTERN.sub(' ', text).strip()


def strip_html_tags(html_content: Optional[str]) -> str:
    """Remove script/style blocks and all tags, collapsing whitespace.

    Plain text passes through with only whitespace normalization.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return normalize_whitespace(soup.get_text(" "))


def first_sentences(text: str, count: int = 3) -> str:
    """Return the first `count` sentences, with a closing period when more followed."""
    sentences = [s.strip() for s in SENTENCE_SPLIT_PATTERN.split(text or "") if s.strip()]
    summary = '. '.join(sentences[:count])
    if len(sentences) > count:
        summary += '.'
    return summary


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601 or RFC 2822 date string into a Unix timestamp.

    Naive values are assumed to be UTC. Returns None when unparseable.
    """
    if not value:
        return None
    value = value.strip()
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable date value: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


# ----------------------------------------------------------------------
# Tolerant JSON parsing for language model responses
# ----------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    return CODE_FENCE_PATTERN.sub('', text or '').strip()


def _try_loads(text: Optional[str]) -> Optional[Any]:
    if not text:
        return None
    try:
        return loads(text)
    except (JSONDecodeError, TypeError, ValueError, RecursionError):
        return None


def recover_truncated_json(text: str) -> Optional[str]:
    """Find the longest balanced JSON object prefix of ``text``.

    Scans from the first ``{`` tracking brace depth, string and escape state,
    and cuts at the last point where depth returned to zero. Returns the cut
    text only if it parses; otherwise None. Never raises.
    """
    if not text:
        return None
    start = text.find('{')
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    last_complete = -1
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == '\\' and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                last_complete = index
            elif depth < 0:
                break

    if last_complete < 0:
        return None
    candidate = text[start:last_complete + 1]
    return candidate if _try_loads(candidate) is not None else None


def extract_json_object(text: str) -> Optional[str]:
    """Return the substring between the first '{' and the last '}'."""
    if not text:
        return None
    start = text.find('{')
    end = text.rfind('}')
    if start < 0 or end <= start:
        return None
    return text[start:end + 1]


def parse_llm_json(text: Optional[str]) -> Optional[Any]:
    """Parse model output as JSON, trying progressively more lenient recoveries.

    Order: raw text, code fences stripped, balanced-prefix recovery, then the
    outermost brace span. Returns None when nothing parses.
    """
    if not text:
        return None
    unfenced = strip_code_fences(text)
    for candidate in (text.strip(), unfenced):
        parsed = _try_loads(candidate)
        if parsed is not None:
            return parsed

    recovered = recover_truncated_json(unfenced)
    if recovered is not None:
        logger.debug("Recovered balanced JSON prefix from model output")
        return _try_loads(recovered)

    parsed = _try_loads(extract_json_object(unfenced))
    if parsed is not None:
        logger.debug("Parsed JSON from outermost brace span of model output")
    return parsed
