#!/usr/bin/env python3
"""
Article extraction.

Turns the raw HTML of one article page into title, text content, publish
date and hero image. Reader mode (readability-lxml) is tried first; short
results fall back to the retained reader HTML, then to raw-HTML heuristics
(content containers, paragraph harvesting, the whole body).

Parsing is CPU-bound and synchronous; the pipeline runs it in a thread pool.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from lxml import etree, html as lxml_html
from readability import Document
from readability.readability import Unparseable

from config import config, get_logger
from errors import ExtractionQualityError
from utils import normalize_whitespace, parse_timestamp, strip_html_tags

logger = get_logger("extractor")

MIN_TITLE_LENGTH = 10
MIN_PARAGRAPH_LENGTH = 20
MIN_PARAGRAPHS = 3

BOILERPLATE_TAGS = ["script", "style", "nav", "header", "footer", "aside", "noscript", "form", "iframe", "svg"]

CONTENT_SELECTORS = [
    "article",
    "main",
    "[itemprop=articleBody]",
    "[class*=article-body]",
    "[class*=article-content]",
    "[class*=content-body]",
    "[class*=post-content]",
    "[class*=story-content]",
    "[class*=entry-content]",
    "[class*=post-body]",
    "[id*=article-body]",
    "[id*=content]",
]

TITLE_SELECTORS = ["h1", "title", "h2", "h3"]

DATE_SELECTORS: List[Tuple[str, str]] = [
    ("[datetime]", "datetime"),
    ("time[datetime]", "datetime"),
    ('meta[property="og:article:published_time"]', "content"),
    ('meta[property="article:published_time"]', "content"),
]

IMAGE_SELECTORS: List[Tuple[str, str]] = [
    ('img[alt*="article" i]', "src"),
    ("img[class*=featured]", "src"),
    ("img[class*=main]", "src"),
    ('meta[property="og:image"]', "content"),
]

PARAGRAPH_NOISE = ("advertisement", "subscribe to", "sign up for our newsletter")


@dataclass
class ExtractedArticle:
    title: str
    content: str
    published_at: Optional[int] = None
    image_url: Optional[str] = None


class ArticleExtractor:
    """Extract readable article content from raw HTML pages."""

    def __init__(self, min_content_length: Optional[int] = None) -> None:
        self.min_content_length = min_content_length or config.MIN_ARTICLE_LENGTH

    def extract(self, html: str, url: str) -> Optional[ExtractedArticle]:
        """Return the extracted article, or None when it fails the quality bar."""
        if not html or not html.strip():
            logger.debug(f"Empty document for {url}")
            return None
        try:
            return self._extract(html, url)
        except ExtractionQualityError as e:
            logger.info(f"Rejected {url}: {e}")
            return None

    def _extract(self, html: str, url: str) -> ExtractedArticle:
        reader_title, reader_text, reader_html = self._reader_mode(html, url)
        content = reader_text

        if len(content) < self.min_content_length and reader_html:
            content = strip_html_tags(reader_html)

        soup = BeautifulSoup(html, "html.parser")
        if len(content) < self.min_content_length:
            logger.debug(f"Reader mode text too short for {url} ({len(content)} chars); using raw HTML extraction")
            content = self._extract_from_raw_html(BeautifulSoup(html, "html.parser"))

        if len(content) < self.min_content_length:
            raise ExtractionQualityError(
                f"content too short ({len(content)} < {self.min_content_length} chars)",
                {"url": url, "length": len(content)},
            )

        title = self._pick_title(reader_title, soup)
        if not title:
            raise ExtractionQualityError("no usable title", {"url": url})

        return ExtractedArticle(
            title=title,
            content=content,
            published_at=self._find_published_at(soup),
            image_url=self._find_image(soup, url),
        )

    def _reader_mode(self, html: str, url: str) -> Tuple[str, str, str]:
        """Run readability; returns (title, text, retained_html), empty strings on failure."""
        try:
            doc = Document(html, url=url)
            title = normalize_whitespace(doc.short_title())
            retained_html = doc.summary(html_partial=True)
        except (Unparseable, etree.LxmlError, ValueError, TypeError) as e:
            logger.debug(f"Readability could not parse {url}: {e}")
            return "", "", ""

        try:
            text = lxml_html.fromstring(retained_html).text_content().strip()
        except (etree.LxmlError, ValueError) as e:
            logger.debug(f"Could not read reader-mode HTML for {url}: {e}")
            text = ""
        if title == "[no-title]":
            title = ""
        return title, text, retained_html

    def _extract_from_raw_html(self, soup: BeautifulSoup) -> str:
        for tag in soup(BOILERPLATE_TAGS):
            tag.decompose()

        for selector in CONTENT_SELECTORS:
            for node in soup.select(selector):
                text = normalize_whitespace(node.get_text(" "))
                if len(text) >= self.min_content_length:
                    return text

        paragraphs = self._collect_paragraphs(soup.find_all("p"))
        if len(paragraphs) >= MIN_PARAGRAPHS:
            return "\n\n".join(paragraphs)

        body = soup.body or soup
        return normalize_whitespace(body.get_text(" "))

    def _collect_paragraphs(self, nodes: Iterable) -> List[str]:
        paragraphs = []
        for node in nodes:
            text = normalize_whitespace(node.get_text(" "))
            if len(text) < MIN_PARAGRAPH_LENGTH:
                continue
            lowered = text.lower()
            if any(noise in lowered for noise in PARAGRAPH_NOISE):
                continue
            paragraphs.append(text)
        return paragraphs

    def _pick_title(self, reader_title: str, soup: BeautifulSoup) -> Optional[str]:
        if len(reader_title) > MIN_TITLE_LENGTH:
            return reader_title
        for selector in TITLE_SELECTORS:
            node = soup.find(selector)
            if node is None:
                continue
            text = normalize_whitespace(node.get_text(" "))
            if len(text) > MIN_TITLE_LENGTH:
                return text
        return None

    def _find_published_at(self, soup: BeautifulSoup) -> Optional[int]:
        for selector, attribute in DATE_SELECTORS:
            node = soup.select_one(selector)
            if node is None or not node.get(attribute):
                continue
            timestamp = parse_timestamp(str(node.get(attribute)))
            if timestamp is not None:
                return timestamp
        return None

    def _find_image(self, soup: BeautifulSoup, url: str) -> Optional[str]:
        for selector, attribute in IMAGE_SELECTORS:
            node = soup.select_one(selector)
            if node is None:
                continue
            value = node.get(attribute) or node.get("data-src")
            if not value:
                continue
            resolved = urljoin(url, str(value).strip())
            if resolved.startswith(("http://", "https://")):
                return resolved
        return None
