#!/usr/bin/env python3
"""
Page classification and article link discovery.

Decides whether a fetched page is a single article or a listing and, for
listings, produces an ordered list of candidate article URLs. A language
model is asked first; an anchor-scanning heuristic always runs as well and
its results are merged after the model's. Model failures degrade to the
heuristic result and never propagate.
"""

from dataclasses import dataclass, field
from json import loads, JSONDecodeError
from string import Template
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlparse
import re

from bs4 import BeautifulSoup, Comment

from config import config, get_logger
from errors import ClassificationError
from llm_client import chat_completion, load_prompts
from telemetry import trace_span
from utils import extract_json_object, normalize_whitespace, strip_code_fences

logger = get_logger("classifier")

PAGE_TYPES = ("article", "listing", "unknown")
MIN_LINK_TEXT_LENGTH = 8
CLASSIFIER_TEMPERATURE = 0.1

STRIPPED_TAGS = ["script", "style", "svg", "iframe", "noscript"]
SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "sms:")

ARTICLE_HREF_PATTERNS = [
    re.compile(r'/(?:19|20)\d{2}/\d{1,2}(?:/\d{1,2})?/[^/?#]+'),
    re.compile(r'(?:19|20)\d{2}-\d{2}-\d{2}'),
    re.compile(r'/(?:article|articles|news|post|posts|story|stories|blog)/[^/?#]+', re.I),
    re.compile(r'\.s?html?$', re.I),
]

NAVIGATION_TEXT_PATTERN = re.compile(
    r'^(?:home(?:page)?|about(?: us)?|contact(?: us)?|log ?in|log ?out|sign ?(?:in|up|out)|register|'
    r'subscribe|privacy(?: policy)?|terms(?: of (?:use|service))?|cookies?(?: policy)?|menu|search|'
    r'next|prev(?:ious)?|older(?: posts)?|newer(?: posts)?|(?:read|load|view) more|more|page \d+|'
    r'categories|tags|archives?|skip to (?:main )?content)\b',
    re.I,
)
PAGINATION_TEXT_PATTERN = re.compile(r'^[\d\s«»<>|.,-]+$')

CONTENT_TEXT_PATTERNS = [
    re.compile(r'\b(?:19|20)\d{2}\b'),
    re.compile(
        r'\b(?:guide|report|launch\w*|announc\w*|releas\w*|update[sd]?|review|analysis|interview|'
        r'introduc\w*|how to|why|what|new)\b',
        re.I,
    ),
]

SINGLE_ARTICLE_PATH_PATTERNS = [
    re.compile(r'/(?:19|20)\d{2}/\d{1,2}/\d{1,2}/[^/]+'),
    re.compile(r'/(?:19|20)\d{2}/\d{1,2}/[^/]*[a-z][^/]*-[^/]+', re.I),
    re.compile(r'/(?:19|20)\d{2}-\d{2}-\d{2}[-/][^/]+'),
    re.compile(r'/\d{5,}(?:/|-|\.s?html?$|$)'),
    re.compile(r'-\d{5,}(?:\.s?html?)?/?$'),
]
SINGLE_ARTICLE_QUERY_PATTERN = re.compile(r'(?:^|&)(?:id|p|article_?id|story_?id)=\d{4,}(?:&|$)', re.I)

Completion = Callable[..., Awaitable[Optional[str]]]


@dataclass
class PageClassification:
    page_type: str = "unknown"
    article_urls: List[str] = field(default_factory=list)
    ai_urls: List[str] = field(default_factory=list)
    heuristic_urls: List[str] = field(default_factory=list)


def normalize_candidate_url(href: Any, base_url: str) -> Optional[str]:
    """Resolve `href` against `base_url`; only absolute http(s) URLs survive, without fragments."""
    if not isinstance(href, str):
        return None
    href = href.strip()
    if not href or href.startswith('#') or href.lower().startswith(SKIPPED_SCHEMES):
        return None
    absolute, _fragment = urldefrag(urljoin(base_url, href))
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


def merge_unique(*groups: Iterable[str], exclude: Iterable[str] = ()) -> List[str]:
    """Concatenate URL groups in order, dropping duplicates and excluded URLs."""
    seen = set(exclude)
    merged = []
    for group in groups:
        for url in group:
            if url and url not in seen:
                seen.add(url)
                merged.append(url)
    return merged


def is_probable_article_url(url: str) -> bool:
    """True when the URL path looks like an individual article (dated or numeric-id)."""
    if not url:
        return False
    parsed = urlparse(url)
    path = parsed.path or ""
    if any(pattern.search(path) for pattern in SINGLE_ARTICLE_PATH_PATTERNS):
        return True
    return bool(parsed.query and SINGLE_ARTICLE_QUERY_PATTERN.search(parsed.query))


def _href_looks_like_article(url: str) -> bool:
    parsed = urlparse(url)
    target = parsed.path + (f"?{parsed.query}" if parsed.query else "")
    return any(pattern.search(target) for pattern in ARTICLE_HREF_PATTERNS)


def _text_looks_like_article(text: str) -> bool:
    if len(text) < MIN_LINK_TEXT_LENGTH:
        return False
    if NAVIGATION_TEXT_PATTERN.match(text) or PAGINATION_TEXT_PATTERN.match(text):
        return False
    return any(pattern.search(text) for pattern in CONTENT_TEXT_PATTERNS)


def discover_article_links(html: str, base_url: str) -> List[str]:
    """Heuristically find article links in document order."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    own_url = normalize_candidate_url(base_url, base_url)
    found = []
    for anchor in soup.find_all("a", href=True):
        url = normalize_candidate_url(anchor.get("href"), base_url)
        if not url or url == own_url:
            continue
        text = normalize_whitespace(anchor.get_text(" "))
        if _href_looks_like_article(url) or _text_looks_like_article(text):
            found.append(url)
    return merge_unique(found)


def build_page_digest(html: str, base_url: str, body_chars: Optional[int] = None,
                      max_anchors: Optional[int] = None) -> Tuple[str, str]:
    """Reduce a page to (visible text, anchor list) within fixed size budgets."""
    body_chars = body_chars or config.CLASSIFIER_BODY_CHARS
    max_anchors = max_anchors or config.CLASSIFIER_MAX_ANCHORS

    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()

    anchor_lines = []
    for anchor in soup.find_all("a", href=True):
        if len(anchor_lines) >= max_anchors:
            break
        url = normalize_candidate_url(anchor.get("href"), base_url)
        if not url:
            continue
        text = normalize_whitespace(anchor.get_text(" "))[:120] or "(no text)"
        anchor_lines.append(f"- {text} -> {url}")

    root = soup.body or soup
    page_text = normalize_whitespace(root.get_text(" "))[:body_chars]
    return page_text, "\n".join(anchor_lines)


def parse_classification_response(response: Optional[str], base_url: str) -> Tuple[str, List[str]]:
    """Parse the model's `{pageType, articleUrls}` answer.

    Raises:
        ClassificationError: when the response is empty, not JSON or malformed.
    """
    if not response or not response.strip():
        raise ClassificationError("empty classification response")
    candidate = extract_json_object(strip_code_fences(response))
    if candidate is None:
        raise ClassificationError("no JSON object in classification response", {"response": response[:200]})
    try:
        data = loads(candidate)
    except JSONDecodeError as e:
        raise ClassificationError(f"invalid classification JSON: {e}", {"response": response[:200]})
    if not isinstance(data, dict):
        raise ClassificationError("classification response is not an object")

    page_type = str(data.get("pageType") or "unknown").strip().lower()
    if page_type not in PAGE_TYPES:
        page_type = "unknown"
    raw_urls = data.get("articleUrls") or []
    if not isinstance(raw_urls, list):
        raise ClassificationError("articleUrls is not a list")
    urls = [normalize_candidate_url(url, base_url) for url in raw_urls]
    return page_type, merge_unique([url for url in urls if url])


class PageClassifier:
    """Classifies pages with a language model plus an always-on link heuristic."""

    def __init__(self, completion: Optional[Completion] = None, prompts: Optional[Dict[str, Any]] = None,
                 timeout: Optional[float] = None) -> None:
        self.completion = completion or chat_completion
        prompts = prompts if prompts is not None else load_prompts()
        self.prompts = prompts.get("classifier", {}) if isinstance(prompts, dict) else {}
        self.timeout = timeout or config.LLM_CLASSIFY_TIMEOUT

    def build_messages(self, html: str, base_url: str) -> Optional[List[Dict[str, str]]]:
        system = self.prompts.get("system")
        user = self.prompts.get("user")
        if not system or not user:
            return None
        page_text, anchors = build_page_digest(html, base_url)
        return [
            {"role": "system", "content": system.strip()},
            {"role": "user", "content": Template(user).safe_substitute(
                base_url=base_url, page_text=page_text, anchors=anchors or "(none)")},
        ]

    async def _classify_with_ai(self, html: str, base_url: str) -> Tuple[str, List[str]]:
        """Ask the model; any failure yields ("unknown", [])."""
        try:
            messages = self.build_messages(html, base_url)
            if messages is None:
                raise ClassificationError("no classifier prompt configured")
            response = await self.completion(
                messages,
                purpose="classify",
                temperature=CLASSIFIER_TEMPERATURE,
                timeout=self.timeout,
                model=config.LLM_CLASSIFY_MODEL,
            )
            return parse_classification_response(response, base_url)
        except ClassificationError as e:
            logger.warning(f"AI classification unavailable for {base_url}: {e}")
        except Exception as e:
            logger.warning(f"AI classification failed for {base_url}: {type(e).__name__}: {e}")
        return "unknown", []

    @trace_span(
        "classify_page",
        tracer_name="classifier",
        attr_from_args=lambda self, html, base_url: {"page.url": base_url, "page.size": len(html or "")},
    )
    async def classify(self, html: str, base_url: str) -> PageClassification:
        heuristic_urls = discover_article_links(html, base_url)
        page_type, ai_urls = await self._classify_with_ai(html, base_url)

        own_url = normalize_candidate_url(base_url, base_url)
        article_urls = merge_unique(ai_urls, heuristic_urls, exclude=[own_url] if own_url else [])
        if page_type == "unknown" and article_urls:
            page_type = "listing"

        logger.info(
            f"Classified {base_url} as {page_type}: {len(ai_urls)} AI + {len(heuristic_urls)} heuristic links "
            f"-> {len(article_urls)} candidates"
        )
        return PageClassification(
            page_type=page_type,
            article_urls=article_urls,
            ai_urls=ai_urls,
            heuristic_urls=heuristic_urls,
        )
