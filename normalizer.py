#!/usr/bin/env python3
"""
AI content normalization.

Rewrites extracted article text into formatted markdown, a short summary, a
notification line and a (possibly translated) title using a language model.
Malformed model output is recovered where possible; degraded output is
replaced by the original text; and whenever the model cannot be used at all a
deterministic fallback built from the original content is returned. The
public `normalize` call never raises.
"""

from asyncio import sleep
from dataclasses import dataclass
from string import Template
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import config, get_logger
from errors import NormalizationError
from llm_client import chat_completion, llm_available, load_prompts
from telemetry import trace_span
from utils import RetryHelper, first_sentences, parse_llm_json, strip_html_tags, truncate_string

logger = get_logger("normalizer")

NORMALIZE_TEMPERATURE = 0.3
MIN_FORMATTED_LENGTH = 200
MIN_FORMATTED_RATIO = 0.1
MAX_NOTIFICATION_LENGTH = 200
MAX_TITLE_LENGTH = 120
FALLBACK_TITLE_LENGTH = 150

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "pt": "Portuguese",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "nl": "Dutch",
    "ru": "Russian",
    "uk": "Ukrainian",
    "pl": "Polish",
    "tr": "Turkish",
    "ar": "Arabic",
    "hi": "Hindi",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
}

Completion = Callable[..., Awaitable[Optional[str]]]


@dataclass
class NormalizedContent:
    formatted_content: str
    summary: str
    notification_content: str
    translated_title: str
    used_fallback: bool = False


def fallback_notification(title: str) -> str:
    title = (title or "").strip()
    if len(title) > FALLBACK_TITLE_LENGTH:
        title = title[:FALLBACK_TITLE_LENGTH] + "..."
    return f"New article: {title}"


def language_name(code: Optional[str]) -> Optional[str]:
    """Human-readable language name for a code; None means keep the original language."""
    if not code or code.strip().lower() == "auto":
        return None
    code = code.strip()
    return LANGUAGE_NAMES.get(code.lower(), code)


class ContentNormalizer:
    """Normalizes article content through a language model with layered fallbacks."""

    def __init__(self, completion: Optional[Completion] = None, prompts: Optional[Dict[str, Any]] = None,
                 max_retries: Optional[int] = None, retry_delay_base: Optional[float] = None,
                 timeout: Optional[float] = None) -> None:
        self.completion = completion or chat_completion
        self._default_client = completion is None
        prompts = prompts if prompts is not None else load_prompts()
        self.prompts = prompts.get("normalizer", {}) if isinstance(prompts, dict) else {}
        self.max_retries = config.NORMALIZER_MAX_RETRIES if max_retries is None else max_retries
        base_delay = config.NORMALIZER_RETRY_DELAY_BASE if retry_delay_base is None else retry_delay_base
        self.retry_helper = RetryHelper(max_retries=self.max_retries, base_delay=base_delay, max_delay=60.0)
        self.timeout = timeout or config.LLM_NORMALIZE_TIMEOUT

    def build_messages(self, raw_content: str, title: str, target_language: str = "auto") -> Optional[List[Dict[str, str]]]:
        system = self.prompts.get("system")
        user = self.prompts.get("user")
        if not system or not user:
            return None

        language_prompts = self.prompts.get("language") or {}
        target = language_name(target_language)
        if target is None:
            instruction = language_prompts.get("auto", "")
        else:
            instruction = Template(language_prompts.get("translate", "")).safe_substitute(language=target)

        return [
            {"role": "system", "content": Template(system).safe_substitute(
                language_instruction=instruction.strip()).strip()},
            {"role": "user", "content": Template(user).safe_substitute(title=title, content=raw_content)},
        ]

    def fallback(self, raw_content: str, title: str) -> NormalizedContent:
        """Deterministic result built only from the original content."""
        plain = strip_html_tags(raw_content)
        return NormalizedContent(
            formatted_content=plain,
            summary=first_sentences(plain),
            notification_content=fallback_notification(title),
            translated_title=title,
            used_fallback=True,
        )

    def apply_quality_gate(self, formatted: str, raw_content: str) -> str:
        """Replace implausibly short model output with the tag-stripped original."""
        too_short = len(formatted) < MIN_FORMATTED_LENGTH
        too_small = len(formatted) < MIN_FORMATTED_RATIO * len(raw_content or "")
        if too_short or too_small:
            logger.warning(
                f"Formatted content failed quality gate ({len(formatted)} chars for "
                f"{len(raw_content or '')} chars of input); using original text"
            )
            return strip_html_tags(raw_content)
        return formatted

    def parse_response(self, response: str, raw_content: str, title: str) -> NormalizedContent:
        """Turn model output into validated content.

        Raises:
            NormalizationError: when no JSON object can be recovered.
        """
        data = parse_llm_json(response)
        if not isinstance(data, dict):
            raise NormalizationError("model response is not a JSON object", {"response": (response or "")[:300]})

        def _field(name: str) -> str:
            value = data.get(name)
            return value.strip() if isinstance(value, str) else ""

        formatted = self.apply_quality_gate(_field("formattedContent"), raw_content)

        summary = _field("summary")
        if not summary:
            plain = strip_html_tags(raw_content)
            summary = first_sentences(plain)

        notification = _field("notificationContent") or fallback_notification(title)
        translated_title = _field("translatedTitle") or title

        return NormalizedContent(
            formatted_content=formatted,
            summary=summary,
            notification_content=truncate_string(notification, MAX_NOTIFICATION_LENGTH),
            translated_title=truncate_string(translated_title, MAX_TITLE_LENGTH),
        )

    async def _request(self, messages: List[Dict[str, str]]) -> str:
        response = await self.completion(
            messages,
            purpose="normalize",
            temperature=NORMALIZE_TEMPERATURE,
            timeout=self.timeout,
        )
        if not response or not response.strip():
            raise NormalizationError("empty response from model")
        return response

    @trace_span(
        "normalize_content",
        tracer_name="normalizer",
        attr_from_args=lambda self, raw_content, title, target_language="auto": {
            "content.length": len(raw_content or ""),
            "content.language": target_language,
        },
    )
    async def normalize(self, raw_content: str, title: str, target_language: str = "auto") -> NormalizedContent:
        messages = self.build_messages(raw_content, title, target_language)
        if messages is None:
            logger.error("No normalizer prompt configured; using fallback content")
            return self.fallback(raw_content, title)
        if self._default_client and not llm_available():
            logger.info(f"No LLM client configured; using fallback content for '{title[:60]}'")
            return self.fallback(raw_content, title)

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._request(messages)
            except Exception as e:
                if attempt >= self.max_retries:
                    logger.error(f"Normalization failed after {attempt + 1} attempts ({type(e).__name__}: {e}); using fallback")
                    break
                delay = self.retry_helper.calculate_delay(attempt)
                logger.warning(
                    f"Normalization attempt {attempt + 1} failed ({type(e).__name__}: {e}); retrying in {delay:.1f}s"
                )
                await sleep(delay)
                continue

            try:
                return self.parse_response(response, raw_content, title)
            except NormalizationError as e:
                logger.warning(f"Unrecoverable model output for '{title[:60]}': {e}; using fallback")
                break

        return self.fallback(raw_content, title)
