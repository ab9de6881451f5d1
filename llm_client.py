#!/usr/bin/env python3
"""Async OpenAI-compatible chat completion helper.

`chat_completion` sends one request with a hard per-call timeout, paces calls
with a shared rate limiter and retries HTTP 429 answers (honouring
Retry-After, otherwise exponential backoff with jitter). Returns the response
text, or `None` when no client is configured or the model returned nothing.
Raises `LLMRateLimitError` once rate-limit retries are exhausted; timeouts and
other API errors propagate to the caller.
"""
from __future__ import annotations

from asyncio import sleep, wait_for, TimeoutError
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import yaml
from openai import AsyncOpenAI, RateLimitError

from config import config, get_logger
from errors import LLMRateLimitError
from telemetry import trace_span
from utils import RateLimiter, RetryHelper

logger = get_logger("llm_client")

RATE_LIMIT_JITTER = 0.25

_client: Any = None
_rate_limiter = RateLimiter(config.LLM_REQUESTS_PER_MINUTE)


def load_prompts() -> Dict[str, Any]:
    """Load prompt templates from prompt.yaml."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async client if an API key is configured."""
    global _client
    if _client is not None:
        return _client
    if not config.OPENAI_API_KEY:
        logger.debug("OPENAI_API_KEY not set; LLM client will not initialize")
        return None
    headers = {}
    if config.LLM_APP_URL:
        headers["HTTP-Referer"] = config.LLM_APP_URL
    if config.LLM_APP_TITLE:
        headers["X-Title"] = config.LLM_APP_TITLE
    # Retries are handled here so that Retry-After and our backoff limits apply
    _client = AsyncOpenAI(
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        default_headers=headers or None,
        max_retries=0,
    )
    return _client


def llm_available() -> bool:
    """True when an API key is configured and a client can be built."""
    return _get_client() is not None


def is_rate_limited(error: BaseException) -> bool:
    return isinstance(error, RateLimitError) or getattr(error, "status_code", None) == 429


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """Seconds requested by a Retry-After header on the error's response, if any."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", None) or {}
    content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                texts.append(text.strip())
        return "\n".join(texts).strip()
    return ""


def _response_text(resp: Any, purpose: str) -> Optional[str]:
    choices = getattr(resp, "choices", None) or []
    if not choices:
        logger.error("No choices in %s response", purpose)
        return None
    fragments = []
    for choice in choices:
        message = getattr(choice, "message", None)
        refusal = message.get("refusal") if isinstance(message, dict) else getattr(message, "refusal", None)
        if refusal:
            logger.warning("Refusal in %s response: %s", purpose, refusal)
        text = _extract_text(choice)
        if text:
            fragments.append(text)
    raw = "\n".join(fragments).strip()
    if not raw:
        finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
        logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
        return None
    return raw


@trace_span(
    "llm.chat_completion",
    tracer_name="llm",
    attr_from_args=lambda messages=None, **kw: {
        "llm.purpose": kw.get("purpose", "generic"),
        "llm.messages": len(messages or []),
    },
)
async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    temperature: Optional[float] = None,
    timeout: Optional[float] = None,
    model: Optional[str] = None,
    rate_limit_attempts: Optional[int] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute a chat completion and return the response text."""
    if not messages:
        logger.error("chat_completion called without messages")
        return None

    client = client_override or _get_client()
    if client is None:
        logger.warning("LLM client unavailable; skipping %s", purpose)
        return None

    attempts = rate_limit_attempts or config.LLM_RATE_LIMIT_ATTEMPTS
    backoff = RetryHelper(
        max_retries=attempts,
        base_delay=config.LLM_RATE_LIMIT_BASE_DELAY,
        max_delay=config.LLM_RATE_LIMIT_MAX_DELAY,
        jitter=RATE_LIMIT_JITTER,
    )
    budget = timeout or config.LLM_NORMALIZE_TIMEOUT
    params: Dict[str, Any] = {"model": model or config.LLM_MODEL, "messages": messages}
    if temperature is not None:
        params["temperature"] = temperature

    for attempt in range(attempts):
        await _rate_limiter.acquire()
        try:
            resp = await wait_for(client.chat.completions.create(**params), timeout=budget)
        except TimeoutError:
            logger.warning("%s request timed out after %.0fs", purpose, budget)
            raise
        except Exception as e:
            if not is_rate_limited(e):
                raise
            if attempt + 1 >= attempts:
                break
            delay = retry_after_seconds(e)
            if delay is None:
                delay = backoff.calculate_delay(attempt)
            logger.warning(
                "%s rate-limited (attempt %d/%d); waiting %.2fs", purpose, attempt + 1, attempts, delay
            )
            await sleep(delay)
            continue

        raw = _response_text(resp, purpose)
        if raw is None:
            return None
        return postprocess(raw) if postprocess else raw

    logger.error("%s still rate-limited after %d attempts", purpose, attempts)
    raise LLMRateLimitError(attempts)


__all__ = ["chat_completion", "llm_available", "load_prompts", "is_rate_limited", "retry_after_seconds"]
