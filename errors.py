#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class CrawlerError(Exception):
    """Base class for pipeline errors.

    Attributes:
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class FetchError(CrawlerError):
    """Network failure, timeout or non-2xx response while fetching a page."""

    def __init__(self, url: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or f"Failed to fetch {url}", details)
        self.url = url


class ExtractionQualityError(CrawlerError):
    """Extracted content is too short or has no usable title."""


class ClassificationError(CrawlerError):
    """AI page classification failed or returned an unusable response."""


class NormalizationError(CrawlerError):
    """AI content rewrite failed or returned an unusable response."""


class LLMRateLimitError(CrawlerError):
    """The LLM endpoint kept answering 429 after all retry attempts."""

    def __init__(self, attempts: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"LLM still rate-limited after {attempts} attempts", details)
        self.attempts = attempts


class ConfigurationError(CrawlerError):
    """Required per-user configuration is missing."""


class JobRetryExhausted(CrawlerError):
    """A job failed permanently after reaching its retry limit."""

    def __init__(self, job_id: int, retry_count: int, message: str):
        super().__init__(f"Job {job_id} failed after {retry_count} attempts: {message}")
        self.job_id = job_id
        self.retry_count = retry_count


__all__ = [
    "CrawlerError",
    "FetchError",
    "ExtractionQualityError",
    "ClassificationError",
    "NormalizationError",
    "LLMRateLimitError",
    "ConfigurationError",
    "JobRetryExhausted",
]
