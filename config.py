#!/usr/bin/env python3
"""
Configuration management for the AI Feed Crawler.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, .env files and an optional YAML secrets file,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Keep third-party HTTP and SDK chatter out of INFO logs
    for name in ("azure", "azure.monitor.opentelemetry.exporter", "openai", "httpx"):
        getLogger(name).setLevel(WARNING)

    return getLogger("FeedCrawler")


def get_logger(name: str):
    """Get a module-specific logger named "FeedCrawler.{name}".

    Example:
        logger = get_logger("fetcher")
        logger.info("...")  # -> 'FeedCrawler.fetcher - INFO - ...'
    """
    return getLogger(f"FeedCrawler.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the AI Feed Crawler.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "your-api-key"
    OPENAI_BASE_URL: "https://openrouter.ai/api/v1"
    NOTIFY_WEBHOOK_URL: "https://hooks.example.com/notify"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_choice(self, env_var: str, default: str, choices: List[str]) -> str:
        value = environ.get(env_var, default).strip().lower()
        if value not in choices:
            logger.warning(f"{env_var} must be one of {', '.join(choices)}, using default {default}")
            return default
        return value

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "crawler.db")
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        )

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", 15.0, 1.0)

        # LLM endpoint (any OpenAI-compatible chat completions API)
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_BASE_URL = environ.get("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
        self.LLM_MODEL = environ.get("LLM_MODEL", "openai/gpt-4o-mini")
        self.LLM_CLASSIFY_MODEL = environ.get("LLM_CLASSIFY_MODEL", self.LLM_MODEL)
        # Optional attribution headers understood by OpenRouter
        self.LLM_APP_URL = environ.get("LLM_APP_URL")
        self.LLM_APP_TITLE = environ.get("LLM_APP_TITLE", "AI Feed Crawler")

        # LLM call budgets and rate limiting
        self.LLM_CLASSIFY_TIMEOUT = self._validate_positive_float("LLM_CLASSIFY_TIMEOUT", 90.0, 1.0)
        self.LLM_NORMALIZE_TIMEOUT = self._validate_positive_float("LLM_NORMALIZE_TIMEOUT", 300.0, 1.0)
        self.LLM_REQUESTS_PER_MINUTE = self._validate_positive_int("LLM_REQUESTS_PER_MINUTE", 30, 0)
        self.LLM_RATE_LIMIT_ATTEMPTS = self._validate_positive_int("LLM_RATE_LIMIT_ATTEMPTS", 5, 1)
        self.LLM_RATE_LIMIT_BASE_DELAY = self._validate_positive_float("LLM_RATE_LIMIT_BASE_DELAY", 0.5, 0.0)
        self.LLM_RATE_LIMIT_MAX_DELAY = self._validate_positive_float("LLM_RATE_LIMIT_MAX_DELAY", 8.0, 0.0)

        # Content normalizer
        self.NORMALIZER_MAX_RETRIES = self._validate_positive_int("NORMALIZER_MAX_RETRIES", 2, 0)
        self.NORMALIZER_RETRY_DELAY_BASE = self._validate_positive_float("NORMALIZER_RETRY_DELAY_BASE", 1.0, 0.0)

        # Extraction and classification
        self.MIN_ARTICLE_LENGTH = self._validate_positive_int("MIN_ARTICLE_LENGTH", 150, 1)
        self.CLASSIFIER_BODY_CHARS = self._validate_positive_int("CLASSIFIER_BODY_CHARS", 12000, 500)
        self.CLASSIFIER_MAX_ANCHORS = self._validate_positive_int("CLASSIFIER_MAX_ANCHORS", 200, 1)
        self.DEFAULT_MAX_ARTICLES_PER_SOURCE = self._validate_positive_int("DEFAULT_MAX_ARTICLES_PER_SOURCE", 5, 1)
        self.EXTRACTION_CONCURRENCY = self._validate_positive_int("EXTRACTION_CONCURRENCY", 2, 1)

        # Job queue
        self.JOB_POLL_INTERVAL_SECONDS = self._validate_positive_float("JOB_POLL_INTERVAL_SECONDS", 30.0, 1.0)
        self.JOB_BATCH_SIZE = self._validate_positive_int("JOB_BATCH_SIZE", 5, 1)
        self.JOB_STUCK_THRESHOLD_MINUTES = self._validate_positive_int("JOB_STUCK_THRESHOLD_MINUTES", 5, 1)
        self.JOB_MAX_RETRIES = self._validate_positive_int("JOB_MAX_RETRIES", 3, 1)
        self.JOB_BACKOFF_BASE_MINUTES = self._validate_positive_float("JOB_BACKOFF_BASE_MINUTES", 1.0, 0.0)
        self.JOB_BACKOFF_CAP_MINUTES = self._validate_positive_float("JOB_BACKOFF_CAP_MINUTES", 60.0, 0.0)
        self.JOB_RETENTION_DAYS = self._validate_positive_int("JOB_RETENTION_DAYS", 7, 1)

        # Scheduler configuration
        self.SCHEDULER_MODE = self._validate_choice("SCHEDULER_MODE", "queue", ["queue", "direct"])
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_INTERVAL_MINUTES = self._validate_positive_int("SCHEDULER_INTERVAL_MINUTES", 60, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # Notifications
        self.NOTIFY_WEBHOOK_URL = environ.get("NOTIFY_WEBHOOK_URL")
        self.NOTIFY_TIMEOUT = self._validate_positive_float("NOTIFY_TIMEOUT", 10.0, 1.0)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))
        self.SCHEDULE_CONFIG_PATH = environ.get("SCHEDULE_CONFIG_PATH", path.join(base_dir, "schedule.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment`
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'schedule')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def load_yaml(self, file_path: str, kind: str) -> Dict[str, Any]:
        """Read a YAML mapping (prompts, schedule); returns {} when unavailable."""
        data = self._safe_read_yaml(file_path, 5 * 1024 * 1024, kind)
        return data if isinstance(data, dict) else {}

    def validate_configuration(self) -> List[str]:
        """Return the names of settings that are required for AI features but missing."""
        missing = []
        if not self.OPENAI_API_KEY:
            missing.append("OPENAI_API_KEY")
        if not self.LLM_MODEL:
            missing.append("LLM_MODEL")
        return missing

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration with secrets redacted."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "llm": {
                "base_url": self.OPENAI_BASE_URL,
                "model": self.LLM_MODEL,
                "classify_model": self.LLM_CLASSIFY_MODEL,
                "api_key_configured": bool(self.OPENAI_API_KEY),
                "classify_timeout": self.LLM_CLASSIFY_TIMEOUT,
                "normalize_timeout": self.LLM_NORMALIZE_TIMEOUT,
                "requests_per_minute": self.LLM_REQUESTS_PER_MINUTE,
            },
            "job_queue": {
                "poll_interval_seconds": self.JOB_POLL_INTERVAL_SECONDS,
                "batch_size": self.JOB_BATCH_SIZE,
                "stuck_threshold_minutes": self.JOB_STUCK_THRESHOLD_MINUTES,
                "max_retries": self.JOB_MAX_RETRIES,
                "backoff_base_minutes": self.JOB_BACKOFF_BASE_MINUTES,
                "backoff_cap_minutes": self.JOB_BACKOFF_CAP_MINUTES,
            },
            "scheduler": {
                "mode": self.SCHEDULER_MODE,
                "timezone": self.SCHEDULER_TIMEZONE,
                "interval_minutes": self.SCHEDULER_INTERVAL_MINUTES,
            },
            "notifications": {
                "webhook_configured": bool(self.NOTIFY_WEBHOOK_URL),
            },
        }


config = Config()
