#!/usr/bin/env python3
"""
Configuration management for the post tracker.

This module centralizes logging setup and configuration loading. Values come
from the environment, an optional .env file and an optional YAML secrets file,
and are validated once at import time so the rest of the application can rely
on plain attributes of the global ``config`` instance.
"""

from os import environ, path, access, R_OK
from math import ceil
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_SOURCE_URL = (
    "https://truthsocial.com/api/v1/accounts/107780257626128497/statuses"
    "?exclude_replies=true&only_replies=false&with_muted=true"
)
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120 Safari/537.36"
)


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

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
        force=True  # Force reconfiguration if already configured
    )

    # pytest and some process managers swap stdout for objects without reconfigure()
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO when the read API is polled by a dashboard
    getLogger("aiohttp.access").setLevel(max(level, WARNING))

    return getLogger("PostTracker")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "server")

    Returns:
        A logger named "PostTracker.{name}"
    """
    return getLogger(f"PostTracker.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the post tracker.

    Loading order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    SESSION_COOKIE: "_session_id=..."
    SOURCE_URL: "https://truthsocial.com/api/v1/accounts/123/statuses"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
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

    def _first_env(self, *names: str, default: str = "") -> str:
        """Return the first non-empty environment variable among ``names``."""
        for name in names:
            value = environ.get(name)
            if value:
                return value.strip()
        return default

    def _first_set(self, *names: str) -> str:
        """Return the first of ``names`` with a non-empty value, else the first name."""
        return next((name for name in names if environ.get(name)), names[0])

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Upstream source
        self.SOURCE_URL = self._first_env(
            "SOURCE_URL",
            "TRUTHSOCIAL_SOURCE_URL",
            "TRUTHSOCIAL_API_URL",
            "TRUTHSOCIAL_FEED_URL",
            default=DEFAULT_SOURCE_URL,
        )
        self.SESSION_COOKIE = self._first_env("SESSION_COOKIE", "TRUTHSOCIAL_COOKIE") or None
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)

        # Polling
        if environ.get("POLL_INTERVAL_MS") and not environ.get("POLL_INTERVAL_SECONDS"):
            self.POLL_INTERVAL_SECONDS = ceil(self._validate_positive_int("POLL_INTERVAL_MS", 45000, 1) / 1000)
        else:
            self.POLL_INTERVAL_SECONDS = self._validate_positive_int("POLL_INTERVAL_SECONDS", 45, 1)
        self.HISTORY_WINDOW_HOURS = self._validate_positive_int("HISTORY_WINDOW_HOURS", 24, 1)
        self.MAX_PAGES = self._validate_positive_int(self._first_set("MAX_PAGES", "TRUTHSOCIAL_MAX_PAGES"), 5, 1)
        self.PAGE_LIMIT = self._validate_positive_int("PAGE_LIMIT", 20, 1)

        # Rate limiting (milliseconds)
        self.PAGE_DELAY_MS = self._validate_positive_int("PAGE_DELAY_MS", 0, 0)
        self.BACKOFF_BASE_MS = self._validate_positive_int("BACKOFF_BASE_MS", 750, 1)
        self.BACKOFF_FACTOR = self._validate_positive_float("BACKOFF_FACTOR", 1.5, 1.0)
        self.MAX_BACKOFF_MS = self._validate_positive_int("MAX_BACKOFF_MS", 15000, 1)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)

        # Read API
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 3000, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.POSTS_FILE = environ.get("POSTS_FILE", path.join(self.DATA_PATH, "data", "posts.json"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        SESSION_COOKIE: "_session_id=..."

        # Backward-compatible: nested under `environment`
        # environment:
        #   SESSION_COOKIE: "_session_id=..."
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

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
            with open(file_path, 'r') as f:
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

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "source_url": self.SOURCE_URL,
            "has_session_cookie": bool(self.SESSION_COOKIE),
            "poll_interval_seconds": self.POLL_INTERVAL_SECONDS,
            "history_window_hours": self.HISTORY_WINDOW_HOURS,
            "max_pages": self.MAX_PAGES,
            "page_limit": self.PAGE_LIMIT,
            "page_delay_ms": self.PAGE_DELAY_MS,
            "backoff_base_ms": self.BACKOFF_BASE_MS,
            "backoff_factor": self.BACKOFF_FACTOR,
            "max_backoff_ms": self.MAX_BACKOFF_MS,
            "http_timeout": self.HTTP_TIMEOUT,
            "posts_file": self.POSTS_FILE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
