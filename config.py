#!/usr/bin/env python3
"""
Configuration management for the feed notifier.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, an optional .env file and an optional YAML
secrets file, and provides a single Config value that is constructed once at
startup and handed to every component.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigError

SIZE_UNIT_BASE = 1024
SIZE_UNITS = {'k': 1, 'm': 2, 'g': 3, 't': 4}


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

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

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access noise is only useful when debugging the transport itself
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedNotifier")


def parse_human_size(value: str) -> int:
    """Parse a human readable size into bytes.

    Accepts plain byte counts ("2097152", "512B") or a number followed by one
    of k/m/g/t with an optional trailing B ("2M", "2mb", "512k"). Units are
    powers of 1024.

    Raises:
        ValueError: If the value is empty or uses an unknown unit.
    """
    s = str(value).strip().rstrip('Bb')
    if not s:
        raise ValueError("empty size")
    unit = s[-1].lower()
    if unit.isdigit():
        return int(s)
    if unit not in SIZE_UNITS:
        raise ValueError(f"invalid size character: {s[-1]}")
    return int(s[:-1]) * SIZE_UNIT_BASE ** SIZE_UNITS[unit]


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "scheduler", "store", "janitor")

    Returns:
        A logger named "FeedNotifier.{name}"
    """
    return getLogger(f"FeedNotifier.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration for the feed notifier.

    Values are loaded from, in increasing priority:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)
    4. Keyword overrides passed to the constructor

    Example secrets.yaml format:
    ```yaml
    TELEGRAM_BOT_TOKEN: "123456:ABC..."
    PROXY_URL: "http://proxy.internal:3128"
    ```
    """

    def __init__(self, load_environment: bool = True, **overrides: Any):
        """Initialize configuration with environment variables and validation.

        Args:
            load_environment: Read .env and the secrets file before validating.
            **overrides: Attribute values that replace anything read from the environment.

        Raises:
            ConfigError: If an override names an unknown key or the interval bounds are inverted.
        """
        if load_environment:
            self._load_environment()
        self._validate_and_set_config()
        self._apply_overrides(overrides)
        self._check_consistency()

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

    def _require_positive_int(self, env_var: str, default: int) -> int:
        """Parse an integer that must be valid for the process to start (no fallback)."""
        raw = environ.get(env_var, str(default))
        try:
            value = int(raw)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"{env_var} must be an integer, got {raw!r}") from e
        if value < 1:
            raise ConfigError(f"{env_var} must be at least 1, got {value}")
        return value

    def _validate_size(self, env_var: str, default: str) -> int:
        """Parse a human readable byte size (e.g. 2M, 512k, 0 for unlimited)."""
        raw = environ.get(env_var, default)
        try:
            return parse_human_size(raw)
        except ValueError as e:
            logger.warning(f"Invalid {env_var} value '{raw}' ({e}), using default {default}")
            return parse_human_size(default)

    def _validate_bool(self, env_var: str, default: bool = False) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Telegram
        self.TELEGRAM_BOT_TOKEN = environ.get("TELEGRAM_BOT_TOKEN")
        api_uri = environ.get("TELEGRAM_API_URI", "https://api.telegram.org/").strip()
        if not api_uri.endswith("/"):
            api_uri += "/"
        self.TELEGRAM_API_URI = api_uri
        self.NOTIFY_MAX_RETRIES = self._validate_positive_int("NOTIFY_MAX_RETRIES", 3, 0)
        self.NOTIFY_TIMEOUT = self._validate_positive_int("NOTIFY_TIMEOUT", 20, 1)

        # State file
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "rssbot.json")

        # Polling bounds (seconds); 5 minutes to 12 hours
        self.MIN_INTERVAL = self._require_positive_int("MIN_INTERVAL", 300)
        self.MAX_INTERVAL = self._require_positive_int("MAX_INTERVAL", 43200)

        # HTTP fetch configuration
        self.MAX_FEED_SIZE = self._validate_size("MAX_FEED_SIZE", "2M")
        self.FETCH_TIMEOUT = self._validate_positive_int("FETCH_TIMEOUT", 30, 1)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 10, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedNotifier/1.0)")
        proxy_url = (environ.get("PROXY_URL") or "").strip()
        self.PROXY_URL = proxy_url or None
        self.INSECURE = self._validate_bool("INSECURE")

        # Scheduler
        self.TICK_SECONDS = self._validate_positive_int("TICK_SECONDS", 1, 1)
        self.PERSIST_INTERVAL = self._validate_positive_int("PERSIST_INTERVAL", 10, 1)
        self.ERROR_THRESHOLD = self._validate_positive_int("ERROR_THRESHOLD", 24, 1)
        self.MAX_FINGERPRINTS = self._validate_positive_int("MAX_FINGERPRINTS", 500, 1)
        self.MAX_ENTRIES_PER_FETCH = self._validate_positive_int("MAX_ENTRIES_PER_FETCH", 20, 1)

        # Janitor
        self.JANITOR_INTERVAL = self._validate_positive_int("JANITOR_INTERVAL", 3600, 1)
        self.JANITOR_GRACE = self._validate_positive_int("JANITOR_GRACE", self.JANITOR_INTERVAL, 0)

    def _apply_overrides(self, overrides: Dict[str, Any]) -> None:
        for key, value in overrides.items():
            if not key.isupper() or not hasattr(self, key):
                raise ConfigError(f"Unknown configuration key: {key}")
            setattr(self, key, value)

    def _check_consistency(self) -> None:
        if self.MIN_INTERVAL < 1 or self.MAX_INTERVAL < 1:
            raise ConfigError("MIN_INTERVAL and MAX_INTERVAL must be >= 1")
        if self.MIN_INTERVAL > self.MAX_INTERVAL:
            raise ConfigError(
                f"MIN_INTERVAL ({self.MIN_INTERVAL}) must not exceed MAX_INTERVAL ({self.MAX_INTERVAL})"
            )

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        each key as an environment variable. Both a top-level mapping and a
        mapping nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return
        if not isinstance(secrets_config, dict):
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

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Optional[Any]:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML or None on failure.
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
            "database_path": self.DATABASE_PATH,
            "min_interval": self.MIN_INTERVAL,
            "max_interval": self.MAX_INTERVAL,
            "max_feed_size": self.MAX_FEED_SIZE,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "fetch_timeout": self.FETCH_TIMEOUT,
            "error_threshold": self.ERROR_THRESHOLD,
            "janitor_interval": self.JANITOR_INTERVAL,
            "has_bot_token": bool(self.TELEGRAM_BOT_TOKEN),
            "proxy_configured": bool(self.PROXY_URL),
            "insecure": self.INSECURE,
        }
