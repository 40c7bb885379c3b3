#!/usr/bin/env python3
"""
Configuration management for the feed ingestion pipeline.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file, and the
sources.yaml subscription list, and provides a clean interface for accessing
configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

CONTENT_MODES = ("text", "image_text")


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
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
        force=True  # Force reconfiguration if already configured
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams (e.g. under pytest) may not support reconfigure
        pass

    # aiohttp access logging is noisy at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedIngest")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetch", "parser", "ingestor")

    Returns:
        A logger named "FeedIngest.{name}"

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'FeedIngest.mymodule - INFO - ...'")
    """
    return getLogger(f"FeedIngest.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for the ingestion pipeline.

    Values are loaded, in increasing order of precedence, from:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The subscription list, relay host list, mirror instances and proxy relay
    settings come from sources.yaml:

    ```yaml
    sources:
      hn:
        url: https://news.ycombinator.com/rss
        name: Hacker News
        category: Tech
        content_mode: text
    relay:
      hosts: [medium.com, github.com]
    mirrors:
      default: https://rsshub.app
      instances: [https://rsshub.app, https://rsshub.rssforever.com]
    proxy:
      enabled: false
      server_url: https://relay.example.com
      token: "..."
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_sources()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a non-negative float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "articles.db")
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        )
        # Used for full-page backfill requests only
        self.BROWSER_USER_AGENT = environ.get(
            "BROWSER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        )

        # HTTP request configuration (feed fetches)
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", 15.0, 1.0)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 2.0, 0.0)
        self.MAX_RETRY_DELAY = self._validate_positive_float("MAX_RETRY_DELAY", 60.0, 1.0)
        self.PAGE_FETCH_TIMEOUT = self._validate_positive_float("PAGE_FETCH_TIMEOUT", 10.0, 1.0)
        self.MIRROR_PROBE_TIMEOUT = self._validate_positive_float("MIRROR_PROBE_TIMEOUT", 5.0, 0.5)
        self.CORS_RELAY_URL = environ.get("CORS_RELAY_URL", "https://api.allorigins.win/raw?url=")

        # Refresh orchestration
        self.MAX_CONCURRENT_SOURCES = self._validate_positive_int("MAX_CONCURRENT_SOURCES", 3, 1)
        self.BACKFILL_REQUESTS_PER_MINUTE = self._validate_positive_int("BACKFILL_REQUESTS_PER_MINUTE", 30, 0)

        # Incremental diff
        self.DIFF_WINDOW = self._validate_positive_int("DIFF_WINDOW", 20, 1)
        self.DIFF_TIME_TOLERANCE_SECONDS = self._validate_positive_int("DIFF_TIME_TOLERANCE_SECONDS", 60, 0)

        # Content normalization thresholds
        self.MIN_CONTENT_LENGTH = self._validate_positive_int("MIN_CONTENT_LENGTH", 200, 0)
        self.MIN_BACKFILL_LENGTH = self._validate_positive_int("MIN_BACKFILL_LENGTH", 500, 1)
        self.SUMMARY_LENGTH = self._validate_positive_int("SUMMARY_LENGTH", 200, 10)
        self.WORDS_PER_MINUTE = self._validate_positive_int("WORDS_PER_MINUTE", 200, 1)

        # Proxy relay
        self.PROXY_SYNC_LIMIT = self._validate_positive_int("PROXY_SYNC_LIMIT", 100, 1)

        # File paths
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)
        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        PROXY_TOKEN: "your-relay-token"

        # Backward-compatible: nested under `environment`
        # environment:
        #   PROXY_TOKEN: "your-relay-token"
        ```
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

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

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
            kind: Short label for logging context (e.g. 'secrets', 'sources')

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

    def _load_sources(self) -> None:
        """Populate SOURCES, RELAY_HOSTS, MIRROR_* and PROXY_* from sources.yaml.

        Any failure results in empty/default values; start-up never aborts here.
        """
        sources_path = self.SOURCES_CONFIG_PATH
        config_data = self._safe_read_yaml(sources_path, 5 * 1024 * 1024, 'sources')
        if not isinstance(config_data, dict):
            config_data = {}

        self.RELAY_HOSTS = self._parse_relay_hosts(config_data.get('relay'))
        self.MIRROR_DEFAULT, self.MIRROR_INSTANCES = self._parse_mirrors(config_data.get('mirrors'))
        self._parse_proxy(config_data.get('proxy'))

        sources_section = config_data.get('sources')
        new_sources: Dict[str, Dict[str, Any]] = {}
        if isinstance(sources_section, dict):
            for slug, source_cfg in sources_section.items():
                if not isinstance(source_cfg, dict) or not source_cfg.get('url'):
                    logger.warning(f"Skipping invalid source configuration for '{slug}': {source_cfg}")
                    continue
                mode = str(source_cfg.get('content_mode', 'image_text')).lower()
                if mode not in CONTENT_MODES:
                    logger.warning(f"Unknown content_mode '{mode}' for '{slug}', using image_text")
                    mode = 'image_text'
                new_sources[str(slug)] = {
                    'url': str(source_cfg['url']).strip(),
                    'name': source_cfg.get('name') or str(slug),
                    'category': source_cfg.get('category') or 'General',
                    'content_mode': mode,
                    'active': bool(source_cfg.get('active', True)),
                }
        elif sources_section is not None:
            logger.warning(f"'sources' in {sources_path} must be a mapping")

        self.SOURCES = new_sources
        logger.info(f"Loaded {len(self.SOURCES)} sources from {sources_path}")

    def _parse_relay_hosts(self, section: Any) -> List[str]:
        default_hosts = ['feedly.com', 'medium.com', 'github.com']
        if section is None:
            return default_hosts
        hosts = section.get('hosts') if isinstance(section, dict) else None
        if not isinstance(hosts, list):
            logger.warning("relay.hosts must be a list; using defaults")
            return default_hosts
        return [str(h).strip().lower() for h in hosts if str(h).strip()]

    def _parse_mirrors(self, section: Any) -> tuple[str, List[str]]:
        default = 'https://rsshub.app'
        instances = [
            'https://rsshub.app',
            'https://rsshub.rssforever.com',
            'https://rsshub.speedcloud.one',
            'https://rsshub.pseudoyu.com',
        ]
        if not isinstance(section, dict):
            return default, instances
        configured_default = section.get('default')
        if isinstance(configured_default, str) and configured_default.strip():
            default = configured_default.strip().rstrip('/')
        configured_instances = section.get('instances')
        if isinstance(configured_instances, list) and configured_instances:
            instances = [str(i).strip().rstrip('/') for i in configured_instances if str(i).strip()]
        return default, instances

    def _parse_proxy(self, section: Any) -> None:
        self.PROXY_ENABLED = False
        self.PROXY_SERVER_URL = None
        self.PROXY_TOKEN = environ.get("PROXY_TOKEN")
        if section in (None, False):
            return
        if not isinstance(section, dict):
            logger.warning("proxy configuration must be a mapping with server_url/token fields")
            return
        server_url = section.get('server_url')
        if isinstance(server_url, str) and server_url.strip():
            self.PROXY_SERVER_URL = server_url.strip().rstrip('/')
        token = section.get('token')
        if isinstance(token, str) and token.strip():
            self.PROXY_TOKEN = token.strip()
        self.PROXY_ENABLED = bool(section.get('enabled')) and bool(self.PROXY_SERVER_URL and self.PROXY_TOKEN)
        if section.get('enabled') and not self.PROXY_ENABLED:
            logger.warning("Proxy relay enabled but server_url or token is missing; using direct mode")

    def reload_sources(self):
        """Reload the subscription list from the configuration file."""
        logger.info("Reloading sources configuration")
        self._load_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "retry_delay_base": self.RETRY_DELAY_BASE,
            "max_concurrent_sources": self.MAX_CONCURRENT_SOURCES,
            "diff_window": self.DIFF_WINDOW,
            "source_count": len(self.SOURCES),
            "relay_hosts": len(self.RELAY_HOSTS),
            "mirror_instances": len(self.MIRROR_INSTANCES),
            "proxy_enabled": self.PROXY_ENABLED,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
