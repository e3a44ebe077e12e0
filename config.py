#!/usr/bin/env python3
"""
Configuration management for the Status Feed Processor.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

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

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (test capture, some embedders) may not support reconfigure
        pass

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    environ["AZURE_LOG_LEVEL"] = azure_level_str
    azure_level = level_map.get(azure_level_str, WARNING)
    for name in (
        "azure",
        "azure.core",
        "azure.core.pipeline.policies.http_logging_policy",
        "azure.monitor.opentelemetry.exporter",
    ):
        getLogger(name).setLevel(azure_level)

    return getLogger("StatusProcessor")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "StatusProcessor.{name}" and inherit the global logging
    configuration set by _setup_global_logger().

    Example:
        logger = get_logger("fetcher")
        logger.info("This will appear as 'StatusProcessor.fetcher - INFO - ...'")
    """
    return getLogger(f"StatusProcessor.{name}")

logger = _setup_global_logger()

class Config:
    """Configuration manager for the Status Feed Processor.

    Configuration is loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The monitored services themselves come from services.yaml:
    ```yaml
    services:
      github:
        url: "https://www.githubstatus.com/history.rss"
      openai:
        url: "https://status.openai.com/history.rss"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_service_sources()

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

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "status.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; StatusFeedProcessor/1.0)")

        # HTTP request configuration (feed source)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Batch processing configuration
        self.INGEST_BATCH_SIZE = self._validate_positive_int("INGEST_BATCH_SIZE", 10, 1)
        self.SUMMARY_BATCH_SIZE = self._validate_positive_int("SUMMARY_BATCH_SIZE", 10, 1)
        # 0 disables the cap on concurrently fetched feeds
        self.FEED_FETCH_CONCURRENCY = self._validate_positive_int("FEED_FETCH_CONCURRENCY", 10, 0)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # OpenAI/Azure AI configuration for the event summarizer
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        # Normalize endpoint (strip scheme and trailing slashes) to avoid malformed URLs
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")

        # Summarizer-specific configuration
        self.LLM_TIMEOUT = self._validate_positive_float("LLM_TIMEOUT", 60.0, 1.0)
        self.SUMMARIZER_REQUESTS_PER_MINUTE = self._validate_positive_int("SUMMARIZER_REQUESTS_PER_MINUTE", 60, 0)

        # HTTP surface
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 8080, 1)
        self.PROCESSOR_URL = (environ.get("PROCESSOR_URL") or f"http://127.0.0.1:{self.PORT}").rstrip("/")

        # Scheduler configuration
        self.SCHEDULER_ENABLED = self._validate_bool("SCHEDULER_ENABLED", True)
        self.SCHEDULER_INTERVAL_SECONDS = self._validate_positive_float("SCHEDULER_INTERVAL_SECONDS", 60.0, 1.0)
        self.SCHEDULER_REQUEST_TIMEOUT = self._validate_positive_float("SCHEDULER_REQUEST_TIMEOUT", 300.0, 1.0)
        self.SCHEDULER_SKIP_IF_RUNNING = self._validate_bool("SCHEDULER_SKIP_IF_RUNNING", True)
        self.SCHEDULER_RUN_IMMEDIATELY = self._validate_bool("SCHEDULER_RUN_IMMEDIATELY", False)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SERVICES_CONFIG_PATH = environ.get("SERVICES_CONFIG_PATH", path.join(base_dir, "services.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, every key of the YAML mapping (top-level, or
        nested under `environment`) is copied into the process environment:

        ```yaml
        AZURE_ENDPOINT: "https://your-resource.openai.azure.com/"
        OPENAI_API_KEY: "your-api-key"
        DEPLOYMENT_NAME: "gpt-4o"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.info("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
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
            kind: Short label for logging context (e.g. 'secrets', 'services')

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

    def _load_service_sources(self) -> None:
        """Populate self.SERVICE_SOURCES (slug -> feed URL) from services.yaml.

        Any failure results in an empty mapping; a plain string value is
        accepted as the feed URL.
        """
        services_path = self.SERVICES_CONFIG_PATH
        config_data = self._safe_read_yaml(services_path, 5 * 1024 * 1024, 'services')
        services_section = config_data.get('services') if isinstance(config_data, dict) else None
        if not isinstance(services_section, dict):
            if config_data is not None:
                logger.warning(f"No valid services found in {services_path}")
            self.SERVICE_SOURCES = {}
            return

        new_sources: Dict[str, str] = {}
        for slug, service_cfg in services_section.items():
            if isinstance(service_cfg, dict) and service_cfg.get('url'):
                new_sources[str(slug)] = str(service_cfg['url']).strip()
            elif isinstance(service_cfg, str) and service_cfg.strip():
                new_sources[str(slug)] = service_cfg.strip()
            else:
                logger.warning(f"Skipping invalid service configuration for '{slug}': {service_cfg}")

        self.SERVICE_SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.SERVICE_SOURCES)} services from {services_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "llm_timeout": self.LLM_TIMEOUT,
            "ingest_batch_size": self.INGEST_BATCH_SIZE,
            "summary_batch_size": self.SUMMARY_BATCH_SIZE,
            "feed_fetch_concurrency": self.FEED_FETCH_CONCURRENCY,
            "service_count": len(self.SERVICE_SOURCES),
            "scheduler_enabled": self.SCHEDULER_ENABLED,
            "scheduler_interval_seconds": self.SCHEDULER_INTERVAL_SECONDS,
            "processor_url": self.PROCESSOR_URL,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_azure_endpoint": bool(self.AZURE_ENDPOINT),
            "has_openai_key": bool(self.OPENAI_API_KEY),
        }

config = Config()
