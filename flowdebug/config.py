from __future__ import annotations

import logging
import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_TABLES = [
    "analysis_snapshots",
    "strategies",
    "strategy_versions",
    "patches",
    "campaigns",
    "briefs",
    "artifacts",
    "step_events",
    "projects",
]

LogLevel = Literal["debug", "info", "warn", "error"]
Mode = Literal["development", "test", "production"]


class DatabaseSettings(BaseModel):
    """Backing store selection and snapshot settings."""

    use_test_db: bool = False
    production_url: Optional[str] = None
    test_url: Optional[str] = None
    logging: bool = False
    auto_snapshot: bool = True
    snapshot_directory: str = ".cache/snapshots"
    tables: List[str] = Field(default_factory=lambda: list(DEFAULT_TABLES))


class LLMCacheSettings(BaseModel):
    """Response cache behavior. ``ttl`` is in milliseconds."""

    enabled: bool = False
    directory: str = ".cache/llm-responses"
    ttl: int = 86_400_000
    max_cache_size: int = 1000
    hash_function: Literal["simple", "detailed"] = "detailed"


class LoggingSettings(BaseModel):
    level: LogLevel = "debug"
    include_stacks: bool = True
    max_payload_size: int = 10_000


class PerformanceSettings(BaseModel):
    """Warning thresholds in milliseconds."""

    slow_query_threshold: float = 1000
    slow_llm_threshold: float = 5000


class DebugConfig(BaseModel):
    """Top-level configuration model."""

    enabled: bool = False
    mode: Mode = "development"
    storage: Literal["filesystem", "memory"] = "filesystem"
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    llm_cache: LLMCacheSettings = Field(default_factory=LLMCacheSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Optional[str] = None) -> DebugConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWDEBUG_CONFIG env
            variable or 'flowdebug.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWDEBUG_CONFIG", "flowdebug.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DebugConfig(**data)
    else:
        config = DebugConfig()

    enabled = _env_flag("FLOWDEBUG_ENABLED")
    if enabled is not None:
        config.enabled = enabled
    mode = os.getenv("FLOWDEBUG_MODE")
    if mode:
        config.mode = DebugConfig(mode=mode).mode

    use_test_db = _env_flag("FLOWDEBUG_USE_TEST_DB")
    if use_test_db is not None:
        config.database.use_test_db = use_test_db
    if os.getenv("FLOWDEBUG_DATABASE_URL"):
        config.database.production_url = os.environ["FLOWDEBUG_DATABASE_URL"]
    if os.getenv("FLOWDEBUG_TEST_DATABASE_URL"):
        config.database.test_url = os.environ["FLOWDEBUG_TEST_DATABASE_URL"]

    cache_enabled = _env_flag("FLOWDEBUG_LLM_CACHE_ENABLED")
    if cache_enabled is not None:
        config.llm_cache.enabled = cache_enabled
    if os.getenv("FLOWDEBUG_LLM_CACHE_DIR"):
        config.llm_cache.directory = os.environ["FLOWDEBUG_LLM_CACHE_DIR"]
    if os.getenv("FLOWDEBUG_LLM_CACHE_TTL"):
        config.llm_cache.ttl = int(os.environ["FLOWDEBUG_LLM_CACHE_TTL"])
    if os.getenv("FLOWDEBUG_LLM_CACHE_MAX_SIZE"):
        config.llm_cache.max_cache_size = int(os.environ["FLOWDEBUG_LLM_CACHE_MAX_SIZE"])

    level = os.getenv("FLOWDEBUG_LOG_LEVEL")
    if level:
        config.logging.level = LoggingSettings(level=level.lower()).level
    return config


def preset(name: str) -> DebugConfig:
    """Return one of the canned configurations.

    ``development`` caches LLM responses against the production store,
    ``test`` turns on the test store as well, ``production`` disables all
    instrumentation.
    """

    if name == "development":
        return DebugConfig(
            enabled=True,
            mode="development",
            llm_cache=LLMCacheSettings(enabled=True),
            logging=LoggingSettings(level="debug"),
        )
    if name == "test":
        return DebugConfig(
            enabled=True,
            mode="test",
            database=DatabaseSettings(use_test_db=True),
            llm_cache=LLMCacheSettings(enabled=True),
            logging=LoggingSettings(level="info"),
        )
    if name == "production":
        return DebugConfig(
            enabled=False,
            mode="production",
            logging=LoggingSettings(level="error"),
        )
    raise ValueError(f"Unknown preset: {name}")


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Apply the configured verbosity to the ``flowdebug`` logger."""

    # no-op when the host application already configured the root logger
    logging.basicConfig(format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logger = logging.getLogger("flowdebug")
    logger.setLevel(_LEVELS[settings.level])
    return logger
