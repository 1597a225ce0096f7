"""Tests for configuration loading."""

import logging

import pytest

from flowdebug.config import DebugConfig, configure_logging, load_config, preset


def test_load_config_from_yaml(tmp_path, monkeypatch):
    config_path = tmp_path / "flowdebug.yaml"
    config_path.write_text(
        """
enabled: true
mode: test
database:
  use_test_db: true
  test_url: "memory://"
  tables: [projects]
llm_cache:
  enabled: true
  ttl: 5000
  hash_function: simple
logging:
  level: warn
"""
    )
    monkeypatch.setenv("FLOWDEBUG_CONFIG", str(config_path))

    config = load_config()
    assert config.enabled is True
    assert config.mode == "test"
    assert config.database.use_test_db is True
    assert config.database.test_url == "memory://"
    assert config.database.tables == ["projects"]
    assert config.llm_cache.ttl == 5000
    assert config.llm_cache.hash_function == "simple"
    assert config.logging.level == "warn"
    # untouched sections keep their defaults
    assert config.performance.slow_query_threshold == 1000


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config == DebugConfig()
    assert config.enabled is False
    assert config.llm_cache.max_cache_size == 1000
    assert config.logging.max_payload_size == 10_000
    assert "projects" in config.database.tables


def test_env_overrides_yaml(tmp_path, monkeypatch):
    config_path = tmp_path / "flowdebug.yaml"
    config_path.write_text("llm_cache:\n  enabled: false\n  max_cache_size: 10\n")
    monkeypatch.setenv("FLOWDEBUG_LLM_CACHE_ENABLED", "true")
    monkeypatch.setenv("FLOWDEBUG_LLM_CACHE_MAX_SIZE", "25")
    monkeypatch.setenv("FLOWDEBUG_LLM_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("FLOWDEBUG_TEST_DATABASE_URL", "sqlite:///tmp/test.db")
    monkeypatch.setenv("FLOWDEBUG_ENABLED", "1")
    monkeypatch.setenv("FLOWDEBUG_LOG_LEVEL", "ERROR")

    config = load_config(str(config_path))
    assert config.llm_cache.enabled is True
    assert config.llm_cache.max_cache_size == 25
    assert config.llm_cache.directory == str(tmp_path / "cache")
    assert config.database.test_url == "sqlite:///tmp/test.db"
    assert config.enabled is True
    assert config.logging.level == "error"


def test_presets():
    dev = preset("development")
    assert dev.enabled and dev.llm_cache.enabled
    assert dev.database.use_test_db is False

    test = preset("test")
    assert test.mode == "test"
    assert test.database.use_test_db is True
    assert test.logging.level == "info"

    prod = preset("production")
    assert prod.enabled is False
    assert prod.llm_cache.enabled is False
    assert prod.logging.level == "error"

    with pytest.raises(ValueError):
        preset("staging")


def test_configure_logging_sets_level():
    logger = configure_logging(preset("production").logging)
    assert logger.name == "flowdebug"
    assert logger.level == logging.ERROR

    configure_logging(preset("development").logging)
    assert logging.getLogger("flowdebug").level == logging.DEBUG
