"""
Unit tests for configuration management.

Tests cover:
- Environment variable loading
- Executor defaults and per-plan overrides
- CORS parsing
"""
import importlib
import os
from unittest.mock import patch

import pytest

import dashboard_agent.config as config_module
from dashboard_agent.orchestration.models import ExecutorConfig


@pytest.fixture
def reload_config():
    """Reload the config module; reloaded again on teardown so later tests see the defaults."""
    yield lambda: importlib.reload(config_module)
    importlib.reload(config_module)


class TestConfigLoading:
    """Test configuration loading from environment variables."""

    def test_defaults(self, reload_config):
        with patch.dict(os.environ, {}, clear=False):
            for name in ("APP_PORT", "EXECUTOR_MAX_CONCURRENT", "EXECUTOR_BATCH_SIZE", "EXECUTOR_RETRY_ATTEMPTS",
                         "EXECUTOR_RETRY_DELAY_MS", "EXECUTOR_TIMEOUT_MS", "DEFAULT_DATA_SOURCE"):
                os.environ.pop(name, None)
            reload_config()

            assert config_module.APP_PORT == 8092
            assert config_module.EXECUTOR_MAX_CONCURRENT == 3
            assert config_module.EXECUTOR_BATCH_SIZE == 100
            assert config_module.EXECUTOR_RETRY_ATTEMPTS == 3
            assert config_module.EXECUTOR_RETRY_DELAY_MS == 1000
            assert config_module.EXECUTOR_TIMEOUT_MS == 30000
            assert config_module.DEFAULT_DATA_SOURCE == "/api/generic-search"

    def test_load_environment_variables(self, reload_config):
        with patch.dict(os.environ, {
            'APP_ENV': 'test',
            'APP_PORT': '9000',
            'EXECUTOR_MAX_CONCURRENT': '5',
            'EXECUTOR_TIMEOUT_MS': '10000',
            'PLAN_TIMEOUT_MULTIPLIER': '2.5',
            'ENABLE_PII_REDACTION': 'false',
        }):
            reload_config()

            assert config_module.APP_ENV == 'test'
            assert config_module.APP_PORT == 9000
            assert config_module.EXECUTOR_MAX_CONCURRENT == 5
            assert config_module.EXECUTOR_TIMEOUT_MS == 10000
            assert config_module.PLAN_TIMEOUT_MULTIPLIER == 2.5
            assert config_module.ENABLE_PII_REDACTION is False

    def test_cors_parsing(self, reload_config):
        with patch.dict(os.environ, {
            'CORS_ORIGINS': 'http://localhost:3000, https://app.example.com ,',
            'CORS_ALLOW_METHODS': 'GET,POST',
            'CORS_ALLOW_HEADERS': '*',
        }):
            reload_config()

            assert config_module.CORS_ORIGINS == ['http://localhost:3000', 'https://app.example.com']
            assert config_module.CORS_ALLOW_METHODS == ['GET', 'POST']
            assert config_module.CORS_ALLOW_HEADERS == ['*']

    def test_env_file_for_environment(self, tmp_path, monkeypatch, reload_config):
        (tmp_path / ".env.sit").write_text("EXECUTOR_BATCH_SIZE=250\n")
        monkeypatch.chdir(tmp_path)

        with patch.dict(os.environ, {'APP_ENV': 'sit'}):
            os.environ.pop('EXECUTOR_BATCH_SIZE', None)
            reload_config()

            assert config_module.EXECUTOR_BATCH_SIZE == 250


class TestExecutorConfig:
    """ExecutorConfig defaults and overrides."""

    def test_defaults_follow_config(self):
        executor_config = ExecutorConfig()

        assert executor_config.max_concurrent == config_module.EXECUTOR_MAX_CONCURRENT
        assert executor_config.batch_size == config_module.EXECUTOR_BATCH_SIZE
        assert executor_config.plan_timeout_ms is None

    def test_merged_accepts_snake_and_camel_case(self):
        base = ExecutorConfig(max_concurrent=3, batch_size=100)

        assert base.merged({"max_concurrent": 1}).max_concurrent == 1
        assert base.merged({"batchSize": 10}).batch_size == 10
        assert base.merged(None) is base

    def test_invalid_override(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            ExecutorConfig().merged({"max_concurrent": 0})
