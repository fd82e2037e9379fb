"""
Unit tests for configuration and logging setup (zipback/__init__.py, zipback/config.py).
"""

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from zipback import configure_logging, create_runner, get_config
from zipback.config import ProductionConfig, TestingConfig
from zipback.backup.executor import BackupRunner


class TestGetConfig:
    def test_by_name(self):
        assert get_config('testing') is TestingConfig

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv('ZIPBACK_ENV', 'testing')

        assert get_config() is TestingConfig

    def test_production_by_default(self, monkeypatch):
        monkeypatch.delenv('ZIPBACK_ENV', raising=False)

        assert get_config() is ProductionConfig

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="Invalid environment"):
            get_config('staging')


class TestConfigureLogging:
    """Test handler setup."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_console_only(self):
        configure_logging(TestingConfig)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert not any(isinstance(h, RotatingFileHandler) for h in root.handlers)

    def test_file_handler(self, tmp_path):
        cfg = type('Cfg', (TestingConfig,), {'LOG_DIR': str(tmp_path / 'logs'), 'LOG_LEVEL': 'warning'})

        configure_logging(cfg)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert (tmp_path / 'logs' / 'zipback.log').exists()
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)

    def test_unknown_level_falls_back_to_info(self):
        cfg = type('Cfg', (TestingConfig,), {'LOG_LEVEL': 'chatty'})

        configure_logging(cfg)

        assert logging.getLogger().level == logging.INFO


class TestCreateRunner:
    def test_runner_with_level_override(self):
        with patch('zipback.configure_logging') as mock_configure:
            runner = create_runner('testing', log_level='error')

        assert isinstance(runner, BackupRunner)
        assert runner.cfg.LOG_LEVEL == 'error'
        assert issubclass(runner.cfg, TestingConfig)
        # the shared class keeps its level
        assert TestingConfig.LOG_LEVEL == 'DEBUG'
        mock_configure.assert_called_once_with(runner.cfg)
