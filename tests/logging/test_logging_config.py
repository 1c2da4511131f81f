"""Tests for logging configuration."""

import os
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

from laminar_rollout.logging import get_rollout_logger, setup_logging
from laminar_rollout.logging.logging_config import DEFAULT_LOG_LEVELS, LoggingConfig


class TestLoggingConfig:
    """Test LoggingConfig class."""

    def test_default_config_path_from_env(self):
        """Test getting config path from environment."""
        with patch.dict(os.environ, {"LAMINAR_ROLLOUT_LOGGING_CONFIG": "/path/to/config.yml"}):
            config = LoggingConfig()
            assert config.config_path == Path("/path/to/config.yml")

    def test_default_config_path_from_prefect_env(self):
        """Test falling back to Prefect's config path."""
        with patch.dict(os.environ, {"PREFECT_LOGGING_SETTINGS_PATH": "/prefect/config.yml"}, clear=True):
            config = LoggingConfig()
            assert config.config_path == Path("/prefect/config.yml")

    def test_own_env_wins_over_prefect_env(self):
        env = {
            "LAMINAR_ROLLOUT_LOGGING_CONFIG": "/ours.yml",
            "PREFECT_LOGGING_SETTINGS_PATH": "/prefect.yml",
        }
        with patch.dict(os.environ, env, clear=True):
            assert LoggingConfig().config_path == Path("/ours.yml")

    def test_no_config_path_returns_none(self):
        with patch.dict(os.environ, clear=True):
            config = LoggingConfig()
            assert config.config_path is None

    def test_load_config_from_file(self, tmp_path: Path) -> None:
        """Test loading config from YAML file."""
        config_file = tmp_path / "logging.yml"
        config_file.write_text("""
version: 1
disable_existing_loggers: false
handlers:
  console:
    class: logging.StreamHandler
""")

        loaded = LoggingConfig(config_path=config_file).load_config()

        assert loaded["version"] == 1
        assert loaded["disable_existing_loggers"] is False
        assert "console" in loaded["handlers"]

    def test_missing_file_falls_back_to_defaults(self, tmp_path: Path) -> None:
        loaded = LoggingConfig(config_path=tmp_path / "absent.yml").load_config()
        assert "prefect.laminar_rollout" in loaded["loggers"]

    def test_default_config_logs_to_stderr(self):
        """Worker stdout carries the protocol, so handlers must not write there."""
        with patch.dict(os.environ, clear=True):
            loaded = LoggingConfig().load_config()

        assert loaded["handlers"]["console"]["stream"] == "ext://sys.stderr"
        assert loaded["loggers"]["prefect.laminar_rollout"]["level"] == "INFO"

    def test_default_config_targets_rollout_loggers(self):
        with patch.dict(os.environ, clear=True):
            loaded = LoggingConfig().load_config()

        name = get_rollout_logger("laminar_rollout.cache.server").name
        assert any(name == key or name.startswith(key + ".") for key in loaded["loggers"])

    def test_default_level_from_env(self):
        with patch.dict(os.environ, {"LAMINAR_ROLLOUT_LOG_LEVEL": "DEBUG"}, clear=True):
            loaded = LoggingConfig().load_config()
        assert loaded["loggers"]["prefect.laminar_rollout"]["level"] == "DEBUG"

    @patch("logging.config.dictConfig")
    def test_apply_config(self, mock_dict_config: Mock) -> None:
        LoggingConfig().apply()

        mock_dict_config.assert_called_once()
        assert mock_dict_config.call_args[0][0]["version"] == 1

    @patch("logging.config.dictConfig")
    def test_apply_with_prefect_settings(self, mock_dict_config: Mock) -> None:
        """Test applying config with Prefect settings."""
        with patch.dict(os.environ, clear=True):
            custom_config = {"version": 1, "loggers": {"prefect": {"level": "DEBUG"}}}
            with patch.object(LoggingConfig, "load_config", return_value=custom_config):
                LoggingConfig().apply()

                assert os.environ.get("PREFECT_LOGGING_LEVEL") == "DEBUG"


class TestSetupLogging:
    """Test setup_logging function."""

    @patch("laminar_rollout.logging.logging_config.LoggingConfig.apply")
    def test_setup_logging_basic(self, mock_apply: Mock) -> None:
        setup_logging()
        mock_apply.assert_called_once()

    @patch("laminar_rollout.logging.logging_config.get_logger")
    @patch("laminar_rollout.logging.logging_config.LoggingConfig.apply")
    def test_setup_logging_with_level(self, mock_apply: Mock, mock_get_logger: Mock) -> None:
        mock_logger = MagicMock()
        mock_get_logger.return_value = mock_logger

        with patch.dict(os.environ, {}):
            setup_logging(level="DEBUG")

            assert mock_get_logger.call_count == len(DEFAULT_LOG_LEVELS)
            mock_logger.setLevel.assert_called_with("DEBUG")
            assert os.environ["PREFECT_LOGGING_LEVEL"] == "DEBUG"

    @patch("laminar_rollout.logging.logging_config.LoggingConfig")
    def test_setup_logging_with_config_path(self, mock_config_class: Mock, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.yml"
        mock_instance = MagicMock()
        mock_config_class.return_value = mock_instance

        setup_logging(config_path=config_file)

        mock_config_class.assert_called_once_with(config_file)
        mock_instance.apply.assert_called_once()


class TestGetRolloutLogger:
    """Test get_rollout_logger function."""

    @patch("laminar_rollout.logging.logging_config.setup_logging")
    @patch("laminar_rollout.logging.logging_config.get_logger")
    def test_ensures_setup(self, mock_get_logger: Mock, mock_setup: Mock) -> None:
        mock_logger = MagicMock()
        mock_get_logger.return_value = mock_logger

        import laminar_rollout.logging.logging_config

        laminar_rollout.logging.logging_config._logging_config = None  # type: ignore[attr-defined]

        logger = get_rollout_logger("test.module")

        mock_setup.assert_called_once()
        mock_get_logger.assert_called_with("test.module")
        assert logger == mock_logger

    @patch("laminar_rollout.logging.logging_config.get_logger")
    def test_reuses_config(self, mock_get_logger: Mock) -> None:
        import laminar_rollout.logging.logging_config

        laminar_rollout.logging.logging_config._logging_config = MagicMock()  # type: ignore[attr-defined]

        with patch("laminar_rollout.logging.logging_config.setup_logging") as mock_setup:
            get_rollout_logger("module1")
            get_rollout_logger("module2")

            mock_setup.assert_not_called()
            assert mock_get_logger.call_count == 2
