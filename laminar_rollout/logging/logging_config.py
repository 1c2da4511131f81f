"""Logging for the dev session and the worker process.

@public

Rollout loggers are Prefect loggers (``prefect.laminar_rollout.*``), so
records get Prefect's formatting and API key obfuscation. Both processes log
to stderr: the worker's stdout carries the line protocol, and the dev
session forwards the worker's stderr to the developer's terminal unchanged.

Usage:
    >>> from laminar_rollout.logging import get_rollout_logger
    >>> logger = get_rollout_logger(__name__)
    >>> logger.info("Cache server started")

Environment variables:
    LAMINAR_ROLLOUT_LOGGING_CONFIG: Path to a logging.yml in dictConfig format
    LAMINAR_ROLLOUT_LOG_LEVEL: Level of the rollout loggers (INFO, DEBUG, ...)
    PREFECT_LOGGING_LEVEL: Prefect's logging level
    PREFECT_LOGGING_SETTINGS_PATH: Fallback config path
"""

import logging.config
import os
from pathlib import Path
from typing import Any

import yaml
from prefect.logging import get_logger

# Components whose level `setup_logging(level=...)` overrides
DEFAULT_LOG_LEVELS = {
    "laminar_rollout": "INFO",
    "laminar_rollout.backend": "INFO",
    "laminar_rollout.cache": "INFO",
    "laminar_rollout.dev": "INFO",
    "laminar_rollout.replay": "INFO",
    "laminar_rollout.runner": "INFO",
    "laminar_rollout.session": "INFO",
    "laminar_rollout.worker": "INFO",
}


class LoggingConfig:
    """Loads and applies the dictConfig used by the dev session and the worker.

    @public

    Configuration precedence:
        1. Explicit config_path parameter
        2. LAMINAR_ROLLOUT_LOGGING_CONFIG environment variable
        3. PREFECT_LOGGING_SETTINGS_PATH environment variable
        4. Default configuration

    Example:
        >>> config = LoggingConfig()
        >>> config.apply()
        >>>
        >>> config = LoggingConfig(Path("custom_logging.yml"))
        >>> config.apply()
    """

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config: dict[str, Any] | None = None

    @staticmethod
    def _get_default_config_path() -> Path | None:
        if env_path := os.environ.get("LAMINAR_ROLLOUT_LOGGING_CONFIG"):
            return Path(env_path)

        if prefect_path := os.environ.get("PREFECT_LOGGING_SETTINGS_PATH"):
            return Path(prefect_path)

        return None

    def load_config(self) -> dict[str, Any]:
        """Load the YAML config file, or the stderr-only default when there is none.

        Returns:
            Dictionary in ``logging.config.dictConfig`` format. Cached after
            the first load; create a new LoggingConfig to reload from disk.
        """
        if self._config is None:
            if self.config_path and self.config_path.exists():
                with open(self.config_path, "r") as f:
                    self._config = yaml.safe_load(f)
            else:
                self._config = self._get_default_config()
        assert self._config is not None
        return self._config

    @staticmethod
    def _get_default_config() -> dict[str, Any]:
        # HH:MM:SS.mmm | LEVEL | logger.name - message
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s.%(msecs)03d | %(levelname)-7s | %(name)s - %(message)s",
                    "datefmt": "%H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stderr",
                },
            },
            "loggers": {
                "prefect.laminar_rollout": {
                    "level": os.environ.get("LAMINAR_ROLLOUT_LOG_LEVEL", "INFO"),
                    "handlers": ["console"],
                    "propagate": False,
                },
            },
            "root": {
                "level": "WARNING",
                "handlers": ["console"],
            },
        }

    def apply(self):
        """Install the config with ``dictConfig``.

        A ``prefect`` logger entry also seeds ``PREFECT_LOGGING_LEVEL`` when unset.
        """
        config = self.load_config()
        logging.config.dictConfig(config)

        if "prefect" in config.get("loggers", {}):
            prefect_level = config["loggers"]["prefect"].get("level", "INFO")
            os.environ.setdefault("PREFECT_LOGGING_LEVEL", prefect_level)


_logging_config: LoggingConfig | None = None


def setup_logging(config_path: Path | None = None, level: str | None = None):
    """Configure rollout logging, optionally forcing one level on every component.

    @public

    Args:
        config_path: Optional path to YAML logging configuration file.
        level: Optional log level override (INFO, DEBUG, WARNING, etc.).

    Example:
        >>> setup_logging()
        >>> setup_logging(level="DEBUG")
    """
    global _logging_config

    _logging_config = LoggingConfig(config_path)
    _logging_config.apply()

    if level:
        for logger_name in DEFAULT_LOG_LEVELS:
            logger = get_logger(logger_name)
            logger.setLevel(level)

        os.environ["PREFECT_LOGGING_LEVEL"] = level


def get_rollout_logger(name: str):
    """Return the Prefect logger of a rollout module, configuring logging on first use.

    @public

    Args:
        name: Logger name, typically ``__name__``.

    Example:
        >>> logger = get_rollout_logger(__name__)
        >>> logger.info("Run finished")
    """
    if _logging_config is None:
        setup_logging()

    return get_logger(name)
