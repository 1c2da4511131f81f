"""Logging infrastructure for Laminar Rollout.

@public

Key components:
    get_rollout_logger: Factory function for creating rollout loggers
    setup_logging: Initialize logging configuration from YAML
    LoggingConfig: Configuration class for logging settings

Example:
    >>> from laminar_rollout.logging import get_rollout_logger
    >>>
    >>> logger = get_rollout_logger(__name__)
    >>> logger.info("Waiting for run events")

Note:
    Never import Python's logging module directly. Always use
    get_rollout_logger() for consistent Prefect integration.
"""

from .logging_config import LoggingConfig, get_rollout_logger, setup_logging

__all__ = [
    "LoggingConfig",
    "setup_logging",
    "get_rollout_logger",
]
