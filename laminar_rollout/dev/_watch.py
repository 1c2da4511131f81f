"""Source watcher that triggers a reload of the served function."""

import asyncio
from collections.abc import Callable
from pathlib import Path

from watchfiles import Change, DefaultFilter, awatch

from laminar_rollout.logging import get_rollout_logger

logger = get_rollout_logger(__name__)

RELOAD_DEBOUNCE_MS = 100


class SourceChangeFilter(DefaultFilter):
    """Accept modifications of project files, skipping tooling and build directories."""

    ignore_dirs = (
        *DefaultFilter.ignore_dirs,
        "dist",
        "build",
        ".next",
        "coverage",
        ".turbo",
        "tmp",
        "temp",
        "venv",
        ".venv",
        "virtualenv",
        ".virtualenv",
        ".ruff_cache",
        ".mypy_cache",
        ".cache",
        ".DS_Store",
    )
    ignore_entity_patterns = (
        *DefaultFilter.ignore_entity_patterns,
        r"\.log$",
        r"\.map$",
    )

    def __call__(self, change: Change, path: str) -> bool:
        return change == Change.modified and super().__call__(change, path)


async def watch_sources(
    path: str | Path,
    on_change: Callable[[], None],
    stop_event: asyncio.Event,
) -> None:
    """Call ``on_change`` once per settled batch of modified files under ``path``.

    Returns when ``stop_event`` is set.
    """
    logger.debug("Setting up file watcher...")
    async for changes in awatch(
        path,
        watch_filter=SourceChangeFilter(),
        step=RELOAD_DEBOUNCE_MS,
        stop_event=stop_event,
    ):
        for _, changed_path in sorted(changes):
            logger.info("File changed: %s, scheduling reload...", changed_path)
        on_change()
