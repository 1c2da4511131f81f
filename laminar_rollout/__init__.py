"""Laminar Rollout - interactive rollout debugging with deterministic replay.

@public

A dev session announces a rollout function to the Laminar backend, waits for
run events streamed from the dashboard, back-fills a local cache from a
recorded trace and re-executes the function in a worker process. Inside the
worker, model calls consult the cache by span path and call index and either
replay the recorded output or go live.

Quick Start:
    >>> from laminar_rollout import rollout_entrypoint
    >>>
    >>> @rollout_entrypoint
    ... async def agent(question: str) -> str:
    ...     ...

    $ laminar-rollout dev agent.py
"""

from . import exceptions
from .cache import CachedCallRecord, CacheServer, CacheStore, PathOverride
from .dev import DevSession
from .logging import get_rollout_logger, setup_logging
from .replay import ReplayInterceptor
from .settings import Settings, settings
from .worker import RolloutRegistry, load_rollout_functions, rollout_entrypoint

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "exceptions",
    "Settings",
    "settings",
    "get_rollout_logger",
    "setup_logging",
    "CacheStore",
    "CacheServer",
    "CachedCallRecord",
    "PathOverride",
    "DevSession",
    "ReplayInterceptor",
    "RolloutRegistry",
    "load_rollout_functions",
    "rollout_entrypoint",
]
