"""Worker side of a rollout run: the rollout function registry and the worker process.

@public

Run the worker with ``python -m laminar_rollout.worker``.
"""

from .registry import (
    ROLLOUT_ENTRYPOINT_ATTR,
    RolloutFunction,
    RolloutRegistry,
    load_rollout_functions,
    rollout_entrypoint,
)

__all__ = [
    "ROLLOUT_ENTRYPOINT_ATTR",
    "RolloutFunction",
    "RolloutRegistry",
    "load_rollout_functions",
    "rollout_entrypoint",
]
