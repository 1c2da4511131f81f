"""Exception hierarchy for Laminar Rollout.

All exceptions inherit from RolloutError, providing a consistent error handling interface
for the dev session, the cache server and the worker protocol.
"""


class RolloutError(Exception):
    """Base exception for all Laminar Rollout errors."""


class BackendError(RolloutError):
    """Raised when a Laminar backend request fails or returns a non-2xx status."""


class StreamConnectionError(BackendError):
    """Raised when the session event stream cannot be opened."""


class CacheServerError(RolloutError):
    """Raised when the local cache server cannot be started."""


class WorkerProtocolError(RolloutError):
    """Raised when a prefixed worker line does not decode into a protocol message."""


class WorkerError(RolloutError):
    """Base exception for worker process failures."""


class WorkerSpawnError(WorkerError):
    """Raised when the worker process cannot be started."""


class WorkerExitError(WorkerError):
    """Raised when the worker exits with a non-zero code."""

    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"Worker exited with code {exit_code}")


class WorkerSignalError(WorkerError):
    """Raised when the worker is terminated by a signal."""

    def __init__(self, signal_name: str) -> None:
        self.signal_name = signal_name
        super().__init__(f"Worker terminated by signal: {signal_name}")


class RolloutFunctionNotFoundError(RolloutError):
    """Raised when no rollout function matches the requested selection."""
