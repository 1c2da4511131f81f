"""Worker stdio protocol: configuration, messages and the line codec."""

from .codec import (
    WORKER_MESSAGE_PREFIX,
    decode_config,
    encode_config,
    encode_message,
    parse_output_line,
)
from .messages import (
    ROLLOUT_SESSION_ID_ENV,
    ROLLOUT_STATE_SERVER_ADDRESS_ENV,
    FunctionMetadata,
    LogLevel,
    RolloutParam,
    WorkerArgs,
    WorkerConfig,
    WorkerErrorMessage,
    WorkerLogMessage,
    WorkerMessage,
    WorkerResultMessage,
)

__all__ = [
    "ROLLOUT_SESSION_ID_ENV",
    "ROLLOUT_STATE_SERVER_ADDRESS_ENV",
    "FunctionMetadata",
    "RolloutParam",
    "WORKER_MESSAGE_PREFIX",
    "LogLevel",
    "WorkerArgs",
    "WorkerConfig",
    "WorkerErrorMessage",
    "WorkerLogMessage",
    "WorkerMessage",
    "WorkerResultMessage",
    "decode_config",
    "encode_config",
    "encode_message",
    "parse_output_line",
]
