"""Line codec for the worker stdio protocol.

The parent writes one JSON config line to the worker's stdin. The worker
writes protocol messages to stdout as ``__LMNR_WORKER__:``-prefixed JSON
lines; every other stdout line is user output and is forwarded untouched.
"""

from pydantic import ValidationError

from laminar_rollout.exceptions import WorkerProtocolError

from .messages import WorkerConfig, WorkerMessage, worker_message_adapter

WORKER_MESSAGE_PREFIX = "__LMNR_WORKER__:"


def encode_config(config: WorkerConfig) -> str:
    """Serialize ``config`` as one camelCase JSON line, newline included."""
    return config.model_dump_json(by_alias=True, exclude_none=True) + "\n"


def decode_config(line: str) -> WorkerConfig:
    try:
        return WorkerConfig.model_validate_json(line.strip())
    except ValidationError as e:
        raise WorkerProtocolError(f"Invalid worker config: {e}") from e


def encode_message(message: WorkerMessage) -> str:
    """Frame ``message`` as a prefixed stdout line, without the trailing newline."""
    return WORKER_MESSAGE_PREFIX + message.model_dump_json(exclude_none=True)


def parse_output_line(line: str) -> WorkerMessage | None:
    """Decode one worker stdout line.

    Returns:
        The protocol message, or None when the line is plain user output.

    Raises:
        WorkerProtocolError: The line carries the prefix but its payload is
            not a valid protocol message.
    """
    if not line.startswith(WORKER_MESSAGE_PREFIX):
        return None
    payload = line[len(WORKER_MESSAGE_PREFIX) :]
    try:
        return worker_message_adapter.validate_json(payload)
    except ValidationError as e:
        raise WorkerProtocolError(f"Malformed worker message: {payload!r}") from e
