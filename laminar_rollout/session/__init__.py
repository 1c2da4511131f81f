"""Backend event stream for a rollout session."""

from ._sse import ServerSentEvent, SSEDecoder
from .stream import (
    HandshakeEvent,
    RunRequest,
    SessionStreamClient,
    StreamState,
)

__all__ = [
    "HandshakeEvent",
    "RunRequest",
    "SSEDecoder",
    "ServerSentEvent",
    "SessionStreamClient",
    "StreamState",
]
