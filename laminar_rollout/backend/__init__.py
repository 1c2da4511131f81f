"""Laminar backend collaborators: trace queries and session status."""

from .client import (
    TRACE_SPANS_QUERY,
    HistoricalSpan,
    RolloutBackendClient,
    SessionStatus,
    auth_headers,
    raise_for_backend_status,
)

__all__ = [
    "TRACE_SPANS_QUERY",
    "HistoricalSpan",
    "RolloutBackendClient",
    "SessionStatus",
    "auth_headers",
    "raise_for_backend_status",
]
