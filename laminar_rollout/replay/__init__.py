"""Replay of recorded model calls from the dev session's cache.

@public
"""

from ._content import (
    ContentBlock,
    ReasoningContent,
    TextContent,
    ToolCallContent,
    build_chat_completion,
    build_chat_completion_chunks,
    convert_to_content_blocks,
    resolve_finish_reason,
)
from ._overrides import apply_overrides, apply_system_override, apply_tool_overrides
from .interceptor import CacheResponse, ReplayInterceptor, laminar_span_path

__all__ = [
    "CacheResponse",
    "ContentBlock",
    "ReasoningContent",
    "ReplayInterceptor",
    "TextContent",
    "ToolCallContent",
    "apply_overrides",
    "apply_system_override",
    "apply_tool_overrides",
    "build_chat_completion",
    "build_chat_completion_chunks",
    "convert_to_content_blocks",
    "laminar_span_path",
    "resolve_finish_reason",
]
