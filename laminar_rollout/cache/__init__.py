"""Replay cache: the in-memory store and the loopback server exposing it."""

from .server import CacheServer, create_cache_app
from .store import CachedCallRecord, CacheStore, PathOverride, TextBlock, ToolOverride

__all__ = [
    "CacheServer",
    "CacheStore",
    "CachedCallRecord",
    "PathOverride",
    "TextBlock",
    "ToolOverride",
    "create_cache_app",
]
