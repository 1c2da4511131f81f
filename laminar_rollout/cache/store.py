"""In-memory store of recorded model calls keyed by span path and call index.

The store is shared between the run handler, which repopulates it on every
run event, and the cache server, which answers worker lookups. All access is
serialized by a lock.
"""

from threading import Lock
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CachedCallRecord(BaseModel):
    """One recorded model call, replayed verbatim on a cache hit."""

    model_config = ConfigDict(frozen=True)

    name: str
    input: Any = None
    output: str
    attributes: dict[str, Any] = Field(default_factory=dict)


class TextBlock(BaseModel):
    """Text content block used by system prompt overrides."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolOverride(BaseModel):
    """Replacement for a tool definition, matched by tool name."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class PathOverride(BaseModel):
    """Per-path overrides applied to a live or replayed model call."""

    model_config = ConfigDict(frozen=True)

    system: str | list[TextBlock] | None = None
    tools: list[ToolOverride] | None = None

    def system_text(self) -> str | None:
        """Return the system override as plain text, joining text blocks with newlines."""
        if self.system is None:
            return None
        if isinstance(self.system, str):
            return self.system
        return "\n".join(block.text for block in self.system)


class CacheStore:
    """Thread-safe map from ``(path, index)`` to a recorded call.

    Alongside the records the store keeps the replay budget per path
    (``path_to_count``) and the per-path overrides. Both are replaced
    wholesale by :meth:`set_metadata`.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[tuple[str, int], CachedCallRecord] = {}
        self._path_to_count: dict[str, int] = {}
        self._overrides: dict[str, PathOverride] = {}

    def clear(self) -> None:
        """Drop every record. Metadata is left untouched."""
        with self._lock:
            self._records.clear()

    def set(self, path: str, index: int, record: CachedCallRecord) -> None:
        with self._lock:
            self._records[(path, index)] = record

    def get(self, path: str, index: int) -> CachedCallRecord | None:
        with self._lock:
            return self._records.get((path, index))

    def set_metadata(
        self,
        path_to_count: dict[str, int] | None,
        overrides: dict[str, PathOverride] | None,
    ) -> None:
        """Replace the replay budgets and overrides."""
        with self._lock:
            self._path_to_count = dict(path_to_count or {})
            self._overrides = dict(overrides or {})

    def metadata(self) -> tuple[dict[str, int], dict[str, PathOverride]]:
        """Return copies of the current budgets and overrides."""
        with self._lock:
            return dict(self._path_to_count), dict(self._overrides)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
