"""Replay of recorded model calls inside the worker process.

@public

Wrap each model call of a rollout function with a :class:`ReplayInterceptor`.
Within a dev session the interceptor identifies the call by its span path and
a per-path call index, and replays the recorded output while the path's
replay budget lasts. Calls past the budget, cache misses and calls outside a
session go to the live provider.
Streaming calls go through :meth:`ReplayInterceptor.intercept_stream`, which
replays a hit as a sequence of ``ChatCompletionChunk``.

Example:
    >>> from openai import OpenAI
    >>> from laminar_rollout.replay import ReplayInterceptor
    >>>
    >>> client = OpenAI()
    >>> interceptor = ReplayInterceptor()
    >>>
    >>> completion = interceptor.intercept(
    ...     messages,
    ...     tools,
    ...     lambda m, t: client.chat.completions.create(model="gpt-4.1", messages=m, tools=t),
    ... )
"""

import contextlib
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from threading import Lock
from typing import Any

import httpx
from lmnr import Laminar
from openai.types.chat import ChatCompletionChunk
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from laminar_rollout.cache import CachedCallRecord, PathOverride
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import ROLLOUT_SESSION_ID_ENV, ROLLOUT_STATE_SERVER_ADDRESS_ENV

from ._content import build_chat_completion, build_chat_completion_chunks
from ._overrides import apply_overrides

logger = get_rollout_logger(__name__)

LOOKUP_TIMEOUT = 10.0

type PathResolver = Callable[[], str | None]
type Messages = list[dict[str, Any]]
type Tools = list[dict[str, Any]] | None
type LiveCall = Callable[[Messages, Tools], Any]
type AsyncLiveCall = Callable[[Messages, Tools], Awaitable[Any]]
type _Hit = tuple[CachedCallRecord, str, int]


def laminar_span_path() -> str | None:
    """Dot-joined span path of the current Laminar span, or None outside a span."""
    with contextlib.suppress(Exception):
        context = Laminar.get_laminar_span_context()
        if context is not None and (span_path := getattr(context, "span_path", None)):
            return ".".join(span_path)
    return None


async def _aiter_chunks(chunks: list[ChatCompletionChunk]) -> AsyncIterator[ChatCompletionChunk]:
    for chunk in chunks:
        yield chunk


def _set_span_attributes(attributes: dict[str, Any]) -> None:
    with contextlib.suppress(Exception):
        Laminar.set_span_attributes(attributes)  # pyright: ignore[reportArgumentType]


class CacheResponse(BaseModel):
    """Cache server reply. Budgets and overrides are sent on hits and misses."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    span: CachedCallRecord | None = None
    path_to_count: dict[str, int] = Field(default_factory=dict, alias="pathToCount")
    overrides: dict[str, PathOverride] | None = None


class ReplayInterceptor:
    """Decides per model call whether to replay from the cache or call live.

    State is per instance: one interceptor per worker run keeps the call
    index of every path it has seen. Safe to share between threads.

    Args:
        session_id: Rollout session id. Defaults to ``LMNR_ROLLOUT_SESSION_ID``.
        server_address: Cache server URL. Defaults to ``LMNR_ROLLOUT_STATE_SERVER_ADDRESS``.
        path_resolver: Returns the current span path. Defaults to Laminar's span context.
        http_client: Client for synchronous lookups.
        async_http_client: Client for asynchronous lookups.
        model: Model name reported on replayed completions.
    """

    def __init__(
        self,
        *,
        session_id: str | None = None,
        server_address: str | None = None,
        path_resolver: PathResolver | None = None,
        http_client: httpx.Client | None = None,
        async_http_client: httpx.AsyncClient | None = None,
        model: str | None = None,
    ) -> None:
        self._session_id = session_id
        self._server_address = server_address
        self._path_resolver = path_resolver or laminar_span_path
        self._http_client = http_client
        self._async_http_client = async_http_client
        self._model = model

        self._lock = Lock()
        self._initialized = False
        self._current_index: dict[str, int] = {}
        self._path_to_count: dict[str, int] = {}
        self._overrides: dict[str, PathOverride] = {}

    @property
    def session_id(self) -> str | None:
        return self._session_id or os.environ.get(ROLLOUT_SESSION_ID_ENV)

    @property
    def server_address(self) -> str | None:
        address = self._server_address or os.environ.get(ROLLOUT_STATE_SERVER_ADDRESS_ENV)
        return address.rstrip("/") if address else None

    @property
    def active(self) -> bool:
        return bool(self.session_id and self.server_address)

    def current_index(self, path: str) -> int:
        with self._lock:
            return self._current_index.get(path, 0)

    def path_to_count(self) -> dict[str, int]:
        with self._lock:
            return dict(self._path_to_count)

    def override_for(self, path: str) -> PathOverride | None:
        with self._lock:
            return self._overrides.get(path)

    def intercept(self, messages: Sequence[dict[str, Any]], tools: Tools, call_live: LiveCall) -> Any:
        """Return a replayed ``ChatCompletion`` or the result of ``call_live(messages, tools)``."""
        messages, tools, hit = self._lookup(messages, tools)
        if hit is None:
            return call_live(messages, tools)
        record, path, index = hit
        self._mark_cached(path, index)
        return build_chat_completion(record, self._model)

    async def aintercept(
        self, messages: Sequence[dict[str, Any]], tools: Tools, call_live: AsyncLiveCall
    ) -> Any:
        """Async variant of :meth:`intercept`; ``call_live`` is awaited."""
        messages, tools, hit = await self._alookup(messages, tools)
        if hit is None:
            return await call_live(messages, tools)
        record, path, index = hit
        self._mark_cached(path, index)
        return build_chat_completion(record, self._model)

    def intercept_stream(self, messages: Sequence[dict[str, Any]], tools: Tools, call_live: LiveCall) -> Any:
        """Streaming variant of :meth:`intercept`.

        A replayed call returns an iterator of ``ChatCompletionChunk``;
        otherwise whatever ``call_live`` returns, typically the provider's stream.
        """
        messages, tools, hit = self._lookup(messages, tools)
        if hit is None:
            return call_live(messages, tools)
        record, path, index = hit
        self._mark_cached(path, index)
        return iter(build_chat_completion_chunks(record, self._model))

    async def aintercept_stream(
        self, messages: Sequence[dict[str, Any]], tools: Tools, call_live: AsyncLiveCall
    ) -> Any:
        """Async streaming variant; a replayed call returns an async iterator of chunks."""
        messages, tools, hit = await self._alookup(messages, tools)
        if hit is None:
            return await call_live(messages, tools)
        record, path, index = hit
        self._mark_cached(path, index)
        return _aiter_chunks(build_chat_completion_chunks(record, self._model))

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()

    async def aclose(self) -> None:
        if self._async_http_client is not None:
            await self._async_http_client.aclose()

    def _lookup(self, messages: Sequence[dict[str, Any]], tools: Tools) -> tuple[Messages, Tools, _Hit | None]:
        """Apply overrides and fetch the record to replay, if the call is within budget."""
        path = self._session_path()
        if path is None:
            return list(messages), tools, None

        if not self._initialized:
            self._absorb(self._post_lookup("", 0))
            self._initialized = True

        messages, tools = apply_overrides(self.override_for(path), messages, tools)
        index, replay = self._claim_index(path)
        if replay and (record := self._absorb(self._post_lookup(path, index))) is not None:
            return messages, tools, (record, path, index)
        return messages, tools, None

    async def _alookup(
        self, messages: Sequence[dict[str, Any]], tools: Tools
    ) -> tuple[Messages, Tools, _Hit | None]:
        path = self._session_path()
        if path is None:
            return list(messages), tools, None

        if not self._initialized:
            self._absorb(await self._apost_lookup("", 0))
            self._initialized = True

        messages, tools = apply_overrides(self.override_for(path), messages, tools)
        index, replay = self._claim_index(path)
        if replay and (record := self._absorb(await self._apost_lookup(path, index))) is not None:
            return messages, tools, (record, path, index)
        return messages, tools, None

    def _session_path(self) -> str | None:
        if not self.active:
            return None
        path = self._path_resolver()
        if not path:
            return None
        _set_span_attributes({"lmnr.rollout.session_id": self.session_id})
        return path

    def _claim_index(self, path: str) -> tuple[int, bool]:
        """Take the next index of ``path``; True when it falls within the replay budget."""
        with self._lock:
            index = self._current_index.get(path, 0)
            self._current_index[path] = index + 1
            return index, index < self._path_to_count.get(path, 0)

    def _mark_cached(self, path: str, index: int) -> None:
        logger.debug("Replaying cached call %s[%d]", path, index)
        _set_span_attributes({
            "lmnr.span.type": "CACHED",
            "lmnr.span.original_type": "LLM",
            "lmnr.rollout.session_id": self.session_id,
            "lmnr.rollout.path.count": index + 1,
        })

    def _absorb(self, payload: Any) -> CachedCallRecord | None:
        """Refresh budgets and overrides from a server reply and return its record, if any."""
        if payload is None:
            return None
        try:
            response = CacheResponse.model_validate(payload)
        except ValidationError:
            logger.debug("Ignoring malformed cache server reply", exc_info=True)
            return None
        with self._lock:
            self._path_to_count = dict(response.path_to_count)
            if response.overrides is not None:
                self._overrides = dict(response.overrides)
        return response.span

    @staticmethod
    def _reply_payload(response: httpx.Response) -> Any:
        if response.status_code not in (200, 404):
            logger.debug("Cache server returned %d", response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _post_lookup(self, path: str, index: int) -> Any:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=LOOKUP_TIMEOUT)
        try:
            response = self._http_client.post(f"{self.server_address}/cached", json={"path": path, "index": index})
        except httpx.HTTPError as e:
            logger.debug("Cache lookup for %s[%d] failed: %s", path, index, e)
            return None
        return self._reply_payload(response)

    async def _apost_lookup(self, path: str, index: int) -> Any:
        if self._async_http_client is None:
            self._async_http_client = httpx.AsyncClient(timeout=LOOKUP_TIMEOUT)
        try:
            response = await self._async_http_client.post(
                f"{self.server_address}/cached", json={"path": path, "index": index}
            )
        except httpx.HTTPError as e:
            logger.debug("Cache lookup for %s[%d] failed: %s", path, index, e)
            return None
        return self._reply_payload(response)
