"""Reconnecting event stream between a dev session and the Laminar backend.

The session announces its rollout function with a streamed POST and then
receives control events (``run``, ``stop``, ``handshake``, ``heartbeat``) as
server-sent events. A watchdog forces a reconnect when heartbeats stop
arriving; network errors and stream ends reconnect after a fixed delay.
"""

import asyncio
import contextlib
import inspect
import time
from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from laminar_rollout.backend import auth_headers
from laminar_rollout.cache import PathOverride
from laminar_rollout.exceptions import StreamConnectionError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import RolloutParam
from laminar_rollout.settings import resolve_base_http_url

from ._sse import ServerSentEvent, SSEDecoder

logger = get_rollout_logger(__name__)

HEARTBEAT_INTERVAL = 5.0
MAX_MISSED_HEARTBEATS = 3
RECONNECT_DELAY = 1.0
CONNECT_TIMEOUT = 10.0

type EventHandler = Callable[..., Any]
type StreamEvent = Literal[
    "connected",
    "handshake",
    "heartbeat",
    "run",
    "stop",
    "error",
    "reconnecting",
    "heartbeat_timeout",
]


class StreamState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    SHUTDOWN = "shutdown"


class HandshakeEvent(BaseModel):
    """First event of a connection: identifies the project and session."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    project_id: str
    session_id: str


class RunRequest(BaseModel):
    """A request from the dashboard to execute the rollout function once.

    ``path_to_count`` is the replay budget: how many recorded calls to replay
    per span path before going live.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    trace_id: str | None = None
    path_to_count: dict[str, int] = Field(default_factory=dict)
    args: list[Any] | dict[str, Any] = Field(default_factory=dict)
    overrides: dict[str, PathOverride] = Field(default_factory=dict)

    @field_validator("path_to_count", "args", "overrides", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class SessionStreamClient:
    """Streams control events for one rollout session.

    Register handlers with :meth:`on` before calling :meth:`connect_and_listen`.
    Handlers may be plain callables or coroutine functions; coroutine results
    run as separate tasks so a slow handler never stalls heartbeat processing.

    Example:
        >>> client = SessionStreamClient(
        ...     base_url="https://api.lmnr.ai",
        ...     project_api_key=key,
        ...     session_id=session_id,
        ...     name="agent",
        ...     params=[],
        ... )
        >>> client.on("run", handle_run)
        >>> await client.connect_and_listen()  # returns after shutdown()
    """

    def __init__(
        self,
        *,
        base_url: str,
        project_api_key: str,
        session_id: str,
        name: str,
        params: list[RolloutParam],
        http_port: int | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        max_missed_heartbeats: int = MAX_MISSED_HEARTBEATS,
        reconnect_delay: float = RECONNECT_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session_id = session_id
        self.name = name
        self.params = list(params)
        self.state = StreamState.IDLE

        self._url = f"{resolve_base_http_url(base_url, http_port)}/v1/rollouts/{session_id}"
        self._headers = {**auth_headers(project_api_key), "Accept": "text/event-stream"}
        self._heartbeat_interval = heartbeat_interval
        self._max_missed_heartbeats = max_missed_heartbeats
        self._reconnect_delay = reconnect_delay
        self._transport = transport

        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._shutdown_event = asyncio.Event()
        self._restart_event = asyncio.Event()
        self._last_heartbeat = time.monotonic()

    def on(self, event: StreamEvent, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def update_metadata(self, params: list[RolloutParam], name: str) -> None:
        """Replace the announced function and reconnect so the backend sees it."""
        self.params = list(params)
        self.name = name
        self._restart_event.set()

    def shutdown(self) -> None:
        """Stop listening. Safe to call repeatedly and from any handler."""
        if self._shutdown_event.is_set():
            return
        self.state = StreamState.SHUTDOWN
        self._shutdown_event.set()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown_event.is_set()

    async def connect_and_listen(self) -> None:
        """Connect and dispatch events until :meth:`shutdown` is called."""
        if self.is_shutdown:
            return

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(CONNECT_TIMEOUT, read=None), transport=self._transport
        ) as client:
            while not self.is_shutdown:
                self.state = StreamState.CONNECTING
                restart_now = await self._run_connection(client)
                if self.is_shutdown:
                    break
                if restart_now:
                    continue

                self.state = StreamState.RECONNECTING
                self._emit("reconnecting")
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._shutdown_event.wait(), self._reconnect_delay)

        self.state = StreamState.SHUTDOWN

    async def _run_connection(self, client: httpx.AsyncClient) -> bool:
        """Hold one connection open. Returns True when the next attempt should skip the delay."""
        self._restart_event.clear()
        stream_task = asyncio.create_task(self._consume_stream(client))
        watchdog_task = asyncio.create_task(self._watch_heartbeat())
        restart_task = asyncio.create_task(self._restart_event.wait())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        tasks = {stream_task, watchdog_task, restart_task, shutdown_task}

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if stream_task in done and not stream_task.cancelled():
            if (error := stream_task.exception()) is not None:
                self._emit("error", error)
            else:
                logger.debug("Event stream closed by the backend")
            return False

        if restart_task in done:
            logger.debug("Reconnecting to announce updated function metadata")
        return watchdog_task in done or restart_task in done

    async def _consume_stream(self, client: httpx.AsyncClient) -> None:
        self._last_heartbeat = time.monotonic()
        body = {"name": self.name, "params": [p.model_dump(exclude_none=True) for p in self.params]}

        async with client.stream("POST", self._url, json=body, headers=self._headers) as response:
            if not response.is_success:
                await response.aread()
                raise StreamConnectionError(
                    f"SSE connection failed: {response.status_code} {response.reason_phrase}"
                )

            self.state = StreamState.CONNECTED
            self._emit("connected")

            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                for event in decoder.feed_line(line.rstrip("\r\n")):
                    self._dispatch(event)
            for event in decoder.flush():
                self._dispatch(event)

    async def _watch_heartbeat(self) -> None:
        max_silence = self._heartbeat_interval * self._max_missed_heartbeats
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if time.monotonic() - self._last_heartbeat > max_silence:
                logger.debug("No heartbeat for %.1fs", time.monotonic() - self._last_heartbeat)
                self._emit("heartbeat_timeout")
                return

    def _dispatch(self, event: ServerSentEvent) -> None:
        try:
            match event.event:
                case "heartbeat":
                    self._last_heartbeat = time.monotonic()
                    self._emit("heartbeat")
                case "stop":
                    self._emit("stop")
                case "run":
                    self._emit("run", RunRequest.model_validate_json(event.data))
                case "handshake":
                    self._emit("handshake", HandshakeEvent.model_validate_json(event.data))
                case other:
                    logger.debug("Ignoring unknown stream event %r", other)
        except ValidationError as e:
            self._emit("error", e)

    def _emit(self, event: StreamEvent, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
            except Exception:
                logger.exception("Handler for %r event failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and (error := task.exception()) is not None:
            logger.error("Async event handler failed", exc_info=error)
