"""Loopback HTTP service that exposes the cache store to the worker process."""

import asyncio
import contextlib
import socket
from collections.abc import Iterator
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt, StrictStr
from starlette.exceptions import HTTPException as StarletteHTTPException

from laminar_rollout.exceptions import CacheServerError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.settings import settings

from .store import CacheStore, PathOverride

logger = get_rollout_logger(__name__)

CACHE_SERVER_HOST = "127.0.0.1"
MAX_PORT_ATTEMPTS = 100
SHUTDOWN_TIMEOUT = 3.0


class CacheLookup(BaseModel):
    """Body of ``POST /cached``."""

    path: StrictStr
    index: StrictInt = Field(ge=0)


def _dump_overrides(overrides: dict[str, PathOverride]) -> dict[str, Any]:
    return {path: override.model_dump(exclude_none=True) for path, override in overrides.items()}


def create_cache_app(store: CacheStore) -> FastAPI:
    """Build the FastAPI application serving lookups from ``store``."""
    app = FastAPI(title="laminar-rollout cache", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse({"error": "Not found"}, status_code=404)
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/cached")
    async def cached(request: Request) -> JSONResponse:
        try:
            lookup = CacheLookup.model_validate(await request.json())
        except ValueError:
            # ValidationError is a ValueError too
            return JSONResponse({"error": "Invalid request body"}, status_code=400)

        path_to_count, overrides = store.metadata()
        body: dict[str, Any] = {
            "pathToCount": path_to_count,
            "overrides": _dump_overrides(overrides),
        }

        record = store.get(lookup.path, lookup.index)
        if record is None:
            logger.debug("Cache miss for %s[%d]", lookup.path, lookup.index)
            return JSONResponse({"error": "Cache miss", **body}, status_code=404)

        logger.debug("Cache hit for %s[%d]", lookup.path, lookup.index)
        return JSONResponse({"span": record.model_dump(mode="json"), **body})

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the owning session."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class CacheServer:
    """Runs the cache app on the first free loopback port at or above ``start_port``.

    The bound socket is handed to uvicorn as-is, so the port cannot be
    taken between the check and the bind.

    Example:
        >>> server = CacheServer(CacheStore())
        >>> port = await server.start()
        >>> server.address
        'http://127.0.0.1:35667'
        >>> await server.close()
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        start_port: int | None = None,
        max_attempts: int = MAX_PORT_ATTEMPTS,
    ) -> None:
        self.store = store if store is not None else CacheStore()
        self.app = create_cache_app(self.store)
        self._start_port = start_port if start_port is not None else settings.lmnr_rollout_cache_start_port
        self._max_attempts = max_attempts
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self.port: int | None = None

    @property
    def address(self) -> str:
        if self.port is None:
            raise CacheServerError("Cache server is not running")
        return f"http://{CACHE_SERVER_HOST}:{self.port}"

    def _bind_first_free_port(self) -> socket.socket:
        last_error: OSError | None = None
        for port in range(self._start_port, self._start_port + self._max_attempts):
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((CACHE_SERVER_HOST, port))
            except OSError as e:
                sock.close()
                last_error = e
                continue
            return sock
        raise CacheServerError(
            f"No free port in range {self._start_port}-{self._start_port + self._max_attempts - 1}"
        ) from last_error

    async def start(self) -> int:
        """Bind, start serving and return the bound port."""
        if self._task is not None:
            raise CacheServerError("Cache server already started")

        sock = self._bind_first_free_port()
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app, log_config=None, log_level="warning", access_log=False, lifespan="off"
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                error = self._task.exception() if not self._task.cancelled() else None
                self._reset()
                raise CacheServerError("Cache server failed to start") from error
            await asyncio.sleep(0.01)

        logger.debug("Cache server listening on %s", self.address)
        return self.port

    async def close(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Stop serving, waiting at most ``timeout`` seconds for uvicorn to exit."""
        if self._server is None or self._task is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except TimeoutError:
            logger.warning("Cache server did not stop in %.1fs, forcing exit", timeout)
            self._server.force_exit = True
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._reset()
        logger.debug("Cache server closed")

    def _reset(self) -> None:
        if self._socket is not None:
            self._socket.close()
        self._socket = None
        self._server = None
        self._task = None
        self.port = None
