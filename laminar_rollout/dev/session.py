"""Dev session: wires the stream client, cache server and worker runner together.

@public

One :class:`DevSession` serves one rollout function to the dashboard for the
lifetime of the CLI process. Startup order is cache server, function
discovery, orchestrator, then the session stream. Runs are handled as
separate tasks, one at a time, so heartbeats keep flowing while a worker
executes. Modified source files under the watched directory stop the running
worker and re-discover the function before the next run.
"""

import asyncio
import contextlib
import os
import signal
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import httpx

from laminar_rollout.backend import RolloutBackendClient
from laminar_rollout.cache import CacheServer, CacheStore
from laminar_rollout.exceptions import BackendError, CacheServerError, WorkerSpawnError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import FunctionMetadata
from laminar_rollout.runner import RunOrchestrator, SubprocessManager, discover_function_metadata, get_worker_command
from laminar_rollout.session import HandshakeEvent, RunRequest, SessionStreamClient
from laminar_rollout.settings import get_frontend_url, resolve_http_port, settings

from ._watch import watch_sources

logger = get_rollout_logger(__name__)

SHUTDOWN_TIMEOUT = 5.0


class DevSession:
    """Serve a rollout function to the dashboard until interrupted.

    Args:
        file_path: Python file holding the rollout function.
        module_path: Importable module holding the rollout function. Wins over ``file_path``.
        function_name: Function to serve when the target defines several.
        project_api_key: Laminar project key. Defaults to ``LMNR_PROJECT_API_KEY``.
        base_url: Backend URL. Defaults to ``LMNR_BASE_URL``.
        http_port: Backend HTTP port override.
        grpc_port: gRPC port handed to the worker.
        frontend_port: Dashboard port for local backends.
        command: Custom worker executable.
        command_args: Arguments of ``command``.
        session_id: Session id. A random UUID by default.
        cache_start_port: First port the cache server tries.
        transport: httpx transport for backend and stream traffic, for tests.
        watch: Reload on source changes while :meth:`run` is listening.
        watch_path: Directory to watch. The working directory by default.

    Example:
        >>> session = DevSession(file_path="agent.py")
        >>> exit_code = await session.run()
    """

    def __init__(
        self,
        *,
        file_path: str | None = None,
        module_path: str | None = None,
        function_name: str | None = None,
        project_api_key: str | None = None,
        base_url: str | None = None,
        http_port: int | None = None,
        grpc_port: int | None = None,
        frontend_port: int | None = None,
        command: str | None = None,
        command_args: Sequence[str] | None = None,
        session_id: str | None = None,
        cache_start_port: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        watch: bool = True,
        watch_path: str | Path | None = None,
    ) -> None:
        self.file_path = file_path
        self.module_path = module_path
        self.function_name = function_name
        self.project_api_key = project_api_key or settings.lmnr_project_api_key
        self.base_url = base_url or settings.lmnr_base_url
        self.http_port = resolve_http_port(self.base_url, http_port or settings.lmnr_http_port)
        self.grpc_port = grpc_port or settings.lmnr_grpc_port
        self.frontend_port = frontend_port or settings.lmnr_frontend_port
        self.command = command
        self.command_args = list(command_args or [])
        self.session_id = session_id or str(uuid.uuid4())
        self.watch = watch
        self.watch_path = watch_path or os.getcwd()

        self.store = CacheStore()
        self.cache_server = CacheServer(
            self.store, start_port=cache_start_port or settings.lmnr_rollout_cache_start_port
        )
        self.subprocess_manager = SubprocessManager()
        self.backend = RolloutBackendClient(
            self.base_url, self.project_api_key, http_port=self.http_port, transport=transport
        )
        self.metadata: FunctionMetadata | None = None
        self.orchestrator: RunOrchestrator | None = None
        self.stream: SessionStreamClient | None = None

        self._transport = transport
        self._run_task: asyncio.Task[None] | None = None
        self._reload_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._watch_stop = asyncio.Event()
        self._announced = False
        self._closed = False

    def dashboard_url(self, project_id: str) -> str:
        frontend = get_frontend_url(self.base_url, self.frontend_port)
        return f"{frontend}/project/{project_id}/rollout-sessions/{self.session_id}"

    async def start(self) -> None:
        """Start the local services and build the stream client.

        Raises:
            ValueError: No project key, no target, or an unsupported file type.
            CacheServerError: No free port for the cache server.
            WorkerSpawnError: Metadata discovery could not start.
        """
        if not self.project_api_key:
            raise ValueError("Project API key is required. Set LMNR_PROJECT_API_KEY or pass --project-api-key")
        worker_command = get_worker_command(self.file_path, self.module_path, self.command, self.command_args)

        port = await self.cache_server.start()
        logger.info("Cache server listening on %s", self.cache_server.address)

        self.metadata = await discover_function_metadata(
            file_path=self.file_path, module_path=self.module_path, function_name=self.function_name
        )
        logger.info("Serving rollout function '%s'", self.metadata.name)

        self.orchestrator = RunOrchestrator(
            session_id=self.session_id,
            store=self.store,
            backend=self.backend,
            subprocess_manager=self.subprocess_manager,
            cache_server_address=self.cache_server.address,
            cache_server_port=port,
            worker_command=worker_command,
            base_url=self.base_url,
            http_port=self.http_port,
            grpc_port=self.grpc_port,
            project_api_key=self.project_api_key,
            file_path=self.file_path,
            module_path=self.module_path,
            function_name=self.function_name,
        )

        self.stream = SessionStreamClient(
            base_url=self.base_url,
            project_api_key=self.project_api_key,
            session_id=self.session_id,
            name=self.metadata.name,
            params=self.metadata.params,
            http_port=self.http_port,
            transport=self._transport,
        )
        self.stream.on("connected", self._on_connected)
        self.stream.on("handshake", self._on_handshake)
        self.stream.on("heartbeat_timeout", self._on_heartbeat_timeout)
        self.stream.on("reconnecting", self._on_reconnecting)
        self.stream.on("error", self._on_error)
        self.stream.on("run", self._on_run)
        self.stream.on("stop", self._on_stop)

    async def run(self) -> int:
        """Start, listen until SIGINT/SIGTERM or :meth:`request_shutdown`, then shut down.

        Returns:
            Process exit code: 0 after a clean shutdown, 1 when startup failed.
        """
        try:
            await self.start()
        except (ValueError, CacheServerError, WorkerSpawnError) as e:
            logger.error("Failed to start dev session: %s", e)
            await self.shutdown()
            return 1

        assert self.stream is not None
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_shutdown)

        if self.watch:
            self._watch_task = loop.create_task(self._watch_sources())

        logger.info("Dev session %s started. Press Ctrl+C to stop.", self.session_id)
        try:
            await self.stream.connect_and_listen()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)
            self.request_shutdown()
            if self._shutdown_task is not None:
                await self._shutdown_task
        return 0

    def request_shutdown(self) -> None:
        """Begin shutdown once. Safe to call from signal handlers."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Kill the worker, delete the backend session, stop listening and close the cache server.

        ``timeout`` bounds the waits on the in-flight run and the session
        deletion. The stream, the cache server and the backend client are
        closed regardless.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down...")
        deadline = asyncio.get_running_loop().time() + timeout

        try:
            self.subprocess_manager.kill()
            pending = {
                task
                for task in (self._run_task, self._reload_task, self._watch_task)
                if task is not None and not task.done()
            }
            self._watch_stop.set()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending, timeout=max(deadline - asyncio.get_running_loop().time(), 0))

            await self._delete_session(max(deadline - asyncio.get_running_loop().time(), 0))
        finally:
            if self.stream is not None:
                self.stream.shutdown()
            await self.cache_server.close()
            await self.backend.aclose()

    async def _delete_session(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self.backend.delete_session(self.session_id), timeout)
        except TimeoutError:
            logger.warning("Deleting rollout session %s did not complete within %.1fs", self.session_id, timeout)
        except BackendError as e:
            logger.debug("Could not delete rollout session %s: %s", self.session_id, e)

    async def _watch_sources(self) -> None:
        try:
            await watch_sources(self.watch_path, self.schedule_reload, self._watch_stop)
        except Exception:
            logger.exception("File watcher failed, reload on change is disabled")

    def schedule_reload(self) -> None:
        """Kill a running worker and re-discover the served function before the next run."""
        if self.subprocess_manager.kill():
            logger.info("Source changed, stopped the running worker")
        if self._reload_task is None or self._reload_task.done():
            self._reload_task = asyncio.get_running_loop().create_task(self._rediscover())

    async def _rediscover(self) -> None:
        try:
            metadata = await discover_function_metadata(
                file_path=self.file_path, module_path=self.module_path, function_name=self.function_name
            )
        except WorkerSpawnError as e:
            logger.error("Failed to re-discover rollout function: %s", e)
            return

        if metadata == self.metadata:
            return
        self.metadata = metadata
        logger.info("Rollout function changed, now serving '%s'", metadata.name)
        if self.stream is not None:
            self.stream.update_metadata(metadata.params, metadata.name)

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def _on_run(self, request: RunRequest) -> None:
        if self.is_running:
            logger.warning("Already processing a run event, skipping new run")
            return
        self._run_task = asyncio.get_running_loop().create_task(self._process_run(request))

    async def _process_run(self, request: RunRequest) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            await self._reload_task
        assert self.orchestrator is not None
        await self.orchestrator.handle_run(request)

    def _on_stop(self) -> None:
        if self.subprocess_manager.kill():
            logger.info("Stopping the running rollout")
        else:
            logger.debug("Stop requested while no rollout is running")

    def _on_connected(self) -> None:
        logger.debug("Connected to rollout session %s", self.session_id)

    def _on_handshake(self, event: HandshakeEvent) -> None:
        if self._announced:
            return
        self._announced = True
        logger.info("View your session at %s", self.dashboard_url(event.project_id))

    def _on_heartbeat_timeout(self) -> None:
        logger.debug("No heartbeat received, reconnecting")

    def _on_reconnecting(self) -> None:
        logger.info("Connection lost, reconnecting...")

    def _on_error(self, error: Any) -> None:
        logger.warning("Session stream error: %s", error)
