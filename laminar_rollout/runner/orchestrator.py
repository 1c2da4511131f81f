"""Handling of one run event: cache back-fill, worker configuration and execution."""

import json
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from laminar_rollout.backend import HistoricalSpan, RolloutBackendClient, SessionStatus
from laminar_rollout.cache import CachedCallRecord, CacheStore
from laminar_rollout.exceptions import BackendError, WorkerError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import (
    ROLLOUT_SESSION_ID_ENV,
    ROLLOUT_STATE_SERVER_ADDRESS_ENV,
    WorkerArgs,
    WorkerConfig,
)
from laminar_rollout.session import RunRequest

from .subprocess import SubprocessManager

logger = get_rollout_logger(__name__)


def decode_arg(value: Any) -> Any:
    """JSON-decode string arguments that parse, keep everything else as-is."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def decode_args(args: WorkerArgs) -> WorkerArgs:
    if isinstance(args, list):
        return [decode_arg(value) for value in args]
    return {key: decode_arg(value) for key, value in args.items()}


def to_cached_record(span: HistoricalSpan) -> CachedCallRecord:
    """Convert a stored span row into a replayable record.

    ``input`` and ``attributes`` are JSON-decoded when they are strings.
    ``output`` stays a string: string rows are kept byte-for-byte, anything
    else is re-serialized to JSON.
    """
    span_input = decode_arg(span.input)

    if isinstance(span.output, str):
        output = span.output
    else:
        try:
            output = json.dumps(span.output)
        except (TypeError, ValueError):
            output = str(span.output)

    attributes = span.attributes
    if isinstance(attributes, str):
        try:
            attributes = json.loads(attributes)
        except ValueError:
            attributes = {}
    if not isinstance(attributes, dict):
        attributes = {}

    return CachedCallRecord(name=span.name, input=span_input, output=output, attributes=attributes)


def group_cached_records(
    spans: Sequence[HistoricalSpan], path_to_count: dict[str, int]
) -> dict[str, list[CachedCallRecord]]:
    """Keep the earliest ``path_to_count[path]`` spans of each path, in order."""
    by_path: defaultdict[str, list[HistoricalSpan]] = defaultdict(list)
    for span in spans:
        by_path[span.path].append(span)
    return {
        path: [to_cached_record(span) for span in path_spans[: path_to_count.get(path, 0)]]
        for path, path_spans in by_path.items()
    }


class RunOrchestrator:
    """Executes run events for one dev session.

    The orchestrator itself is not reentrant; the session makes sure only one
    :meth:`handle_run` is in flight.
    """

    def __init__(
        self,
        *,
        session_id: str,
        store: CacheStore,
        backend: RolloutBackendClient,
        subprocess_manager: SubprocessManager,
        cache_server_address: str,
        cache_server_port: int,
        worker_command: Sequence[str],
        base_url: str,
        http_port: int,
        grpc_port: int,
        project_api_key: str | None = None,
        file_path: str | None = None,
        module_path: str | None = None,
        function_name: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.store = store
        self.backend = backend
        self.subprocess_manager = subprocess_manager
        self.cache_server_address = cache_server_address
        self.cache_server_port = cache_server_port
        self.worker_command = list(worker_command)
        self.base_url = base_url
        self.http_port = http_port
        self.grpc_port = grpc_port
        self.project_api_key = project_api_key
        self.file_path = file_path
        self.module_path = module_path
        self.function_name = function_name

    async def handle_run(self, request: RunRequest) -> None:
        """Populate the cache, run the worker and report the session status.

        Never raises for run failures: they are logged and the session is
        reported FINISHED so the dashboard can start another run.
        """
        logger.debug("Received run event")
        try:
            await self.populate_cache(request)
        except Exception:
            logger.exception("Failed to populate the replay cache, running without replay")

        config = self.build_worker_config(request)
        await self._report_status(SessionStatus.RUNNING)

        try:
            result = await self.subprocess_manager.execute(self.worker_command, config)
        except WorkerError as e:
            logger.error("Rollout run failed: %s", e)
        except Exception:
            logger.exception("Unexpected error while running the worker")
        else:
            logger.info("Rollout run finished")
            logger.debug("Run result: %r", result)

        await self._report_status(SessionStatus.FINISHED)

    async def populate_cache(self, request: RunRequest) -> int:
        """Reset the store and back-fill it from ``request.trace_id``.

        Returns:
            Number of cached records.
        """
        self.store.clear()
        self.store.set_metadata({}, request.overrides)

        trace_id = (request.trace_id or "").strip()
        if not trace_id:
            logger.info("No spans in cache, starting fresh")
            return 0

        paths = list(request.path_to_count)
        if not paths:
            logger.info("No spans to cache, starting fresh")
            return 0

        logger.debug("Querying spans from trace %s", trace_id)
        try:
            spans = await self.backend.fetch_trace_spans(trace_id, paths)
        except BackendError as e:
            logger.warning("Could not load spans of trace %s, running without replay: %s", trace_id, e)
            return 0
        logger.debug("Received %d spans from backend", len(spans))

        cached = 0
        for path, records in group_cached_records(spans, request.path_to_count).items():
            for index, record in enumerate(records):
                self.store.set(path, index, record)
            logger.info("Cached %d spans for path: %s", len(records), path)
            cached += len(records)

        self.store.set_metadata(request.path_to_count, request.overrides)
        return cached

    def build_worker_config(self, request: RunRequest) -> WorkerConfig:
        return WorkerConfig(
            file_path=None if self.module_path else self.file_path,
            module_path=self.module_path,
            function_name=self.function_name,
            args=decode_args(request.args),
            env={
                ROLLOUT_SESSION_ID_ENV: self.session_id,
                ROLLOUT_STATE_SERVER_ADDRESS_ENV: self.cache_server_address,
            },
            cache_server_port=self.cache_server_port,
            base_url=self.base_url,
            project_api_key=self.project_api_key,
            http_port=self.http_port,
            grpc_port=self.grpc_port,
        )

    async def _report_status(self, status: SessionStatus) -> None:
        try:
            await self.backend.set_session_status(self.session_id, status)
        except BackendError as e:
            logger.error("Error setting rollout session status: %s", e)
