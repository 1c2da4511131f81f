"""Worker process entry: runs one rollout function and reports over stdout.

Run mode reads a single :class:`WorkerConfig` line from stdin and writes
``__LMNR_WORKER__:``-prefixed protocol messages to stdout. Anything else the
user's code prints goes to stdout unprefixed and is forwarded as-is by the
parent.

Discover mode (``discover --file F | --module M [--function N]``) prints the
served function's metadata as an ``LMNR_METADATA:`` line and exits.
"""

import asyncio
import inspect
import json
import os
import signal
import sys
import traceback
from collections.abc import Awaitable, Sequence
from types import FrameType
from typing import Any, TextIO

from lmnr import Laminar
from pydantic_core import to_jsonable_python
from pydantic_settings import BaseSettings, SettingsConfigDict

from laminar_rollout.exceptions import WorkerProtocolError
from laminar_rollout.protocol import (
    LogLevel,
    WorkerConfig,
    WorkerErrorMessage,
    WorkerLogMessage,
    WorkerMessage,
    WorkerResultMessage,
    decode_config,
    encode_message,
)
from laminar_rollout.runner.metadata import METADATA_PROTOCOL_PREFIX
from laminar_rollout.settings import resolve_base_http_url, strip_port

from .registry import load_rollout_functions


class _LineTrackingStdout:
    """Proxy for ``sys.stdout`` that remembers whether the last write ended its line."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self.at_line_start = True

    def write(self, text: str) -> int:
        if text:
            self.at_line_start = text.endswith("\n")
        return self._stream.write(text)

    def flush(self) -> None:
        self._stream.flush()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._stream, name)


def send_message(message: WorkerMessage) -> None:
    # Protocol messages must start a line; user output may have left one open.
    prefix = "" if getattr(sys.stdout, "at_line_start", True) else "\n"
    sys.stdout.write(prefix + encode_message(message) + "\n")
    sys.stdout.flush()


def worker_log(level: LogLevel, message: str) -> None:
    """Log through the parent's logger."""
    send_message(WorkerLogMessage(level=level, message=message))


def _initialize_laminar(config: WorkerConfig) -> None:
    if not config.project_api_key or Laminar.is_initialized():
        return
    worker_log("debug", "Initializing Laminar...")
    Laminar.initialize(
        project_api_key=config.project_api_key,
        base_url=strip_port(config.base_url),
        base_http_url=resolve_base_http_url(config.base_url, config.http_port),
        http_port=config.http_port,
        grpc_port=config.grpc_port,
    )


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


async def _drain_async_iterator(iterator: Any) -> list[Any]:
    return [item async for item in iterator]


def _consume_result(result: Any) -> Any:
    """Resolve awaitables and drain generators so all traced work completes."""
    if inspect.isawaitable(result):
        result = asyncio.run(_await(result))
    if inspect.isasyncgen(result):
        worker_log("debug", "Consuming async generator result...")
        return asyncio.run(_drain_async_iterator(result))
    if inspect.isgenerator(result):
        worker_log("debug", "Consuming generator result...")
        return list(result)
    return result


def run_worker(config: WorkerConfig) -> Any:
    """Execute the configured rollout function and return its result."""
    os.environ.update(config.env)

    worker_log("debug", "Loading rollout functions...")
    registry = load_rollout_functions(file_path=config.file_path, module_path=config.module_path)
    selected = registry.select(config.function_name)
    worker_log("debug", f"Selected function: {selected.name}")

    _initialize_laminar(config)

    args, kwargs = selected.order_args(config.args)
    worker_log(
        "info",
        f"Calling function {selected.name} with args: {json.dumps(to_jsonable_python(config.args, fallback=str))}",
    )
    result = _consume_result(selected.fn(*args, **kwargs))
    worker_log("info", "Rollout function completed successfully")
    return result


def _flush_laminar() -> None:
    if Laminar.is_initialized():
        Laminar.flush()


def _handle_shutdown_signal(signum: int, frame: FrameType | None) -> None:
    if Laminar.is_initialized():
        try:
            Laminar.shutdown()
        except Exception as e:
            worker_log("error", f"Error during Laminar shutdown: {e}")
    sys.exit(0)


def run_from_stdin() -> int:
    """Read the config line, run, report. Returns the process exit code."""
    stdout = sys.stdout
    sys.stdout = _LineTrackingStdout(stdout)
    try:
        return _run_from_stdin()
    finally:
        sys.stdout = stdout


def _run_from_stdin() -> int:
    line = sys.stdin.readline()
    if not line.strip():
        send_message(WorkerErrorMessage(error="No configuration received on stdin"))
        return 1

    try:
        config = decode_config(line)
    except WorkerProtocolError as e:
        send_message(WorkerErrorMessage(error=f"Failed to parse config: {e}"))
        return 1

    try:
        result = run_worker(config)
    except Exception as e:
        worker_log("error", f"Error in worker: {e}")
        _flush_laminar()
        send_message(WorkerErrorMessage(error=str(e) or type(e).__name__, stack=traceback.format_exc()))
        return 1

    _flush_laminar()
    send_message(WorkerResultMessage(data=to_jsonable_python(result, fallback=str)))
    return 0


class DiscoverOptions(BaseSettings):
    """Options of the ``discover`` subcommand."""

    model_config = SettingsConfigDict(
        env_prefix="LAMINAR_ROLLOUT_DISCOVER_",
        cli_kebab_case=True,
        cli_exit_on_error=True,
        cli_prog_name="laminar_rollout.worker discover",
        frozen=True,
        extra="ignore",
    )

    file: str | None = None
    module: str | None = None
    function: str | None = None


def discover(argv: Sequence[str]) -> int:
    """Print the metadata of the function that would be served."""
    options = DiscoverOptions(_cli_parse_args=list(argv))  # pyright: ignore[reportCallIssue]
    if not options.file and not options.module:
        print("Either --file or --module is required", file=sys.stderr)
        return 2

    try:
        registry = load_rollout_functions(file_path=options.file, module_path=options.module)
        selected = registry.select(options.function)
    except Exception:
        traceback.print_exc()
        return 1

    print(METADATA_PROTOCOL_PREFIX + selected.metadata.model_dump_json(exclude_none=True), flush=True)
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == "discover":
        sys.exit(discover(args[1:]))

    signal.signal(signal.SIGTERM, _handle_shutdown_signal)
    signal.signal(signal.SIGINT, _handle_shutdown_signal)
    sys.exit(run_from_stdin())
