"""Worker process management.

Spawns the worker, hands it its configuration on stdin and demultiplexes
its stdout into protocol messages and plain user output.
"""

import asyncio
import codecs
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any, TextIO

from laminar_rollout.exceptions import (
    WorkerExitError,
    WorkerProtocolError,
    WorkerSignalError,
    WorkerSpawnError,
)
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import (
    WORKER_MESSAGE_PREFIX,
    WorkerConfig,
    WorkerErrorMessage,
    WorkerLogMessage,
    WorkerResultMessage,
    encode_config,
    parse_output_line,
)

logger = get_rollout_logger(__name__)

KILL_GRACE_PERIOD = 5.0
OUTPUT_DRAIN_TIMEOUT = 0.5
EXIT_POLL_INTERVAL = 0.1
STDOUT_CHUNK_SIZE = 64 * 1024
STDERR_CHUNK_SIZE = 4096

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class _RunState:
    def __init__(self) -> None:
        self.result: Any = None
        self.has_error = False


class SubprocessManager:
    """Runs one worker process at a time and tracks it so it can be killed.

    Args:
        stdout: Sink for the worker's unprefixed stdout lines.
        stderr: Sink for the worker's stderr.
        kill_grace_period: Seconds between SIGTERM and SIGKILL in :meth:`kill`.
    """

    def __init__(
        self,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        kill_grace_period: float = KILL_GRACE_PERIOD,
    ) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._kill_grace_period = kill_grace_period
        self._process: asyncio.subprocess.Process | None = None
        self._kill_handle: asyncio.TimerHandle | None = None

    def is_running(self) -> bool:
        return self._process is not None

    async def execute(self, command: Sequence[str], config: WorkerConfig) -> Any:
        """Run the worker to completion and return the data of its result message.

        Settles when the worker process exits, even if a process it started
        still holds its stdout or stderr open. Output arriving later than
        ``OUTPUT_DRAIN_TIMEOUT`` after the exit is dropped. If the call is
        cancelled or fails while the worker is alive, the worker is
        terminated and reaped before the exception propagates.

        Raises:
            WorkerSpawnError: The process could not be started.
            WorkerSignalError: The process was terminated by a signal.
            WorkerExitError: The process exited with a non-zero code.
        """
        if not command:
            raise WorkerSpawnError("Failed to spawn worker: empty command")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WorkerSpawnError(f"Failed to spawn worker: {e}") from e

        self._process = process
        state = _RunState()
        assert process.stdout is not None and process.stderr is not None
        pumps = [
            asyncio.create_task(self._pump_stdout(process.stdout, state)),
            asyncio.create_task(self._pump_stderr(process.stderr)),
        ]
        try:
            await self._send_config(process, config)
            returncode = await self._wait_for_exit(process)
            _, still_open = await asyncio.wait(pumps, timeout=OUTPUT_DRAIN_TIMEOUT)
            if still_open:
                logger.debug("Worker output is still open after exit, a child process may hold it")
            for pump in pumps:
                if pump.done() and not pump.cancelled() and (error := pump.exception()) is not None:
                    logger.warning("Failed to read worker output: %s", error)
        finally:
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            if process.returncode is None:
                await self._reap(process)
            if self._process is process:
                self._process = None
                if self._kill_handle is not None:
                    self._kill_handle.cancel()
                    self._kill_handle = None

        if returncode < 0:
            raise WorkerSignalError(signal.Signals(-returncode).name)
        if returncode != 0:
            if not state.has_error:
                logger.error("Worker exited with code %d", returncode)
            raise WorkerExitError(returncode)
        return state.result

    def kill(self) -> bool:
        """Send SIGTERM to the running worker, escalating to SIGKILL after the grace period.

        Returns:
            True if a worker was signalled, False if none was running.
        """
        process = self._process
        if process is None or process.returncode is not None:
            return False

        with contextlib.suppress(ProcessLookupError):
            process.terminate()

        if self._kill_handle is not None:
            self._kill_handle.cancel()
        self._kill_handle = asyncio.get_running_loop().call_later(
            self._kill_grace_period, self._force_kill, process
        )
        return True

    @staticmethod
    def _force_kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            logger.warning("Child process did not terminate, using SIGKILL")
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    @staticmethod
    async def _wait_for_exit(process: asyncio.subprocess.Process) -> int:
        """Return the exit code as soon as the process is reaped.

        ``Process.wait()`` alone may not return until every pipe is closed,
        which never happens while a grandchild keeps them open.
        """
        waiter = asyncio.ensure_future(process.wait())
        try:
            while process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
        finally:
            waiter.cancel()
        assert process.returncode is not None
        return process.returncode

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Terminate a worker left running by a failed or cancelled run and wait for it."""
        logger.debug("Terminating worker left running")
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(self._wait_for_exit(process), self._kill_grace_period)
        except TimeoutError:
            self._force_kill(process)
            await self._wait_for_exit(process)

    @staticmethod
    async def _send_config(process: asyncio.subprocess.Process, config: WorkerConfig) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(encode_config(config).encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Worker closed stdin before reading its config")
        finally:
            process.stdin.close()

    async def _pump_stdout(self, stream: asyncio.StreamReader, state: _RunState) -> None:
        # Chunked reads: a single line (a large result) may exceed any StreamReader limit.
        pending = bytearray()
        while chunk := await stream.read(STDOUT_CHUNK_SIZE):
            pending += chunk
            if b"\n" not in chunk:
                continue
            *lines, rest = pending.split(b"\n")
            pending = bytearray(rest)
            for raw in lines:
                self._dispatch_raw(raw, state)
        if pending:
            self._dispatch_raw(pending, state)

    def _dispatch_raw(self, raw: bytes | bytearray, state: _RunState) -> None:
        self._dispatch_line(raw.decode("utf-8", errors="replace").rstrip("\r"), state)

    def _dispatch_line(self, line: str, state: _RunState) -> None:
        try:
            message = parse_output_line(line)
        except WorkerProtocolError:
            logger.debug("Failed to parse worker protocol message. Printing raw line: %s", line)
            self._write_stdout(line[len(WORKER_MESSAGE_PREFIX) :])
            return

        match message:
            case None:
                self._write_stdout(line)
            case WorkerLogMessage(level=level, message=text):
                logger.log(_LOG_LEVELS[level], text)
            case WorkerResultMessage(data=data):
                state.result = data
            case WorkerErrorMessage(error=error, stack=stack):
                state.has_error = True
                logger.error("Worker error: %s", error)
                if stack:
                    logger.error(stack)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await stream.read(STDERR_CHUNK_SIZE):
            self._write_stderr(decoder.decode(chunk))
        self._write_stderr(decoder.decode(b"", final=True))

    def _write_stdout(self, line: str) -> None:
        sink = self._stdout or sys.stdout
        sink.write(line + "\n")
        sink.flush()

    def _write_stderr(self, text: str) -> None:
        if not text:
            return
        sink = self._stderr or sys.stderr
        sink.write(text)
        sink.flush()
