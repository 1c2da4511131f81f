"""Discovery of the served rollout function and the command that runs it.

User code is never imported into the dev session process. Discovery runs
``python -m laminar_rollout.worker discover`` in a subprocess and reads the
``LMNR_METADATA:``-prefixed line it prints.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from laminar_rollout.exceptions import WorkerSpawnError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.protocol import FunctionMetadata

logger = get_rollout_logger(__name__)

METADATA_PROTOCOL_PREFIX = "LMNR_METADATA:"
WORKER_MODULE = "laminar_rollout.worker"
SUPPORTED_EXTENSIONS = (".py",)
DISCOVERY_TIMEOUT = 60.0


def default_worker_command() -> list[str]:
    return [sys.executable, "-m", WORKER_MODULE]


def get_worker_command(
    file_path: str | None = None,
    module_path: str | None = None,
    command: str | None = None,
    command_args: list[str] | None = None,
) -> list[str]:
    """Resolve the worker argv for a target.

    An explicit ``command`` wins. Otherwise module targets and ``.py`` files
    run the bundled worker under the current interpreter.

    Raises:
        ValueError: Neither target is given, or the file type is unsupported.
    """
    if command:
        return [command, *(command_args or [])]
    if module_path:
        return default_worker_command()
    if not file_path:
        raise ValueError("Either file_path or module_path must be provided")

    extension = Path(file_path).suffix
    if extension not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file extension: {extension or '(none)'}. "
            f"Supported extensions: {', '.join(SUPPORTED_EXTENSIONS)}"
        )
    return default_worker_command()


def default_function_name(
    file_path: str | None = None,
    module_path: str | None = None,
    function_name: str | None = None,
) -> str:
    """Name announced when discovery fails: the explicit name, else the module or file stem."""
    if function_name:
        return function_name
    if module_path:
        return module_path.rsplit(".", 1)[-1] or "main"
    if file_path:
        return Path(file_path).stem or "main"
    return "main"


def extract_metadata_from_stdout(stdout: str) -> dict[str, Any]:
    """Return the payload of the last parseable ``LMNR_METADATA:`` line.

    Other output may be interleaved with the metadata line. When no
    prefixed line exists the whole output is tried as JSON.

    Raises:
        ValueError: No metadata could be parsed.
    """
    last_valid: dict[str, Any] | None = None
    found_prefix = False
    for line in stdout.splitlines():
        position = line.find(METADATA_PROTOCOL_PREFIX)
        if position == -1:
            continue
        found_prefix = True
        try:
            payload = json.loads(line[position + len(METADATA_PROTOCOL_PREFIX) :])
        except ValueError:
            continue
        if isinstance(payload, dict):
            last_valid = payload

    if last_valid is not None:
        return last_valid
    if not found_prefix:
        try:
            payload = json.loads(stdout.strip())
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            return payload
    raise ValueError("No metadata found in discovery output")


async def discover_function_metadata(
    *,
    file_path: str | None = None,
    module_path: str | None = None,
    function_name: str | None = None,
    timeout: float = DISCOVERY_TIMEOUT,
) -> FunctionMetadata:
    """Ask the worker which function it would serve and with which parameters.

    Falls back to a default name with no parameters when discovery fails.

    Raises:
        WorkerSpawnError: The discovery process could not be started at all.
    """
    argv = [*default_worker_command(), "discover"]
    if module_path:
        argv += ["--module", module_path]
    elif file_path:
        argv += ["--file", file_path]
    if function_name:
        argv += ["--function", function_name]

    fallback = FunctionMetadata(name=default_function_name(file_path, module_path, function_name))

    try:
        process = await asyncio.create_subprocess_exec(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise WorkerSpawnError(f"Failed to start metadata discovery: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.error("Metadata discovery timed out after %.0fs", timeout)
        return fallback

    if process.returncode != 0:
        logger.error(
            "Failed to discover rollout function (exit code %s): %s",
            process.returncode,
            stderr.decode("utf-8", errors="replace").strip(),
        )
        return fallback

    try:
        metadata = FunctionMetadata.model_validate(
            extract_metadata_from_stdout(stdout.decode("utf-8", errors="replace"))
        )
    except ValueError as e:
        logger.error("Failed to parse rollout function metadata: %s", e)
        return fallback

    logger.debug("Discovered function %s with %d parameters", metadata.name, len(metadata.params))
    return metadata
