"""Run execution: worker process management and run event handling."""

from .metadata import (
    METADATA_PROTOCOL_PREFIX,
    default_function_name,
    discover_function_metadata,
    extract_metadata_from_stdout,
    get_worker_command,
)
from .orchestrator import RunOrchestrator, decode_args, group_cached_records, to_cached_record
from .subprocess import SubprocessManager

__all__ = [
    "METADATA_PROTOCOL_PREFIX",
    "RunOrchestrator",
    "SubprocessManager",
    "decode_args",
    "default_function_name",
    "discover_function_metadata",
    "extract_metadata_from_stdout",
    "get_worker_command",
    "group_cached_records",
    "to_cached_record",
]
