"""Logging, state-file snapshots and results shared across the service."""

from blt.utils.atomic import SnapshotError, read_snapshot, write_snapshot
from blt.utils.logging import configure_logging, get_logger, request_context, set_stage
from blt.utils.result import ConfigError, Err, ExitCode, GuardError, Ok, Result

__all__ = [
    "configure_logging",
    "get_logger",
    "request_context",
    "set_stage",
    "SnapshotError",
    "read_snapshot",
    "write_snapshot",
    "Ok",
    "Err",
    "Result",
    "ConfigError",
    "GuardError",
    "ExitCode",
]
