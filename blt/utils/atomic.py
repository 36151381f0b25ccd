"""Crash-safe JSON snapshots for the registry state file.

A snapshot is written to a temporary sibling, fsynced, then renamed over the
target. The snapshot it replaces is kept as ``<name>.bak``; loading falls back
to it when the main file is missing or unreadable.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from blt.utils.logging import get_logger

logger = get_logger("utils.atomic")


class SnapshotError(Exception):
    """Raised when a snapshot cannot be written."""


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + ".bak")


def write_snapshot(path: Path, data: Any) -> None:
    """
    Atomically replace the snapshot at path with data.

    Raises:
        SnapshotError: If the snapshot could not be written; the previous
            snapshot is left in place
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as e:
        logger.error("snapshot_write_failed", path=str(path), error=str(e))
        raise SnapshotError(f"Cannot write {path}: {e}") from e

    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            os.replace(path, backup_path(path))
        os.replace(temp_path, path)
    except (OSError, TypeError, ValueError) as e:
        temp_path.unlink(missing_ok=True)
        logger.error("snapshot_write_failed", path=str(path), error=str(e))
        raise SnapshotError(f"Cannot write {path}: {e}") from e


def read_snapshot(path: Path) -> Optional[Any]:
    """
    Load the newest readable snapshot.

    Returns:
        The decoded JSON of the main file, else of its backup, else None
    """
    path = Path(path)
    for candidate in (path, backup_path(path)):
        if not candidate.exists():
            continue
        try:
            data = json.loads(candidate.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("snapshot_unreadable", path=str(candidate), error=str(e))
            continue
        if candidate != path:
            logger.warning("snapshot_restored_from_backup", path=str(candidate))
        return data
    return None
