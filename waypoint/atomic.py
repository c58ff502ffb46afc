"""Atomic file write utilities for Waypoint.

Provides crash-safe writes for checkpoint documents using the
backup + temp file + rename pattern:

1. If the target exists, copy it to ``<name>.backup``
2. Write the new content to ``<name>.tmp`` and fsync it
3. Rename the temp file over the target (atomic on POSIX)
4. Delete the backup

Any failure before the rename restores the backup over the target and
removes the temp file, so a reader never observes a partial document.

All functions return Result types for explicit error handling.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
"""

import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any

from waypoint.errors import Err, Ok, Result, SaveCancelled, WaypointError

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".backup"


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TEMP_SUFFIX)


def backup_path_for(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
    backup: bool = True,
    cancel_event: threading.Event | None = None,
) -> Result[Path, WaypointError]:
    """Atomically write text content to a file.

    Creates parent directories if they don't exist.

    Args:
        path: Target file path
        content: Text content to write
        mode: File permissions (default 0o600 - owner read/write only)
        backup: Copy an existing target aside before writing, restore it on failure
        cancel_event: If set before the rename, the write is abandoned and
            the target is left untouched

    Returns:
        Ok(path) on success, Err(WaypointError) on failure

    Example:
        result = atomic_write_text(Path("/path/to/wf-1.json"), "{}")
        if result.is_ok():
            print(f"Written to {result.unwrap()}")
    """
    path = Path(path)
    temp_path = temp_path_for(path)
    backup_path = backup_path_for(path)
    backup_made = False

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        if backup and path.exists():
            shutil.copy2(path, backup_path)
            backup_made = True

        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        # Set permissions BEFORE rename (security)
        os.chmod(temp_path, mode)

        if cancel_event is not None and cancel_event.is_set():
            raise SaveCancelled(f"Write to {path} cancelled before commit")

        _commit(temp_path, path)

    except Exception as e:
        _cleanup_temp(temp_path)
        if backup_made and not _restore_backup(backup_path, path):
            logger.error(f"Write to {path} failed and backup restoration failed: {e}")
            return Err(
                WaypointError(
                    code="ATOMIC_RESTORE_FAILED",
                    message=f"Failed to write {path} and could not restore backup: {e}",
                    context={"path": str(path), "backup": str(backup_path), "error": str(e)},
                )
            )
        return Err(_classify(path, e))

    if backup_made:
        _cleanup_temp(backup_path)

    logger.debug(f"Atomic write complete: {path}")
    return Ok(path)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o600,
    indent: int | None = 2,
    ensure_ascii: bool = False,
    backup: bool = True,
    cancel_event: threading.Event | None = None,
) -> Result[Path, WaypointError]:
    """Atomically write JSON data to a file.

    Args:
        path: Target file path
        data: Data to serialize as JSON
        mode: File permissions (default 0o600)
        indent: JSON indentation (default 2, None for compact)
        ensure_ascii: Escape non-ASCII characters (default False)
        backup: See ``atomic_write_text``
        cancel_event: See ``atomic_write_text``

    Returns:
        Ok(path) on success, Err(WaypointError) on failure
    """
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization failed: {e}")
        return Err(
            WaypointError(
                code="JSON_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to JSON: {e}",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode, backup=backup, cancel_event=cancel_event)


def _commit(temp_path: Path, path: Path) -> None:
    """Move the finished temp file into place."""
    os.replace(temp_path, path)


def _restore_backup(backup_path: Path, path: Path) -> bool:
    """Put the backup back over the target. Returns False if that failed too."""
    try:
        os.replace(backup_path, path)
        logger.warning(f"Restored {path} from backup after failed write")
        return True
    except OSError as e:
        logger.error(f"Failed to restore backup {backup_path}: {e}")
        return False


def _classify(path: Path, error: Exception) -> WaypointError:
    if isinstance(error, SaveCancelled):
        logger.info(f"Write to {path} cancelled before commit")
        return WaypointError(
            code="ATOMIC_CANCELLED",
            message=str(error),
            context={"path": str(path)},
        )

    if isinstance(error, PermissionError):
        logger.error(f"Permission denied writing {path}: {error}")
        return WaypointError(
            code="ATOMIC_PERMISSION_DENIED",
            message=f"Permission denied writing to {path}",
            context={"path": str(path)},
        )

    logger.error(f"Error writing {path}: {error}")
    return WaypointError(
        code="ATOMIC_WRITE_FAILED",
        message=f"Failed to write {path}: {error}",
        context={"path": str(path), "error": str(error)},
    )


def _cleanup_temp(temp_path: Path) -> None:
    """Remove a leftover temp or backup file, ignoring errors."""
    try:
        temp_path.unlink(missing_ok=True)
    except OSError:
        # Best effort cleanup
        pass
