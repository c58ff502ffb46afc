"""File-based checkpoint persistence.

One JSON document per workflow id, ``<workflow-id>.json``, in a single
directory. Saves go through the atomic writer so a concurrent reader only
ever sees a complete document.
"""

import json
import logging
import re
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from waypoint.atomic import atomic_write_json
from waypoint.config import ResumeConfig, get_resume_config, get_resume_dir
from waypoint.errors import DeserializationError, StorageError
from waypoint.logging import log_checkpoint_saved
from waypoint.state import CheckpointState, state_from_document, state_to_document

logger = logging.getLogger(__name__)


# Workflow ids are used as file names verbatim, so only a safe subset is accepted
_WORKFLOW_ID_PATTERN = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]*")


def validate_workflow_id(workflow_id: str) -> str:
    """Check that an ID maps to exactly one file inside the store.

    Raises:
        ValueError: The ID is empty or contains characters outside
            ``[A-Za-z0-9_.-]`` (or starts with a dot)
    """
    if not _WORKFLOW_ID_PATTERN.fullmatch(workflow_id):
        raise ValueError(
            f"Invalid workflow id {workflow_id!r}: use letters, digits, '_', '-' or '.'"
        )
    return workflow_id


class StateStore:
    """Save, load, list and sweep checkpoint documents in one directory."""

    def __init__(self, directory: Path, config: ResumeConfig | None = None):
        self.directory = Path(directory)
        self.config = config or ResumeConfig()

    @classmethod
    def from_config(
        cls,
        config: ResumeConfig | None = None,
        project_path: Path | None = None,
    ) -> "StateStore":
        """Build a store in the directory the config cascade resolves to."""
        if config is None:
            config = get_resume_config(project_path)
        return cls(get_resume_dir(config, project_path), config)

    def path_for(self, workflow_id: str) -> Path:
        """Document path for an ID.

        Raises:
            ValueError: The ID is not a safe file name (see validate_workflow_id)
        """
        return self.directory / f"{validate_workflow_id(workflow_id)}.json"

    def save(
        self,
        workflow_id: str,
        state: CheckpointState,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        """Persist a checkpoint.

        Raises:
            ValueError: The ID is not a safe file name
            SaveCancelled: cancel_event was set before the rename
            StorageError: The write failed (``recoverable`` is False when the
                previous document could not be restored either)
        """
        path = self.path_for(workflow_id)
        document = state_to_document(state)

        if self.config.enable_atomic_writes:
            result = atomic_write_json(
                path,
                document,
                backup=self.config.enable_backup,
                cancel_event=cancel_event,
            )
            if result.is_err():
                raise StorageError.from_error(result.unwrap_err())
        else:
            try:
                path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
                path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
            except (OSError, TypeError, ValueError) as e:
                raise StorageError(f"Failed to write {path}: {e}", code="WRITE_FAILED") from e

        size = path.stat().st_size
        if size > self.config.max_file_size_bytes:
            logger.warning(
                f"Checkpoint for workflow {workflow_id} is {size} bytes, "
                f"over the {self.config.max_file_size_bytes} byte limit"
            )

        log_checkpoint_saved(logger, workflow_id, path, size)
        return path

    def load(self, workflow_id: str) -> CheckpointState | None:
        """Load a checkpoint by id.

        Returns:
            The checkpoint, or None if no document exists for the id

        Raises:
            DeserializationError: The document exists but is corrupt or
                belongs to a different workflow id
            ValueError: The ID is not a safe file name
        """
        path = self.path_for(workflow_id)
        if not path.exists():
            logger.debug(f"No checkpoint found for workflow {workflow_id}")
            return None
        state = self._load_file(path)
        if state.workflow_id != workflow_id:
            raise DeserializationError(
                path, f"document belongs to workflow {state.workflow_id!r}, not {workflow_id!r}"
            )
        return state

    def _load_file(self, path: Path) -> CheckpointState:
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise DeserializationError(path, f"invalid JSON: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise DeserializationError(path, str(e)) from e

        try:
            return state_from_document(document)
        except ValueError as e:
            raise DeserializationError(path, str(e)) from e

    def _document_paths(self) -> list[Path]:
        if not self.directory.exists():
            return []
        return sorted(self.directory.glob("*.json"))

    def list_available(self) -> list[CheckpointState]:
        """All readable checkpoints, most recently active first.

        Documents that fail to load are logged and skipped.
        """
        states = []
        for path in self._document_paths():
            try:
                states.append(self._load_file(path))
            except DeserializationError as e:
                logger.warning(f"Skipping invalid checkpoint file {path}: {e.reason}")

        states.sort(key=lambda s: s.last_activity, reverse=True)
        logger.info(f"Found {len(states)} available checkpoints in {self.directory}")
        return states

    def list_resumable(self) -> list[CheckpointState]:
        """Checkpoints of runs that did not finish."""
        return [s for s in self.list_available() if not s.is_completed]

    def delete(self, workflow_id: str) -> bool:
        path = self.path_for(workflow_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted checkpoint for workflow {workflow_id}")
        return True

    def cleanup(self, retention_days: int | None = None) -> int:
        """Delete checkpoint files last modified before now - retention_days.

        Per-file failures are logged and skipped; an interrupted sweep can
        simply be run again.

        Returns:
            Number of files deleted
        """
        if retention_days is None:
            retention_days = self.config.retention_days

        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).timestamp()
        deleted = 0

        for path in self._document_paths():
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
                    logger.debug(f"Deleted old checkpoint file {path}")
            except OSError as e:
                logger.warning(f"Failed to delete checkpoint file {path}: {e}")

        logger.info(f"Cleaned up {deleted} old checkpoint files")
        return deleted
