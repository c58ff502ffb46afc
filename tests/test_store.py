"""Tests for waypoint.store module."""

import json
import logging
import os
import threading
import time
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from waypoint.config import ResumeConfig
from waypoint.errors import DeserializationError, SaveCancelled
from waypoint.state import STATUS_COMPLETED
from waypoint.store import StateStore, validate_workflow_id


class TestValidateWorkflowId:
    """Tests for validate_workflow_id()."""

    @pytest.mark.parametrize("workflow_id", ["wf-1", "review.prompt_2", "_tmp", "2026-03-01"])
    def test_safe_ids_pass(self, workflow_id):
        """Safe ids are returned unchanged."""
        assert validate_workflow_id(workflow_id) == workflow_id

    @pytest.mark.parametrize(
        "workflow_id", ["", "wf/1", "wf 1", "../../etc/passwd", ".hidden", "wf\\1", "wf:1", "wf-1\n"]
    )
    def test_unsafe_ids_rejected(self, workflow_id):
        """Ids that are not plain file names raise ValueError."""
        with pytest.raises(ValueError, match="Invalid workflow id"):
            validate_workflow_id(workflow_id)

    def test_distinct_ids_never_share_a_file(self, store, sample_state):
        """An id that used to collide with another is refused instead of overwriting it."""
        store.save("wf-1", replace(sample_state, file_path="b"))

        with pytest.raises(ValueError):
            store.save("wf/1", replace(sample_state, workflow_id="wf/1", file_path="a"))
        with pytest.raises(ValueError):
            store.load("wf/1")

        assert store.load("wf-1").file_path == "b"


class TestStateStoreSaveLoad:
    """Save and load behavior."""

    def test_roundtrip(self, store, sample_state):
        """A saved checkpoint loads back equal."""
        store.save(sample_state.workflow_id, sample_state)

        assert store.load(sample_state.workflow_id) == sample_state

    def test_file_named_after_workflow_id(self, store, sample_state):
        """The document is <workflow-id>.json in the store directory."""
        path = store.save(sample_state.workflow_id, sample_state)

        assert path == store.directory / "wf-1.json"
        assert json.loads(path.read_text())["metadata"]["id"] == "wf-1"

    def test_saving_twice_is_idempotent(self, store, sample_state):
        """Two saves of the same state leave one identical file and no siblings."""
        path = store.save(sample_state.workflow_id, sample_state)
        first = path.read_bytes()

        store.save(sample_state.workflow_id, sample_state)

        assert path.read_bytes() == first
        assert [p.name for p in store.directory.iterdir()] == ["wf-1.json"]

    def test_save_without_atomic_writes(self, tmp_path, sample_state):
        """Direct writes still produce a loadable document."""
        store = StateStore(tmp_path, ResumeConfig(enable_atomic_writes=False))

        store.save(sample_state.workflow_id, sample_state)

        assert store.load(sample_state.workflow_id) == sample_state

    def test_load_missing_returns_none(self, store):
        """No document means None, not an error."""
        assert store.load("wf-missing") is None

    def test_load_corrupt_json_raises(self, store):
        """Invalid JSON raises DeserializationError."""
        store.directory.mkdir(parents=True)
        store.path_for("wf-bad").write_text("{not json")

        with pytest.raises(DeserializationError) as exc_info:
            store.load("wf-bad")

        assert exc_info.value.path == store.path_for("wf-bad")
        assert "invalid JSON" in exc_info.value.reason

    def test_load_schema_violation_raises(self, store, sample_state):
        """A well-formed document with bad fields raises DeserializationError."""
        path = store.save(sample_state.workflow_id, sample_state)
        document = json.loads(path.read_text())
        document["metadata"]["started_at"] = 42
        path.write_text(json.dumps(document))

        with pytest.raises(DeserializationError):
            store.load(sample_state.workflow_id)

    def test_load_rejects_document_of_another_workflow(self, store, sample_state):
        """A document whose metadata id differs from the requested id is refused."""
        path = store.save(sample_state.workflow_id, sample_state)
        path.rename(store.path_for("wf-2"))

        with pytest.raises(DeserializationError) as exc_info:
            store.load("wf-2")

        assert "'wf-1'" in exc_info.value.reason

    def test_cancelled_save_keeps_previous_document(self, store, sample_state, make_tool):
        """A cancelled save raises SaveCancelled and changes nothing on disk."""
        path = store.save(sample_state.workflow_id, sample_state)
        before = path.read_bytes()
        sample_state.completed_tools.append(make_tool("extra", 9))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SaveCancelled):
            store.save(sample_state.workflow_id, sample_state, cancel_event=cancel)

        assert path.read_bytes() == before

    def test_oversize_document_warns(self, tmp_path, sample_state, caplog):
        """Documents over the size limit are saved with a warning."""
        store = StateStore(tmp_path, ResumeConfig(max_file_size_bytes=10))

        with caplog.at_level(logging.WARNING, logger="waypoint.store"):
            path = store.save(sample_state.workflow_id, sample_state)

        assert path.exists()
        assert "byte limit" in caplog.text


class TestStateStoreListing:
    """list_available() and list_resumable()."""

    def test_most_recent_first(self, store, sample_state, base_time):
        """Checkpoints are ordered by last activity, newest first."""
        older = replace(sample_state, workflow_id="wf-old", last_activity=base_time)
        newer = replace(
            sample_state, workflow_id="wf-new", last_activity=base_time + timedelta(hours=1)
        )
        store.save(older.workflow_id, older)
        store.save(newer.workflow_id, newer)

        assert [s.workflow_id for s in store.list_available()] == ["wf-new", "wf-old"]

    def test_skips_corrupt_files(self, store, sample_state, caplog):
        """Unreadable documents are logged and skipped."""
        store.save(sample_state.workflow_id, sample_state)
        store.path_for("wf-bad").write_text("[]")

        with caplog.at_level(logging.WARNING, logger="waypoint.store"):
            states = store.list_available()

        assert [s.workflow_id for s in states] == ["wf-1"]
        assert "wf-bad.json" in caplog.text

    def test_missing_directory_lists_nothing(self, tmp_path):
        """A store whose directory does not exist yet is empty."""
        assert StateStore(tmp_path / "nowhere").list_available() == []

    def test_resumable_excludes_completed(self, store, sample_state):
        """Completed runs are not resumable."""
        done = replace(sample_state, workflow_id="wf-done", status=STATUS_COMPLETED)
        store.save(sample_state.workflow_id, sample_state)
        store.save(done.workflow_id, done)

        assert [s.workflow_id for s in store.list_resumable()] == ["wf-1"]


class TestStateStoreDeleteAndCleanup:
    """delete() and cleanup()."""

    def test_delete(self, store, sample_state):
        """delete() removes the document and reports whether it existed."""
        store.save(sample_state.workflow_id, sample_state)

        assert store.delete(sample_state.workflow_id) is True
        assert store.load(sample_state.workflow_id) is None
        assert store.delete(sample_state.workflow_id) is False

    def _age(self, path: Path, days: float) -> None:
        stamp = time.time() - days * 86400
        os.utime(path, (stamp, stamp))

    def test_cleanup_removes_only_old_files(self, store, sample_state):
        """Files older than the retention period are deleted."""
        old_path = store.save("wf-old", replace(sample_state, workflow_id="wf-old"))
        fresh_path = store.save("wf-fresh", replace(sample_state, workflow_id="wf-fresh"))
        self._age(old_path, 8)
        self._age(fresh_path, 2)

        deleted = store.cleanup()

        assert deleted == 1
        assert not old_path.exists()
        assert fresh_path.exists()

    def test_cleanup_explicit_retention(self, store, sample_state):
        """An explicit retention overrides the configured one."""
        path = store.save(sample_state.workflow_id, sample_state)
        self._age(path, 2)

        assert store.cleanup(retention_days=1) == 1
        assert not path.exists()

    def test_cleanup_uses_mtime_not_content(self, store, sample_state, base_time):
        """A document with an old last_checkpoint but fresh mtime survives."""
        stale = replace(sample_state, last_activity=base_time - timedelta(days=365))
        path = store.save(stale.workflow_id, stale)

        assert store.cleanup() == 0
        assert path.exists()

    def test_cleanup_skips_files_that_fail_to_delete(self, store, sample_state, caplog):
        """A failed unlink is logged and the sweep carries on."""
        stuck_path = store.save("wf-a", replace(sample_state, workflow_id="wf-a"))
        old_path = store.save("wf-b", replace(sample_state, workflow_id="wf-b"))
        self._age(stuck_path, 8)
        self._age(old_path, 8)
        real_unlink = Path.unlink

        def unlink(self, *args, **kwargs):
            if self == stuck_path:
                raise PermissionError("read-only")
            return real_unlink(self, *args, **kwargs)

        with patch.object(Path, "unlink", unlink), caplog.at_level(
            logging.WARNING, logger="waypoint.store"
        ):
            deleted = store.cleanup()

        assert deleted == 1
        assert stuck_path.exists()
        assert not old_path.exists()
        assert "Failed to delete checkpoint file" in caplog.text
        assert "read-only" in caplog.text

    def test_cleanup_empty_store(self, tmp_path):
        """Cleaning a missing directory deletes nothing."""
        assert StateStore(tmp_path / "nowhere").cleanup() == 0
