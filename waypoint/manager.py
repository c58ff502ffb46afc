"""Resume state manager.

Owns the in-memory checkpoint of every active workflow run and drives the
capture → optimize → save path and the resume/reset flows.

Captures for one workflow id are serialized through a per-id lock owned by
the manager instance. Different ids never share a lock and never wait on
each other.
"""

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from waypoint.compatibility import (
    PARTIAL_CONTEXT,
    RESET_WORKFLOW,
    CompatibilityValidator,
    content_hash,
    missing_state_report,
)
from waypoint.config import ResumeConfig
from waypoint.errors import DeserializationError, ResumeError
from waypoint.optimizer import StateOptimizer
from waypoint.resume import REQUIRES_RESET, ResumeContextBuilder, run_state, transition
from waypoint.state import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    CheckpointState,
    CompatibilityReport,
    CompletedTool,
    ContextChange,
    ContextEvolution,
    ConversationMessage,
    utc_now,
)
from waypoint.store import StateStore
from waypoint.types import WorkflowId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResumePlan:
    """Outcome of a resume attempt.

    ``messages`` is the history to hand to the conversation engine: the
    continuation message followed by the existing history when resuming,
    the existing history untouched otherwise.
    """

    workflow_id: WorkflowId
    report: CompatibilityReport
    next_state: str  # in_progress, requires_reset or completed
    messages: list[ConversationMessage] = field(default_factory=list)
    state: CheckpointState | None = None

    @property
    def resumed(self) -> bool:
        return self.next_state == STATUS_IN_PROGRESS


class ResumeStateManager:
    """Tracks workflow runs and persists their checkpoints."""

    def __init__(
        self,
        store: StateStore | None = None,
        config: ResumeConfig | None = None,
        optimizer: StateOptimizer | None = None,
        validator: CompatibilityValidator | None = None,
        builder: ResumeContextBuilder | None = None,
    ):
        if config is None:
            config = store.config if store is not None else ResumeConfig()
        self.config = config
        self.store = store or StateStore.from_config(config)
        self.optimizer = optimizer or StateOptimizer(config.optimizer_limits())
        self.validator = validator or CompatibilityValidator(config.compatibility_thresholds())
        self.builder = builder or ResumeContextBuilder()

        self._states: dict[str, CheckpointState] = {}
        self._unsaved: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = self._locks[workflow_id] = threading.Lock()
            return lock

    def _current(self, workflow_id: str, file_path: str | None = None) -> CheckpointState:
        """In-memory checkpoint for an id, rehydrated or created as needed.

        Caller must hold the id's lock.
        """
        state = self._states.get(workflow_id)
        if state is not None:
            return state

        try:
            state = self.store.load(workflow_id)
        except DeserializationError as e:
            logger.warning(f"Discarding unreadable checkpoint for workflow {workflow_id}: {e.reason}")
            state = None

        if state is None:
            logger.debug(f"Creating checkpoint for workflow {workflow_id}")
            state = CheckpointState(workflow_id=WorkflowId(workflow_id), file_path=file_path or "")
        elif state.is_completed:
            state.status = STATUS_IN_PROGRESS

        self._states[workflow_id] = state
        return state

    def _persist(
        self,
        state: CheckpointState,
        cancel_event: threading.Event | None = None,
    ) -> CheckpointState:
        """Optimize and save. Caller must hold the id's lock."""
        state.last_activity = utc_now()
        optimized = self.optimizer.optimize(state)
        self.store.save(state.workflow_id, optimized, cancel_event=cancel_event)
        self._states[state.workflow_id] = optimized
        self._unsaved[state.workflow_id] = 0
        return optimized

    def start_workflow(
        self,
        workflow_id: str,
        file_path: str | Path,
        content: str,
        available_tools: Iterable[str] = (),
        variables: dict[str, Any] | None = None,
    ) -> CheckpointState:
        """Register a new run and persist its first checkpoint.

        Records the content hash and the content itself so a later resume
        can measure how far the workflow definition drifted.
        """
        variables = dict(variables or {})
        now = utc_now()
        state = CheckpointState(
            workflow_id=WorkflowId(workflow_id),
            file_path=str(file_path),
            content_hash=content_hash(content),
            original_content=content,
            start_time=now,
            last_activity=now,
            available_tools=list(dict.fromkeys(available_tools)),
            variables=variables,
            context_evolution=ContextEvolution(
                current_context=dict(variables),
                changes=[
                    ContextChange(
                        timestamp=now,
                        key="workflow_file",
                        new_value=str(file_path),
                        source="workflow_start",
                        reasoning="Workflow started",
                    )
                ],
            ),
        )
        transition(run_state(None), STATUS_IN_PROGRESS)

        with self._lock_for(workflow_id):
            self._states[workflow_id] = state
            logger.info(f"Started workflow {workflow_id} from {file_path}")
            return self._persist(state)

    def track_completed_tool(
        self,
        workflow_id: str,
        tool: CompletedTool,
        file_path: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CheckpointState:
        """Append a tool outcome, saving every ``checkpoint_frequency`` captures.

        Raises:
            StorageError: The save failed
        """
        with self._lock_for(workflow_id):
            state = self._current(workflow_id, file_path)
            state.completed_tools.append(tool)
            if tool.function_name not in state.available_tools:
                state.available_tools.append(tool.function_name)

            unsaved = self._unsaved.get(workflow_id, 0) + 1
            self._unsaved[workflow_id] = unsaved
            if unsaved >= max(1, self.config.checkpoint_frequency):
                return self._persist(state, cancel_event)
            return state

    def record_message(self, workflow_id: str, message: ConversationMessage) -> CheckpointState:
        """Append a conversation message; assistant messages feed key insights."""
        with self._lock_for(workflow_id):
            state = self._current(workflow_id)
            state.conversation_history.append(message)
            if message.role == "assistant":
                insights = state.context_evolution.key_insights
                for insight in self.builder.extract_key_insights([message]):
                    if insight not in insights:
                        insights.append(insight)
            return self._persist(state)

    def update_context(
        self,
        workflow_id: str,
        key: str,
        value: Any,
        source: str = "",
        reasoning: str = "",
    ) -> CheckpointState:
        """Set a context variable and log the change with its previous value."""
        with self._lock_for(workflow_id):
            state = self._current(workflow_id)
            context = state.context_evolution.current_context
            old_value = context.get(key)
            context[key] = value
            state.context_evolution.changes.append(
                ContextChange(
                    timestamp=utc_now(),
                    key=key,
                    old_value=old_value,
                    new_value=value,
                    source=source,
                    reasoning=reasoning,
                )
            )
            if key == "current_phase":
                state.current_phase = str(value)
            elif key == "last_strategy":
                state.current_strategy = str(value)
            return self._persist(state)

    def add_key_insight(self, workflow_id: str, insight: str) -> CheckpointState:
        with self._lock_for(workflow_id):
            state = self._current(workflow_id)
            if insight not in state.context_evolution.key_insights:
                state.context_evolution.key_insights.append(insight)
            return self._persist(state)

    def mark_completed(self, workflow_id: str) -> CheckpointState:
        """Finalize a run. Completed checkpoints are no longer resumable."""
        with self._lock_for(workflow_id):
            state = self._current(workflow_id)
            state.status = STATUS_COMPLETED
            saved = self._persist(state)
            self._states.pop(workflow_id, None)
            self._unsaved.pop(workflow_id, None)
            logger.info(f"Workflow {workflow_id} completed")
            return saved

    def get_state(self, workflow_id: str) -> CheckpointState | None:
        """In-memory checkpoint if the run is active here, else the stored one."""
        with self._lock_for(workflow_id):
            state = self._states.get(workflow_id)
        if state is not None:
            return state
        return self.store.load(workflow_id)

    def list_resumable(self) -> list[CheckpointState]:
        return self.store.list_resumable()

    def cleanup(self, retention_days: int | None = None) -> int:
        return self.store.cleanup(retention_days)

    def validate_compatibility(
        self,
        workflow_id: str,
        current_content: str,
        available_tools: Iterable[str] | None = None,
    ) -> CompatibilityReport:
        """Score the stored checkpoint for an id against the current workflow.

        Raises:
            DeserializationError: The stored document is corrupt
        """
        state = self.store.load(workflow_id)
        if state is None:
            logger.info(f"No checkpoint to validate for workflow {workflow_id}")
            return missing_state_report()
        return self.validator.validate(state, current_content, available_tools)

    def resume(
        self,
        workflow_id: str,
        current_content: str,
        available_tools: Iterable[str] | None = None,
        existing_history: Iterable[ConversationMessage] = (),
        force: bool = False,
    ) -> ResumePlan:
        """Attempt to resume a stored run.

        Args:
            workflow_id: Run to resume
            current_content: Workflow definition as it is now
            available_tools: Tools available now (None skips the tool check)
            existing_history: History the conversation engine already holds
            force: Resume even if the checkpoint scored below the threshold

        Raises:
            DeserializationError: The stored document is corrupt
        """
        history = list(existing_history)
        tools = None if available_tools is None else list(available_tools)
        wid = WorkflowId(workflow_id)

        state = self.store.load(workflow_id)
        if state is None:
            return ResumePlan(wid, missing_state_report(), REQUIRES_RESET, history)

        report = self.validator.validate(state, current_content, tools)

        if state.is_completed:
            logger.info(f"Workflow {workflow_id} already completed, nothing to resume")
            return ResumePlan(wid, report, STATUS_COMPLETED, history, state)

        if not (report.can_resume or force):
            transition(run_state(state), REQUIRES_RESET)
            logger.warning(
                f"Workflow {workflow_id} requires reset "
                f"(score: {report.compatibility_score:.2f})"
            )
            return ResumePlan(wid, report, REQUIRES_RESET, history, state)

        if force and not report.can_resume:
            logger.warning(f"Forcing resume of workflow {workflow_id} despite low compatibility")

        transition(run_state(state), STATUS_IN_PROGRESS)
        state.status = STATUS_IN_PROGRESS
        if tools is not None:
            state.available_tools = list(dict.fromkeys(tools))
        if not state.content_hash:
            state.content_hash = content_hash(current_content)
            state.original_content = current_content

        with self._lock_for(workflow_id):
            self._states[workflow_id] = state
            self._unsaved[workflow_id] = 0

        messages = self.builder.prepare_resume_context(history, state)
        logger.info(f"Resuming workflow {workflow_id} with {len(state.completed_tools)} completed tools")
        return ResumePlan(wid, report, STATUS_IN_PROGRESS, messages, state)

    def reset(
        self,
        workflow_id: str,
        strategy: str,
        current_content: str | None = None,
    ) -> CheckpointState | None:
        """Apply a migration strategy to a run that cannot be resumed.

        ``reset_workflow`` deletes the checkpoint and returns None.
        ``partial_context`` keeps the context evolution only, rebinds the
        checkpoint to ``current_content`` and returns the new state.

        Raises:
            ValueError: Unknown strategy
            ResumeError: partial_context requested but nothing is stored
        """
        if strategy not in (RESET_WORKFLOW, PARTIAL_CONTEXT):
            raise ValueError(f"Unknown migration strategy: {strategy}")

        with self._lock_for(workflow_id):
            if strategy == RESET_WORKFLOW:
                self._states.pop(workflow_id, None)
                self._unsaved.pop(workflow_id, None)
                self.store.delete(workflow_id)
                logger.info(f"Reset workflow {workflow_id}")
                return None

            previous = self._states.get(workflow_id) or self.store.load(workflow_id)
            if previous is None:
                raise ResumeError(f"No saved state for workflow {workflow_id}")

            content = previous.original_content if current_content is None else current_content
            evolution = previous.context_evolution
            now = utc_now()
            state = CheckpointState(
                workflow_id=previous.workflow_id,
                file_path=previous.file_path,
                content_hash=content_hash(content),
                original_content=content,
                start_time=now,
                last_activity=now,
                available_tools=list(previous.available_tools),
                variables=dict(previous.variables),
                context_evolution=ContextEvolution(
                    current_context=dict(evolution.current_context),
                    key_insights=list(evolution.key_insights),
                    changes=list(evolution.changes),
                ),
            )
            self._states[workflow_id] = state
            logger.info(f"Reset workflow {workflow_id} keeping context only")
            return self._persist(state)
