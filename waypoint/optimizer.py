"""State optimizer: keeps persisted checkpoints lean.

Pure transformation with no I/O. Collections that exceed their caps are
reduced using importance heuristics, and surviving entries always keep
their chronological (or insertion) order. The input state is never mutated.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from waypoint.config import OptimizerLimits
from waypoint.state import CheckpointState, ContextChange, ContextEvolution, utc_now

logger = logging.getLogger(__name__)

# Keys that carry the workflow's intent and position; case-insensitive
CRITICAL_KEYS = frozenset(
    {
        "project_path",
        "main_goal",
        "current_phase",
        "last_strategy",
        "key_findings",
        "target_framework",
        "critical_issue",
        "file_path",
        "current_analysis",
        "next_steps",
        "workflow_intent",
        "user_request",
        "analysis_result",
        "error_state",
        "completion_criteria",
        "workflow_file",
        "workflow_hash",
        "original_content",
        "available_tools",
        "execution_context",
    }
)

DISCOVERY_TERMS = ("discovered", "found", "analysis")
SEVERITY_TERMS = ("error", "critical", "requirement")
IMPORTANT_KEY_SUFFIXES = ("_path", "_file", "_config")

CRITICAL_SOURCES = ("user_input", "critical_error", "workflow_start", "phase_change")
IMPORTANT_REASONING_TERMS = ("critical", "error", "discovered")


def is_critical_key(key: str) -> bool:
    return key.lower() in CRITICAL_KEYS


def importance_score(key: str, value: Any) -> float:
    """Score how much a context variable matters for resuming.

    Base 1.0, multiplied by:
    - 3.0 for a critical key
    - 2.0 if the value mentions a discovery
    - 2.5 if the value mentions an error, criticality or requirement
    - 2.0 if the key names a path, file or config
    """
    score = 1.0

    if is_critical_key(key):
        score *= 3.0

    text = "" if value is None else str(value).lower()
    if text:
        if any(term in text for term in DISCOVERY_TERMS):
            score *= 2.0
        if any(term in text for term in SEVERITY_TERMS):
            score *= 2.5

    if key.lower().endswith(IMPORTANT_KEY_SUFFIXES):
        score *= 2.0

    return score


def is_important_change(
    change: ContextChange,
    now: datetime,
    recent_window: timedelta = timedelta(hours=1),
) -> bool:
    """Whether a context change must survive optimization."""
    if change.timestamp > now - recent_window:
        return True

    source = change.source.lower()
    if any(s in source for s in CRITICAL_SOURCES):
        return True

    if is_critical_key(change.key):
        return True

    reasoning = change.reasoning.lower()
    return any(term in reasoning for term in IMPORTANT_REASONING_TERMS)


def estimate_state_size(state: CheckpointState) -> int:
    """Rough character count of a checkpoint's content."""
    size = (
        len(state.workflow_id)
        + len(state.file_path)
        + len(state.original_content)
        + len(state.current_phase)
        + len(state.current_strategy)
    )

    for tool in state.completed_tools:
        size += len(tool.function_name) + len(tool.result) + len(tool.reasoning)
        size += sum(len(k) + len(str(v)) for k, v in tool.parameters.items())

    for message in state.conversation_history:
        size += len(message.role) + len(message.content)
        for call in message.tool_calls or ():
            size += len(call.function_name) + len(call.call_id)

    evolution = state.context_evolution
    size += sum(len(k) + len(str(v)) for k, v in evolution.current_context.items())
    size += sum(len(i) for i in evolution.key_insights)
    size += sum(len(c.key) + len(c.source) + len(c.reasoning) for c in evolution.changes)

    return size


class StateOptimizer:
    """Bounds a checkpoint's collections to configured caps."""

    def __init__(self, limits: OptimizerLimits | None = None):
        self.limits = limits or OptimizerLimits()

    def optimize(self, state: CheckpointState, now: datetime | None = None) -> CheckpointState:
        """Return a bounded copy of ``state``.

        Args:
            state: Checkpoint to bound (left untouched)
            now: Clock reading for the recent-change window (defaults to UTC now)

        Returns:
            New CheckpointState whose collections respect the caps
        """
        now = now or utc_now()
        limits = self.limits
        original_size = estimate_state_size(state)

        tools = list(state.completed_tools)
        if len(tools) > limits.max_completed_tools:
            # Failed entries go first, then the oldest successful ones
            successful = sorted((t for t in tools if t.success), key=lambda t: t.executed_at)
            kept = successful[-limits.max_completed_tools :] if limits.max_completed_tools else []
            logger.debug(
                f"Reduced completed tools from {len(tools)} to {len(kept)} "
                f"for workflow {state.workflow_id}"
            )
            tools = kept

        messages = list(state.conversation_history)
        if len(messages) > limits.max_chat_history:
            ordered = sorted(messages, key=lambda m: m.timestamp)
            kept_messages = ordered[-limits.max_chat_history :] if limits.max_chat_history else []
            logger.debug(
                f"Reduced chat history from {len(messages)} to {len(kept_messages)} messages "
                f"for workflow {state.workflow_id}"
            )
            messages = kept_messages

        evolution = state.context_evolution
        context = self._bound_context(state, evolution.current_context)

        insights = list(evolution.key_insights)
        if len(insights) > limits.max_key_insights:
            insights = insights[-limits.max_key_insights :] if limits.max_key_insights else []

        changes = self._bound_changes(state, evolution.changes, now)

        optimized = replace(
            state,
            completed_tools=tools,
            conversation_history=messages,
            context_evolution=ContextEvolution(
                current_context=context,
                key_insights=insights,
                changes=changes,
            ),
            available_tools=list(state.available_tools),
            variables=dict(state.variables),
        )

        optimized_size = estimate_state_size(optimized)
        reduction = (original_size - optimized_size) / original_size * 100 if original_size else 0.0
        logger.info(
            f"Optimized resume state for workflow {state.workflow_id}: {reduction:.1f}% size reduction"
        )
        return optimized

    def _bound_context(self, state: CheckpointState, context: dict[str, Any]) -> dict[str, Any]:
        cap = self.limits.max_context_variables
        if len(context) <= cap:
            return dict(context)

        items = list(context.items())
        # Highest score wins; equal scores keep insertion order
        ranked = sorted(
            range(len(items)),
            key=lambda i: (-importance_score(items[i][0], items[i][1]), i),
        )
        keep = set(ranked[:cap])
        bounded = {k: v for i, (k, v) in enumerate(items) if i in keep}
        logger.debug(
            f"Reduced context variables from {len(context)} to {len(bounded)} "
            f"for workflow {state.workflow_id}"
        )
        return bounded

    def _bound_changes(
        self,
        state: CheckpointState,
        changes: list[ContextChange],
        now: datetime,
    ) -> list[ContextChange]:
        cap = self.limits.max_context_changes
        if len(changes) <= cap:
            return list(changes)

        window = timedelta(minutes=self.limits.recent_change_window_minutes)
        important = [c for c in changes if is_important_change(c, now, window)]
        important.sort(key=lambda c: c.timestamp)
        bounded = important[-cap:] if cap else []
        logger.debug(
            f"Reduced context changes from {len(changes)} to {len(bounded)} "
            f"for workflow {state.workflow_id}"
        )
        return bounded
