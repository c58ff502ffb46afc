"""Resume context reconstruction.

Rebuilds what the agent was doing when a run was interrupted (phase,
strategy, key insights) and turns it into a single system message that is
placed in front of the conversation handed back to the engine.

Run lifecycle:

    not_started → in_progress → completed
                             ↘ interrupted (persisted, not completed)
    interrupted → in_progress       if the checkpoint is compatible
    interrupted → requires_reset    otherwise
    requires_reset → not_started | partial_context → in_progress
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from waypoint.compatibility import PARTIAL_CONTEXT
from waypoint.state import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_NOT_STARTED,
    CheckpointState,
    ContextChange,
    ContextEvolution,
    ConversationMessage,
    utc_now,
)

logger = logging.getLogger(__name__)

# Run states beyond the stored statuses
INTERRUPTED = "interrupted"
REQUIRES_RESET = "requires_reset"

TRANSITIONS = {
    STATUS_NOT_STARTED: frozenset({STATUS_IN_PROGRESS}),
    STATUS_IN_PROGRESS: frozenset({STATUS_COMPLETED, INTERRUPTED}),
    INTERRUPTED: frozenset({STATUS_IN_PROGRESS, REQUIRES_RESET}),
    REQUIRES_RESET: frozenset({STATUS_NOT_STARTED, PARTIAL_CONTEXT}),
    PARTIAL_CONTEXT: frozenset({STATUS_IN_PROGRESS}),
    STATUS_COMPLETED: frozenset(),
}


def run_state(state: CheckpointState | None) -> str:
    """Lifecycle state of a run as seen from storage."""
    if state is None:
        return STATUS_NOT_STARTED
    if state.is_completed:
        return STATUS_COMPLETED
    return INTERRUPTED


def transition(current: str, target: str) -> str:
    """Validate a lifecycle transition.

    Raises:
        ValueError: If ``target`` is not reachable from ``current``
    """
    if target not in TRANSITIONS.get(current, frozenset()):
        raise ValueError(f"Invalid run transition: {current} -> {target}")
    return target


# ============================================================================
# Heuristics
# ============================================================================

# Checked in order; the first phase with a matching keyword wins
PHASE_KEYWORDS = (
    ("understanding", ("understand", "clarify")),
    ("investigating", ("investigate", "explore", "examine")),
    ("analyzing", ("analyze", "process", "review")),
    ("implementing", ("implement", "create", "build")),
    ("finalizing", ("finalize", "complete", "conclude")),
)

STRATEGY_INDICATORS = (
    "approach",
    "strategy",
    "plan",
    "method",
    "technique",
    "focus on",
    "concentrate on",
    "prioritize",
    "emphasize",
)
DEFAULT_STRATEGY = "Comprehensive analysis and problem-solving approach"
STRATEGY_LEAD = 50
STRATEGY_WINDOW = 100

INSIGHT_KEYWORDS = (
    "discovered",
    "found",
    "identified",
    "detected",
    "noticed",
    "important",
    "significant",
    "critical",
    "key",
    "main",
)
MIN_INSIGHT_LENGTH = 20
MAX_INSIGHT_LENGTH = 200
MAX_INSIGHTS = 10

RECENT_MESSAGE_COUNT = 5
RECENT_ASSISTANT_COUNT = 3
PREVIEW_CONTEXT_ITEMS = 5
PREVIEW_VALUE_LENGTH = 200
RESUME_INSIGHT_COUNT = 3


def phase_from_tool_count(successful_tools: int) -> str:
    if successful_tools == 0:
        return "understanding"
    if successful_tools < 3:
        return "investigating"
    if successful_tools < 7:
        return "analyzing"
    return "finalizing"


def infer_phase_from_messages(messages: Iterable[ConversationMessage]) -> str | None:
    content = " ".join(m.content for m in messages).lower()
    for phase, keywords in PHASE_KEYWORDS:
        if any(keyword in content for keyword in keywords):
            return phase
    return None


def strategy_from_message(message: str) -> str | None:
    lowered = message.lower()
    positions = [i for i in (lowered.find(ind) for ind in STRATEGY_INDICATORS) if i >= 0]
    if not positions:
        return None
    start = max(0, min(positions) - STRATEGY_LEAD)
    return message[start : start + STRATEGY_WINDOW].strip() or None


def insights_from_message(message: str) -> list[str]:
    insights = []
    for sentence in message.split("."):
        trimmed = sentence.strip()
        if not MIN_INSIGHT_LENGTH <= len(trimmed) <= MAX_INSIGHT_LENGTH:
            continue
        lowered = trimmed.lower()
        if any(keyword in lowered for keyword in INSIGHT_KEYWORDS):
            insights.append(trimmed)
    return insights


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


def _preview(value: Any) -> str:
    text = str(value)
    if len(text) > PREVIEW_VALUE_LENGTH:
        return text[:PREVIEW_VALUE_LENGTH] + "..."
    return text


class ResumeContextBuilder:
    """Reconstructs resume context from a stored checkpoint."""

    def derive_phase(self, state: CheckpointState) -> str:
        """Phase the run was in when interrupted.

        Explicit phase → ``current_phase`` context variable → keywords in the
        last five messages → number of successful tools.
        """
        if state.current_phase:
            return state.current_phase

        explicit = state.context_evolution.current_context.get("current_phase")
        if explicit:
            return str(explicit)

        recent = state.conversation_history[-RECENT_MESSAGE_COUNT:]
        phase = infer_phase_from_messages(recent)
        if phase:
            return phase

        return phase_from_tool_count(len(state.successful_tools))

    def derive_strategy(self, history: Iterable[ConversationMessage]) -> str:
        assistant = [m.content for m in history if m.role == "assistant" and m.content]
        for content in assistant[-RECENT_ASSISTANT_COUNT:]:
            strategy = strategy_from_message(content)
            if strategy:
                return strategy
        return DEFAULT_STRATEGY

    def extract_key_insights(self, history: Iterable[ConversationMessage]) -> list[str]:
        """Insight sentences from assistant messages, deduplicated, at most ten."""
        insights: list[str] = []
        for message in history:
            if message.role != "assistant" or not message.content:
                continue
            for insight in insights_from_message(message.content):
                if insight not in insights:
                    insights.append(insight)
                if len(insights) >= MAX_INSIGHTS:
                    return insights
        return insights

    def build_context_evolution(
        self,
        variables: Mapping[str, Any],
        history: Iterable[ConversationMessage],
        changes: Iterable[ContextChange] = (),
    ) -> ContextEvolution:
        history = list(history)
        return ContextEvolution(
            current_context=dict(variables),
            key_insights=self.extract_key_insights(history),
            changes=list(changes),
        )

    def build_continuation_message(self, state: CheckpointState) -> ConversationMessage:
        """Synthesize the system message that tells the agent where it left off."""
        completed = [t.function_name for t in state.successful_tools]
        insights = state.context_evolution.key_insights[-RESUME_INSIGHT_COUNT:]
        context = state.context_evolution.current_context
        phase = self.derive_phase(state)
        strategy = state.current_strategy or self.derive_strategy(state.conversation_history)
        duration = (state.last_activity - state.start_time).total_seconds()

        context_lines = [
            f"• {key}: {_preview(value)}"
            for key, value in list(context.items())[:PREVIEW_CONTEXT_ITEMS]
        ]

        lines = [
            "WORKFLOW RESUME CONTEXT - CONTINUE FROM WHERE YOU LEFT OFF",
            "",
            "PREVIOUS SESSION SUMMARY:",
            f"• Workflow: {state.workflow_id}",
            f"• Phase when interrupted: {phase}",
            f"• Last strategy: {strategy}",
            f"• Session duration: {_format_duration(duration)}",
            "",
            "COMPLETED WORK (DO NOT REPEAT):",
            f"• Tools successfully executed: {', '.join(completed)}",
            f"• Key discoveries made: {'; '.join(insights)}",
            f"• Context variables collected: {len(context)} items",
            "",
            "CURRENT STATE:",
            *context_lines,
            "",
            "RESUME INSTRUCTION:",
            "You are resuming this workflow exactly where you left off. "
            "Review the context above to understand:",
            "1. What work you've already completed successfully (DO NOT REPEAT)",
            "2. What insights and context you've gathered so far",
            "3. Where you were in the workflow when it was interrupted",
            "",
            "Continue your work naturally as if this is one continuous session.",
            "Start from where you left off and build upon the work already completed.",
        ]

        logger.info(
            f"Created resume message for workflow {state.workflow_id} with "
            f"{len(completed)} completed tools and {len(insights)} key insights"
        )
        return ConversationMessage(role="system", content="\n".join(lines), timestamp=utc_now())

    def prepare_resume_context(
        self,
        existing_history: Iterable[ConversationMessage],
        state: CheckpointState,
    ) -> list[ConversationMessage]:
        """Prepend the continuation message; the existing history is untouched."""
        messages = [self.build_continuation_message(state), *existing_history]
        logger.debug(
            f"Prepared resume context with {len(messages)} messages for workflow {state.workflow_id}"
        )
        return messages
