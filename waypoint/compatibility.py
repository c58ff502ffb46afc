"""Resume compatibility scoring.

Decides whether a stored checkpoint can safely be resumed against the
current workflow definition and tool set. Divergence never raises: the
validator always returns a ``CompatibilityReport``.

Scoring:
1. Identical content hash, or no recorded hash: score starts at 1.0
2. Otherwise score = normalized Levenshtein similarity of old and new content
3. Any previously used tool that is no longer available: score *= penalty (once)
4. can_resume = score >= resume threshold
"""

import hashlib
import logging
from collections.abc import Iterable

import numpy as np

from waypoint.config import CompatibilityThresholds
from waypoint.logging import log_resume_decision
from waypoint.state import CheckpointState, CompatibilityReport

logger = logging.getLogger(__name__)

RESET_WORKFLOW = "reset_workflow"
PARTIAL_CONTEXT = "partial_context"

DEFAULT_MIGRATION_STRATEGIES = {
    RESET_WORKFLOW: "Start workflow from the beginning",
    PARTIAL_CONTEXT: "Preserve context but restart execution",
}


def content_hash(content: str) -> str:
    """Lowercase hex SHA-256 of the UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def levenshtein_distance(source: str, target: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if source == target:
        return 0
    # Vectorize over the shorter string
    if len(source) < len(target):
        source, target = target, source
    if not target:
        return len(source)

    codes = np.array([ord(c) for c in target], dtype=np.int64)
    offsets = np.arange(len(target) + 1, dtype=np.int64)
    previous = offsets.copy()

    for i, char in enumerate(source, start=1):
        cost = (codes != ord(char)).astype(np.int64)
        current = np.empty_like(previous)
        current[0] = i
        current[1:] = np.minimum(previous[1:] + 1, previous[:-1] + cost)
        # Fold in insertions: row[j] = min(row[j], row[j-1] + 1)
        previous = np.minimum.accumulate(current - offsets) + offsets

    return int(previous[-1])


def content_similarity(original: str, current: str) -> float:
    """1 - distance / max length, floored at 0. Two empty strings are identical."""
    max_length = max(len(original), len(current))
    if max_length == 0:
        return 1.0
    similarity = 1.0 - levenshtein_distance(original, current) / max_length
    return max(0.0, similarity)


class CompatibilityValidator:
    """Scores a stored checkpoint against the current workflow."""

    def __init__(self, thresholds: CompatibilityThresholds | None = None):
        self.thresholds = thresholds or CompatibilityThresholds()

    def validate(
        self,
        state: CheckpointState,
        current_content: str,
        available_tools: Iterable[str] | None = None,
    ) -> CompatibilityReport:
        """Build a compatibility report.

        Args:
            state: The stored checkpoint
            current_content: Raw text of the workflow definition as it is now
            available_tools: Tool names available now; None skips the tool check

        Returns:
            CompatibilityReport (never raises for ordinary divergence)
        """
        thresholds = self.thresholds
        warnings: list[str] = []
        adaptations: list[str] = []
        requires_adaptation = False
        score = 1.0

        if not state.content_hash:
            # Run was created by tool capture before any definition was recorded
            warnings.append(
                "Workflow definition was not recorded for this run; content changes cannot be checked"
            )
        elif content_hash(current_content) != state.content_hash:
            similarity = content_similarity(state.original_content, current_content)
            score = similarity

            if similarity < thresholds.similarity_warning_threshold:
                warnings.append(
                    f"Workflow content has changed significantly since last execution "
                    f"(similarity: {similarity:.2f})"
                )

            if similarity < thresholds.adaptation_threshold:
                requires_adaptation = True
                adaptations.append(
                    f"{RESET_WORKFLOW}: Consider resetting workflow state due to major changes"
                )

        if available_tools is not None:
            used = {t.function_name for t in state.successful_tools}
            missing = sorted(used - set(available_tools))
            if missing:
                score *= thresholds.missing_tool_penalty
                warnings.append(
                    f"Some previously used tools are no longer available: {', '.join(missing)}"
                )

        score = min(1.0, max(0.0, score))
        can_resume = score >= thresholds.resume_threshold

        report = CompatibilityReport(
            can_resume=can_resume,
            compatibility_score=score,
            warnings=tuple(warnings),
            requires_adaptation=requires_adaptation,
            adaptations=tuple(adaptations),
            migration_strategies={} if can_resume else dict(DEFAULT_MIGRATION_STRATEGIES),
        )
        log_resume_decision(logger, state.workflow_id, report)
        return report


def missing_state_report() -> CompatibilityReport:
    """Report for a workflow id with no stored checkpoint."""
    return CompatibilityReport(
        can_resume=False,
        compatibility_score=0.0,
        warnings=("No saved state found for this workflow",),
        migration_strategies=dict(DEFAULT_MIGRATION_STRATEGIES),
    )
