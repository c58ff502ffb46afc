"""Tests for waypoint.optimizer module."""

from datetime import timedelta

import pytest

from waypoint.config import OptimizerLimits
from waypoint.optimizer import (
    StateOptimizer,
    estimate_state_size,
    importance_score,
    is_important_change,
)
from waypoint.state import CheckpointState, ContextChange
from waypoint.types import WorkflowId


@pytest.fixture
def optimizer() -> StateOptimizer:
    return StateOptimizer(OptimizerLimits())


def _state(**kwargs) -> CheckpointState:
    return CheckpointState(workflow_id=WorkflowId("wf-opt"), **kwargs)


class TestImportanceScore:
    """Tests for importance_score()."""

    def test_base_score(self):
        """Unremarkable variables score 1.0."""
        assert importance_score("notes", "plain") == 1.0

    def test_critical_key_is_case_insensitive(self):
        """Critical keys triple the score regardless of case."""
        assert importance_score("Project_Path", "x") == pytest.approx(3.0 * 2.0)
        assert importance_score("main_goal", "x") == 3.0

    def test_value_keywords(self):
        """Discovery and severity terms in the value multiply the score."""
        assert importance_score("notes", "Discovered a bug") == 2.0
        assert importance_score("notes", "a critical error") == 2.5
        assert importance_score("notes", "found a critical issue") == 5.0

    def test_key_suffixes(self):
        """Path, file and config suffixes double the score."""
        assert importance_score("output_file", "x") == 2.0
        assert importance_score("build_config", "x") == 2.0

    def test_none_value(self):
        """None values only get key-based multipliers."""
        assert importance_score("notes", None) == 1.0


class TestIsImportantChange:
    """Tests for is_important_change()."""

    def _change(self, base_time, minutes_ago=120, key="notes", **kwargs):
        return ContextChange(
            timestamp=base_time - timedelta(minutes=minutes_ago), key=key, **kwargs
        )

    def test_recent_change_is_important(self, base_time):
        """Changes within the last hour are kept."""
        assert is_important_change(self._change(base_time, minutes_ago=30), base_time)

    def test_old_plain_change_is_not_important(self, base_time):
        """Old changes with no other signal are dropped."""
        assert not is_important_change(self._change(base_time), base_time)

    def test_critical_source(self, base_time):
        """Critical sources are matched by substring."""
        change = self._change(base_time, source="from_user_input_form")
        assert is_important_change(change, base_time)

    def test_critical_key(self, base_time):
        """Changes to critical keys are kept."""
        assert is_important_change(self._change(base_time, key="next_steps"), base_time)

    def test_reasoning_keyword(self, base_time):
        """Severity words in the reasoning keep the change."""
        change = self._change(base_time, reasoning="Discovered a failing build")
        assert is_important_change(change, base_time)


class TestOptimizeCompletedTools:
    """Tool list bounding."""

    def test_sixty_tools_keep_fifty_successful_in_order(self, optimizer, make_tool):
        """60 tools (5 failed) are cut to 50 successful, chronological."""
        failed_positions = {3, 17, 29, 41, 58}
        tools = [make_tool(f"tool_{i}", i, success=i not in failed_positions) for i in range(60)]
        state = _state(completed_tools=tools)

        result = optimizer.optimize(state)

        assert len(result.completed_tools) == 50
        assert all(t.success for t in result.completed_tools)
        times = [t.executed_at for t in result.completed_tools]
        assert times == sorted(times)
        # The oldest successful ones were dropped
        assert result.completed_tools[-1].function_name == "tool_59"
        assert result.completed_tools[0].function_name == "tool_6"

    def test_under_cap_is_untouched(self, optimizer, make_tool):
        """Tool lists within the cap keep failed entries."""
        tools = [make_tool("a", 0), make_tool("b", 1, success=False)]

        result = optimizer.optimize(_state(completed_tools=tools))

        assert result.completed_tools == tools


class TestOptimizeHistory:
    """Conversation history bounding."""

    def test_keeps_most_recent_in_order(self, optimizer, make_message):
        """Only the 20 most recent messages survive, in chronological order."""
        messages = [make_message(f"message {i}", index=i) for i in range(30)]
        messages.reverse()

        result = optimizer.optimize(_state(conversation_history=messages))

        assert [m.content for m in result.conversation_history] == [
            f"message {i}" for i in range(10, 30)
        ]


class TestOptimizeContext:
    """Context variable bounding."""

    def test_critical_keys_survive(self, optimizer):
        """Critical variables survive while capacity allows."""
        context = {f"var_{i}": "x" for i in range(40)}
        context["project_path"] = "/src"
        context["main_goal"] = "ship"
        state = _state()
        state.context_evolution.current_context.update(context)

        result = optimizer.optimize(state)

        bounded = result.context_evolution.current_context
        assert len(bounded) == 30
        assert "project_path" in bounded
        assert "main_goal" in bounded

    def test_ties_keep_insertion_order(self, optimizer):
        """Equal scores are broken by insertion order, which is preserved."""
        state = _state()
        state.context_evolution.current_context.update({f"var_{i}": "x" for i in range(35)})

        result = optimizer.optimize(state)

        assert list(result.context_evolution.current_context) == [f"var_{i}" for i in range(30)]

    def test_higher_score_displaces_earlier_entries(self, optimizer):
        """A late high-scoring variable displaces the last low-scoring one."""
        state = _state()
        context = {f"var_{i}": "x" for i in range(30)}
        context["late_finding"] = "found an error"
        state.context_evolution.current_context.update(context)

        result = optimizer.optimize(state)

        keys = list(result.context_evolution.current_context)
        assert "late_finding" in keys
        assert "var_29" not in keys
        assert keys[-1] == "late_finding"


class TestOptimizeInsightsAndChanges:
    """Key insight and change log bounding."""

    def test_keeps_last_ten_insights(self, optimizer):
        """Only the ten most recently appended insights remain."""
        state = _state()
        state.context_evolution.key_insights.extend(f"insight {i}" for i in range(15))

        result = optimizer.optimize(state)

        assert result.context_evolution.key_insights == [f"insight {i}" for i in range(5, 15)]

    def test_changes_filtered_and_capped(self, optimizer, base_time):
        """Over the cap, unimportant old changes go and at most 20 remain."""
        old = [
            ContextChange(timestamp=base_time - timedelta(days=1, minutes=i), key=f"k{i}")
            for i in range(10)
        ]
        recent = [
            ContextChange(timestamp=base_time - timedelta(minutes=i), key=f"r{i}")
            for i in range(25)
        ]
        state = _state()
        state.context_evolution.changes.extend(old + recent)

        result = optimizer.optimize(state, now=base_time)

        changes = result.context_evolution.changes
        assert len(changes) == 20
        assert all(c.key.startswith("r") for c in changes)
        times = [c.timestamp for c in changes]
        assert times == sorted(times)
        # Most recent preferred
        assert changes[-1].key == "r0"

    def test_changes_under_cap_untouched(self, optimizer, base_time):
        """Change logs within the cap are not filtered."""
        changes = [ContextChange(timestamp=base_time - timedelta(days=3), key="notes")]
        state = _state()
        state.context_evolution.changes.extend(changes)

        result = optimizer.optimize(state, now=base_time)

        assert result.context_evolution.changes == changes


class TestOptimizerPurity:
    """The optimizer never mutates its input."""

    def test_input_not_mutated(self, optimizer, make_tool):
        """Optimizing returns a new state and leaves the input intact."""
        tools = [make_tool(f"t{i}", i) for i in range(55)]
        state = _state(completed_tools=list(tools))
        state.context_evolution.key_insights.extend(f"i{i}" for i in range(12))

        result = optimizer.optimize(state)

        assert result is not state
        assert len(state.completed_tools) == 55
        assert len(state.context_evolution.key_insights) == 12

    def test_deterministic(self, optimizer, sample_state, base_time):
        """Same input and clock give the same output."""
        assert optimizer.optimize(sample_state, now=base_time) == optimizer.optimize(
            sample_state, now=base_time
        )

    def test_custom_limits(self, make_tool):
        """Caps come from the limits object."""
        optimizer = StateOptimizer(OptimizerLimits(max_completed_tools=2))
        state = _state(completed_tools=[make_tool("t", i) for i in range(5)])

        assert len(optimizer.optimize(state).completed_tools) == 2


class TestEstimateStateSize:
    """Tests for estimate_state_size()."""

    def test_grows_with_content(self, sample_state, make_tool):
        """Adding a tool increases the estimate."""
        before = estimate_state_size(sample_state)
        sample_state.completed_tools.append(make_tool("another_tool", 10))

        assert estimate_state_size(sample_state) > before
