"""Shared fixtures for waypoint tests."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from waypoint.compatibility import content_hash
from waypoint.config import ResumeConfig
from waypoint.manager import ResumeStateManager
from waypoint.state import (
    CheckpointState,
    CompletedTool,
    ContextEvolution,
    ConversationMessage,
)
from waypoint.store import StateStore
from waypoint.types import WorkflowId

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def make_tool():
    """Factory for CompletedTool entries spaced one minute apart."""

    def _make(
        name: str = "read_file",
        index: int = 0,
        success: bool = True,
        parameters: dict | None = None,
    ) -> CompletedTool:
        return CompletedTool(
            function_name=name,
            parameters=parameters if parameters is not None else {"path": f"src/{index}.py"},
            result="ok" if success else "ERROR: boom",
            executed_at=BASE_TIME + timedelta(minutes=index),
            success=success,
            reasoning=f"AI tool selection: {name}",
        )

    return _make


@pytest.fixture
def make_message():
    """Factory for ConversationMessage entries spaced one minute apart."""

    def _make(content: str, role: str = "assistant", index: int = 0) -> ConversationMessage:
        return ConversationMessage(
            role=role,
            content=content,
            timestamp=BASE_TIME + timedelta(minutes=index),
        )

    return _make


@pytest.fixture
def sample_state(make_tool, make_message) -> CheckpointState:
    """wf-1: three successful tools and five context variables."""
    content = "---\nname: review\n---\nReview the project and report issues.\n"

    return CheckpointState(
        workflow_id=WorkflowId("wf-1"),
        file_path="workflows/review.prompt.md",
        content_hash=content_hash(content),
        original_content=content,
        start_time=BASE_TIME,
        last_activity=BASE_TIME + timedelta(minutes=5),
        completed_tools=[
            make_tool("read_file", 0),
            make_tool("analyze_project", 1),
            make_tool("write_file", 2),
        ],
        conversation_history=[
            make_message("Please review the project.", role="user", index=0),
            make_message("I found that the main module has no tests.", index=1),
        ],
        context_evolution=ContextEvolution(
            current_context={
                "project_path": "/src/app",
                "main_goal": "review",
                "target_framework": "net8.0",
                "notes": "plain",
                "step": 3,
            },
            key_insights=["I found that the main module has no tests"],
        ),
        available_tools=["read_file", "analyze_project", "write_file"],
        variables={"project_path": "/src/app"},
    )


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "resume", ResumeConfig())


@pytest.fixture
def manager(store: StateStore) -> ResumeStateManager:
    return ResumeStateManager(store)
