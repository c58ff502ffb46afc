"""Checkpoint data model and its JSON document form.

One ``CheckpointState`` exists per workflow run. It is created on the first
captured tool invocation, mutated on every later one, and persisted as a
single JSON document named ``<workflow-id>.json``:

    {
      "metadata": {"id", "file_path", "content_hash", "started_at",
                   "last_checkpoint", "status", ...},
      "completed_tools": [...],
      "conversation_history": [...],
      "context_evolution": {"current_context", "key_insights", "changes"},
      "variables": {...}
    }

Timestamps are ISO 8601 with offset. Optional fields that are None are
omitted from the document.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from waypoint.types import WorkflowId

# Run statuses (the "interrupted" state is never stored; it is inferred
# from a persisted document that is not completed)
STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

MESSAGE_ROLES = frozenset({"system", "user", "assistant", "tool"})


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FunctionCall:
    """A tool call requested by an assistant message."""

    function_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class CompletedTool:
    """Outcome of one captured tool invocation. Never mutated once appended."""

    function_name: str
    parameters: dict[str, Any]
    result: str
    executed_at: datetime
    success: bool
    reasoning: str = ""


@dataclass(frozen=True)
class ConversationMessage:
    """One message of the conversation with the model."""

    role: str  # system, user, assistant, tool
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    tool_calls: tuple[FunctionCall, ...] | None = None
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ContextChange:
    """One entry of the context change log."""

    timestamp: datetime
    key: str
    old_value: Any = None
    new_value: Any = None
    source: str = ""
    reasoning: str = ""


@dataclass
class ContextEvolution:
    """Facts learned during execution plus the log of how they changed."""

    current_context: dict[str, Any] = field(default_factory=dict)
    key_insights: list[str] = field(default_factory=list)
    changes: list[ContextChange] = field(default_factory=list)


@dataclass
class CheckpointState:
    """Everything needed to continue a workflow run without repeating work."""

    workflow_id: WorkflowId
    file_path: str = ""
    content_hash: str = ""
    original_content: str = ""
    start_time: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)
    current_phase: str = ""  # Empty means "derive on resume"
    current_strategy: str = ""
    completed_tools: list[CompletedTool] = field(default_factory=list)
    conversation_history: list[ConversationMessage] = field(default_factory=list)
    context_evolution: ContextEvolution = field(default_factory=ContextEvolution)
    available_tools: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_IN_PROGRESS

    @property
    def successful_tools(self) -> list[CompletedTool]:
        return [t for t in self.completed_tools if t.success]

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass(frozen=True)
class CompatibilityReport:
    """Verdict on whether a stored checkpoint is safe to resume.

    ``compatibility_score`` is always within [0, 1] and ``can_resume`` is
    exactly ``compatibility_score >= threshold`` for the threshold in use.
    """

    can_resume: bool
    compatibility_score: float
    warnings: tuple[str, ...] = ()
    requires_adaptation: bool = False
    adaptations: tuple[str, ...] = ()
    migration_strategies: dict[str, str] = field(default_factory=dict)


# ============================================================================
# Document serialization
# ============================================================================


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def _parse_ts(value: Any, name: str) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"'{name}' must be an ISO timestamp string")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"'{name}' is not a valid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _ensure_dict(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be an object")
    return value


def _ensure_list(value: Any, name: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"'{name}' must be a list")
    return value


def _ensure_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"'{name}' must be a string")
    return value


def _ensure_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{name}' must be a boolean")
    return value


def _without_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _tool_to_dict(tool: CompletedTool) -> dict[str, Any]:
    return {
        "function_name": tool.function_name,
        "parameters": tool.parameters,
        "result": tool.result,
        "executed_at": _format_ts(tool.executed_at),
        "success": tool.success,
        "reasoning": tool.reasoning,
    }


def _tool_from_dict(data: Any) -> CompletedTool:
    data = _ensure_dict(data, "completed_tools[]")
    return CompletedTool(
        function_name=_ensure_str(data.get("function_name"), "function_name"),
        parameters=_ensure_dict(data.get("parameters", {}), "parameters"),
        result=_ensure_str(data.get("result", ""), "result"),
        executed_at=_parse_ts(data.get("executed_at"), "executed_at"),
        success=_ensure_bool(data.get("success"), "success"),
        reasoning=_ensure_str(data.get("reasoning", ""), "reasoning"),
    )


def _message_to_dict(message: ConversationMessage) -> dict[str, Any]:
    tool_calls = None
    if message.tool_calls is not None:
        tool_calls = [
            {
                "function_name": call.function_name,
                "parameters": call.parameters,
                "call_id": call.call_id,
            }
            for call in message.tool_calls
        ]
    return _without_none(
        {
            "role": message.role,
            "content": message.content,
            "timestamp": _format_ts(message.timestamp),
            "tool_calls": tool_calls,
            "tool_call_id": message.tool_call_id,
        }
    )


def _message_from_dict(data: Any) -> ConversationMessage:
    data = _ensure_dict(data, "conversation_history[]")
    role = _ensure_str(data.get("role"), "role")
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unknown message role: {role!r}")

    tool_calls = None
    if "tool_calls" in data:
        tool_calls = tuple(
            FunctionCall(
                function_name=_ensure_str(call.get("function_name"), "function_name"),
                parameters=_ensure_dict(call.get("parameters", {}), "parameters"),
                call_id=_ensure_str(call.get("call_id", ""), "call_id"),
            )
            for call in (
                _ensure_dict(c, "tool_calls[]")
                for c in _ensure_list(data["tool_calls"], "tool_calls")
            )
        )

    tool_call_id = data.get("tool_call_id")
    if tool_call_id is not None:
        tool_call_id = _ensure_str(tool_call_id, "tool_call_id")

    return ConversationMessage(
        role=role,
        content=_ensure_str(data.get("content", ""), "content"),
        timestamp=_parse_ts(data.get("timestamp"), "timestamp"),
        tool_calls=tool_calls,
        tool_call_id=tool_call_id,
    )


def _change_to_dict(change: ContextChange) -> dict[str, Any]:
    return _without_none(
        {
            "timestamp": _format_ts(change.timestamp),
            "key": change.key,
            "old_value": change.old_value,
            "new_value": change.new_value,
            "source": change.source,
            "reasoning": change.reasoning,
        }
    )


def _change_from_dict(data: Any) -> ContextChange:
    data = _ensure_dict(data, "changes[]")
    return ContextChange(
        timestamp=_parse_ts(data.get("timestamp"), "timestamp"),
        key=_ensure_str(data.get("key"), "key"),
        old_value=data.get("old_value"),
        new_value=data.get("new_value"),
        source=_ensure_str(data.get("source", ""), "source"),
        reasoning=_ensure_str(data.get("reasoning", ""), "reasoning"),
    )


def state_to_document(state: CheckpointState) -> dict[str, Any]:
    """Convert a checkpoint to its JSON-ready document."""
    evolution = state.context_evolution
    return {
        "metadata": {
            "id": state.workflow_id,
            "file_path": state.file_path,
            "content_hash": state.content_hash,
            "original_content": state.original_content,
            "started_at": _format_ts(state.start_time),
            "last_checkpoint": _format_ts(state.last_activity),
            "status": state.status,
            "current_phase": state.current_phase,
            "current_strategy": state.current_strategy,
            "available_tools": list(state.available_tools),
        },
        "completed_tools": [_tool_to_dict(t) for t in state.completed_tools],
        "conversation_history": [_message_to_dict(m) for m in state.conversation_history],
        "context_evolution": {
            "current_context": dict(evolution.current_context),
            "key_insights": list(evolution.key_insights),
            "changes": [_change_to_dict(c) for c in evolution.changes],
        },
        "variables": dict(state.variables),
    }


def state_from_document(document: Any) -> CheckpointState:
    """Rebuild a checkpoint from its document.

    Completed tools and conversation history are re-sorted chronologically
    (stable, so entries sharing a timestamp keep their stored order).

    Raises:
        ValueError: If the document does not match the expected shape
    """
    document = _ensure_dict(document, "document")
    meta = _ensure_dict(document.get("metadata"), "metadata")
    evolution = _ensure_dict(document.get("context_evolution", {}), "context_evolution")

    tools = [
        _tool_from_dict(t) for t in _ensure_list(document.get("completed_tools", []), "completed_tools")
    ]
    messages = [
        _message_from_dict(m)
        for m in _ensure_list(document.get("conversation_history", []), "conversation_history")
    ]
    changes = [
        _change_from_dict(c) for c in _ensure_list(evolution.get("changes", []), "changes")
    ]
    insights = [
        _ensure_str(i, "key_insights[]")
        for i in _ensure_list(evolution.get("key_insights", []), "key_insights")
    ]
    available = [
        _ensure_str(t, "available_tools[]")
        for t in _ensure_list(meta.get("available_tools", []), "available_tools")
    ]

    workflow_id = _ensure_str(meta.get("id"), "id")
    if not workflow_id:
        raise ValueError("'id' must not be empty")

    return CheckpointState(
        workflow_id=WorkflowId(workflow_id),
        file_path=_ensure_str(meta.get("file_path", ""), "file_path"),
        content_hash=_ensure_str(meta.get("content_hash", ""), "content_hash"),
        original_content=_ensure_str(meta.get("original_content", ""), "original_content"),
        start_time=_parse_ts(meta.get("started_at"), "started_at"),
        last_activity=_parse_ts(meta.get("last_checkpoint"), "last_checkpoint"),
        current_phase=_ensure_str(meta.get("current_phase", ""), "current_phase"),
        current_strategy=_ensure_str(meta.get("current_strategy", ""), "current_strategy"),
        completed_tools=sorted(tools, key=lambda t: t.executed_at),
        conversation_history=sorted(messages, key=lambda m: m.timestamp),
        context_evolution=ContextEvolution(
            current_context=_ensure_dict(evolution.get("current_context", {}), "current_context"),
            key_insights=insights,
            changes=changes,
        ),
        available_tools=available,
        variables=_ensure_dict(document.get("variables", {}), "variables"),
        status=_ensure_str(meta.get("status", STATUS_IN_PROGRESS), "status"),
    )
