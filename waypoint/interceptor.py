"""Execution interceptor: records tool invocations into the checkpoint.

Wraps each tool call made by the conversation engine. The outcome is
appended to the in-memory checkpoint of the ambient workflow run and then
persisted. Capture is strictly non-invasive:

- If no workflow id can be resolved, the call runs uncaptured
- The tool's own exception is always re-raised unchanged
- Capture or persistence failures are logged, never raised

Example:
    interceptor = ExecutionInterceptor(manager)

    @interceptor.tool(description="Read a file from the project")
    def read_file(path: str, workflow_id: str) -> str:
        ...
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from waypoint.errors import CaptureSkipped, StorageError
from waypoint.logging import log_tool_captured
from waypoint.state import CompletedTool, utc_now
from waypoint.types import WorkflowId

if TYPE_CHECKING:
    from waypoint.manager import ResumeStateManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Parameter names containing any of these are never persisted
SENSITIVE_PARAMETER_PATTERNS = (
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "internal_",
    "_internal",
    "system_",
    "_system",
    "kernel",
    "_kernel",
    "context",
    "_context",
)

FAILED_TOOL_REASONING = "Tool execution failed"


@dataclass(frozen=True)
class ToolInvocation:
    """What the conversation engine exposes about one tool call."""

    function_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    description: str = ""


# ============================================================================
# Workflow id resolution
# ============================================================================


def _as_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _from_argument(invocation: ToolInvocation) -> str | None:
    return _as_id(invocation.arguments.get("workflow_id"))


def _from_metadata(invocation: ToolInvocation) -> str | None:
    return _as_id(invocation.metadata.get("workflow_id"))


def _from_execution_context(invocation: ToolInvocation) -> str | None:
    context = invocation.arguments.get("context")
    if context is None:
        return None
    if isinstance(context, Mapping):
        return _as_id(context.get("workflow_id"))
    return _as_id(getattr(context, "workflow_id", None))


def _from_naming_convention(invocation: ToolInvocation) -> str | None:
    for name, value in invocation.arguments.items():
        lowered = name.lower()
        if "workflow" in lowered and "id" in lowered:
            return _as_id(value)
    return None


# Tried in order; the first strategy that yields an id wins
WORKFLOW_ID_RESOLVERS: tuple[tuple[str, Callable[[ToolInvocation], str | None]], ...] = (
    ("argument", _from_argument),
    ("metadata", _from_metadata),
    ("execution_context", _from_execution_context),
    ("naming_convention", _from_naming_convention),
)


def resolve_workflow_id(invocation: ToolInvocation) -> WorkflowId | None:
    """Find the ambient workflow id for an invocation, or None."""
    for name, resolver in WORKFLOW_ID_RESOLVERS:
        workflow_id = resolver(invocation)
        if workflow_id:
            logger.debug(f"Resolved workflow id {workflow_id} via {name}")
            return WorkflowId(workflow_id)
    return None


# ============================================================================
# Capture helpers
# ============================================================================


def is_sensitive_parameter(name: str) -> bool:
    lowered = name.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PARAMETER_PATTERNS)


def extract_parameters(arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Copy arguments that are safe to persist.

    Sensitive names are dropped. Values that cannot be represented in JSON
    are replaced by their type name.
    """
    parameters: dict[str, Any] = {}
    for name, value in arguments.items():
        if is_sensitive_parameter(name):
            continue
        if value is None:
            parameters[name] = ""
            continue
        try:
            json.dumps(value)
            parameters[name] = value
        except (TypeError, ValueError):
            parameters[name] = type(value).__name__
    return parameters


def derive_reasoning(invocation: ToolInvocation) -> str:
    reasoning = invocation.arguments.get("reasoning")
    if reasoning is not None:
        return str(reasoning)

    reasoning = invocation.metadata.get("ai_reasoning")
    if reasoning is not None:
        return str(reasoning)

    if invocation.description:
        return f"AI selected {invocation.function_name}: {invocation.description}"

    return f"AI tool selection: {invocation.function_name}"


def _stringify(result: Any) -> str:
    return "" if result is None else str(result)


class ExecutionInterceptor:
    """Observes tool calls and feeds their outcomes to a ResumeStateManager."""

    def __init__(
        self,
        manager: ResumeStateManager,
        persist_in_background: bool | None = None,
        on_fatal_storage_error: Callable[[str, StorageError], None] | None = None,
    ):
        self.manager = manager
        if persist_in_background is None:
            persist_in_background = manager.config.persist_in_background
        self.persist_in_background = persist_in_background
        self.on_fatal_storage_error = on_fatal_storage_error or self._disable_capture
        self._disabled: set[str] = set()
        self._pending: set[asyncio.Task] = set()

    def _disable_capture(self, workflow_id: str, error: StorageError) -> None:
        logger.error(
            f"Checkpoint storage for workflow {workflow_id} is unrecoverable, "
            f"continuing without resumability: {error}"
        )
        self._disabled.add(workflow_id)

    def is_capturing(self, workflow_id: str) -> bool:
        return workflow_id not in self._disabled

    def _target(self, invocation: ToolInvocation, workflow_id: str | None) -> WorkflowId:
        resolved = WorkflowId(workflow_id) if workflow_id else resolve_workflow_id(invocation)
        if resolved is None:
            raise CaptureSkipped(f"No workflow id for {invocation.function_name}")
        if not self.is_capturing(resolved):
            raise CaptureSkipped(f"Capture disabled for workflow {resolved}")
        return resolved

    def _succeeded(self, invocation: ToolInvocation, result: Any, started) -> CompletedTool:
        return CompletedTool(
            function_name=invocation.function_name,
            parameters=extract_parameters(invocation.arguments),
            result=_stringify(result),
            executed_at=started,
            success=True,
            reasoning=derive_reasoning(invocation),
        )

    def _failed(self, invocation: ToolInvocation, error: Exception, started) -> CompletedTool:
        return CompletedTool(
            function_name=invocation.function_name,
            parameters=extract_parameters(invocation.arguments),
            result=f"ERROR: {error}",
            executed_at=started,
            success=False,
            reasoning=FAILED_TOOL_REASONING,
        )

    def _capture(self, workflow_id: WorkflowId, tool: CompletedTool) -> None:
        """Hand a tool outcome to the manager. Never raises."""
        try:
            self.manager.track_completed_tool(workflow_id, tool)
            log_tool_captured(logger, workflow_id, tool.function_name, tool.success)
        except StorageError as e:
            if e.recoverable:
                logger.warning(f"Failed to persist checkpoint for workflow {workflow_id}: {e}")
            else:
                self.on_fatal_storage_error(workflow_id, e)
        except Exception as e:
            logger.warning(
                f"Failed to capture {tool.function_name} for workflow {workflow_id}: {e}"
            )

    def invoke(
        self,
        invocation: ToolInvocation,
        call: Callable[[], T],
        workflow_id: str | None = None,
    ) -> T:
        """Run a tool call synchronously and capture its outcome.

        Args:
            invocation: Name, arguments and metadata of the call
            call: Zero-argument callable that performs the tool call
            workflow_id: Explicit id, overriding the resolver chain

        Returns:
            Whatever ``call`` returned
        """
        try:
            target = self._target(invocation, workflow_id)
        except CaptureSkipped as e:
            logger.debug(f"Skipping capture: {e}")
            return call()

        started = utc_now()
        try:
            result = call()
        except Exception as e:
            self._capture(target, self._failed(invocation, e, started))
            logger.warning(
                f"Captured failed tool execution {invocation.function_name} "
                f"in workflow {target}: {e}"
            )
            raise

        self._capture(target, self._succeeded(invocation, result, started))
        return result

    async def ainvoke(
        self,
        invocation: ToolInvocation,
        call: Callable[[], Awaitable[T]],
        workflow_id: str | None = None,
    ) -> T:
        """Async variant of ``invoke``.

        Persistence runs in a worker thread. When ``persist_in_background``
        is set the call returns before the checkpoint hits disk; use
        ``drain()`` to wait for outstanding saves.
        """
        try:
            target = self._target(invocation, workflow_id)
        except CaptureSkipped as e:
            logger.debug(f"Skipping capture: {e}")
            return await call()

        started = utc_now()
        try:
            result = await call()
        except Exception as e:
            await self._acapture(target, self._failed(invocation, e, started))
            logger.warning(
                f"Captured failed tool execution {invocation.function_name} "
                f"in workflow {target}: {e}"
            )
            raise

        await self._acapture(target, self._succeeded(invocation, result, started))
        return result

    async def _acapture(self, workflow_id: WorkflowId, tool: CompletedTool) -> None:
        if not self.persist_in_background:
            await asyncio.to_thread(self._capture, workflow_id, tool)
            return

        task = asyncio.create_task(asyncio.to_thread(self._capture, workflow_id, tool))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for all background captures to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def tool(
        self,
        func: Callable | None = None,
        *,
        name: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        """Decorator that captures every call of a tool function.

        Call arguments are bound to the function signature so parameters
        are recorded by name. Works for both sync and async functions.
        """

        def decorator(fn: Callable) -> Callable:
            signature = inspect.signature(fn)
            tool_name = name or fn.__name__
            doc = inspect.getdoc(fn) or ""
            tool_description = description if description is not None else doc.split("\n")[0]
            tool_metadata = dict(metadata or {})

            def build(args: tuple, kwargs: dict) -> ToolInvocation:
                bound = signature.bind(*args, **kwargs)
                bound.apply_defaults()
                arguments: dict[str, Any] = {}
                for param_name, value in bound.arguments.items():
                    kind = signature.parameters[param_name].kind
                    if kind is inspect.Parameter.VAR_KEYWORD:
                        arguments.update(value)
                    elif kind is inspect.Parameter.VAR_POSITIONAL:
                        arguments[param_name] = list(value)
                    else:
                        arguments[param_name] = value
                return ToolInvocation(
                    function_name=tool_name,
                    arguments=arguments,
                    metadata=tool_metadata,
                    description=tool_description,
                )

            if inspect.iscoroutinefunction(fn):

                @functools.wraps(fn)
                async def async_wrapper(*args, **kwargs):
                    invocation = build(args, kwargs)
                    return await self.ainvoke(invocation, lambda: fn(*args, **kwargs))

                return async_wrapper

            @functools.wraps(fn)
            def wrapper(*args, **kwargs):
                invocation = build(args, kwargs)
                return self.invoke(invocation, lambda: fn(*args, **kwargs))

            return wrapper

        if func is not None:
            return decorator(func)
        return decorator
