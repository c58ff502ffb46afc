"""Waypoint: checkpoint and resume for long-running agentic workflows."""

__version__ = "0.4.0"

# Branded types for type-safe IDs
from waypoint.types import WorkflowId

__all__ = [
    "__version__",
    "WorkflowId",
]
