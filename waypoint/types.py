"""Branded identifier types for Waypoint.

NewType keeps workflow identifiers distinct from arbitrary strings for the
type checker while costing nothing at runtime.
"""

from typing import NewType

WorkflowId = NewType("WorkflowId", str)
