"""Error types for Waypoint.

Two layers:

- Low-level helpers (atomic writes) return ``Result`` values (``Ok``/``Err``)
  carrying a ``WaypointError`` payload, so callers decide how to react.
- Component boundaries raise exceptions derived from ``ResumeError``.

Compatibility rejection is never an exception: the validator always returns
a report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class WaypointError:
    """Structured error payload carried by ``Err``."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Ok[T] | Err[E]


def ok(value: T) -> Ok[T]:
    """Wrap a value in ``Ok``."""
    return Ok(value)


def err(error: E) -> Err[E]:
    """Wrap an error in ``Err``."""
    return Err(error)


# ============================================================================
# Exceptions
# ============================================================================


class ResumeError(Exception):
    """Base class for all resume subsystem errors."""


class StorageError(ResumeError):
    """Persisting a checkpoint failed.

    ``recoverable`` is False when the backup could not be restored either,
    which leaves the on-disk checkpoint in an unknown state.
    """

    def __init__(self, message: str, code: str = "STORAGE_ERROR", recoverable: bool = True):
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable

    @classmethod
    def from_error(cls, error: WaypointError) -> StorageError:
        """Build from a ``WaypointError`` returned by the atomic writer."""
        if error.code == "ATOMIC_CANCELLED":
            return SaveCancelled(error.message)
        return cls(
            error.message,
            code=error.code,
            recoverable=error.code != "ATOMIC_RESTORE_FAILED",
        )


class SaveCancelled(StorageError):
    """Save aborted before rename; the previous file is untouched."""

    def __init__(self, message: str = "Save cancelled before commit"):
        super().__init__(message, code="ATOMIC_CANCELLED", recoverable=True)


class DeserializationError(ResumeError):
    """A persisted checkpoint document is corrupt or fails schema checks."""

    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"Cannot read checkpoint {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class CaptureSkipped(ResumeError):
    """Capture of a tool invocation was skipped (never escapes the interceptor)."""


def format_error(error: WaypointError | ResumeError) -> str:
    """Render an error for display on the command line."""
    if isinstance(error, WaypointError):
        return f"[{error.code}] {error.message}"
    code = getattr(error, "code", None)
    if code:
        return f"[{code}] {error}"
    return str(error)
