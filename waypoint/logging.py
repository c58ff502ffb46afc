"""Logging helpers for Waypoint.

Modules log through the standard ``logging`` tree under the ``waypoint``
namespace. The CLI installs a rich console handler via ``configure_logging``;
library users keep whatever handlers their application configures.

The ``log_*`` helpers keep the messages for recurring events uniform so the
log reads the same whichever component emitted it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from pathlib import Path

    from waypoint.state import CompatibilityReport

ROOT_LOGGER = "waypoint"


def get_logger(name: str) -> logging.Logger:
    """Get a logger in the waypoint namespace."""
    return logging.getLogger(name)


def configure_logging(verbose: bool = False, console: Console | None = None) -> logging.Logger:
    """Attach a rich console handler to the waypoint logger.

    Safe to call more than once; an existing rich handler is replaced.

    Args:
        verbose: Log at DEBUG instead of WARNING
        console: Console to render to (defaults to stderr)

    Returns:
        The configured root waypoint logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return logger


def log_tool_captured(
    logger: logging.Logger,
    workflow_id: str,
    function_name: str,
    success: bool,
) -> None:
    """Log a captured tool invocation."""
    outcome = "succeeded" if success else "failed"
    logger.debug(f"Captured {function_name} ({outcome}) for workflow {workflow_id}")


def log_checkpoint_saved(
    logger: logging.Logger,
    workflow_id: str,
    path: Path,
    size_bytes: int,
) -> None:
    """Log a persisted checkpoint."""
    logger.info(f"Checkpoint saved for workflow {workflow_id}: {path} ({size_bytes} bytes)")


def log_resume_decision(
    logger: logging.Logger,
    workflow_id: str,
    report: CompatibilityReport,
) -> None:
    """Log the outcome of a compatibility check."""
    verdict = "resumable" if report.can_resume else "not resumable"
    logger.info(
        f"Workflow {workflow_id} is {verdict} "
        f"(score: {report.compatibility_score:.2f}, warnings: {len(report.warnings)})"
    )
