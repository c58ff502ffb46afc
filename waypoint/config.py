"""Configuration management for Waypoint.

Storage Structure
-----------------
~/.waypoint/                  # User-level
├── resume.yaml               # User defaults
└── resume/                   # Checkpoints for runs outside a project

<project>/.waypoint/          # Project-level
├── resume.yaml               # Project overrides (shareable)
└── resume/                   # One <workflow-id>.json per run

Cascade: project .waypoint/resume.yaml → user ~/.waypoint/resume.yaml → defaults.
``WAYPOINT_RESUME_DIR`` overrides the storage location regardless of file config.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

# Standard paths
WAYPOINT_DIR = Path.home() / ".waypoint"
CONFIG_FILENAME = "resume.yaml"
RESUME_SUBDIR = "resume"
STORAGE_ENV_VAR = "WAYPOINT_RESUME_DIR"


@dataclass(frozen=True)
class OptimizerLimits:
    """Caps applied to a checkpoint before it is persisted."""

    max_completed_tools: int = 50
    max_chat_history: int = 20
    max_context_variables: int = 30
    max_key_insights: int = 10
    max_context_changes: int = 20
    recent_change_window_minutes: int = 60


@dataclass(frozen=True)
class CompatibilityThresholds:
    """Scoring parameters for resume compatibility.

    The defaults were tuned by hand; treat them as knobs, not invariants.
    """

    resume_threshold: float = 0.6
    missing_tool_penalty: float = 0.7
    similarity_warning_threshold: float = 0.8
    adaptation_threshold: float = 0.5


@dataclass
class ResumeConfig:
    """User-configurable parameters for checkpoint capture and resume."""

    # Storage
    storage_location: str | None = None
    retention_days: int = 7
    enable_atomic_writes: bool = True
    enable_backup: bool = True
    checkpoint_frequency: int = 1  # Persist after every N captured invocations
    max_file_size_bytes: int = 1024 * 1024
    persist_in_background: bool = False

    # Optimizer caps
    max_completed_tools: int = 50
    max_chat_history: int = 20
    max_context_variables: int = 30
    max_key_insights: int = 10
    max_context_changes: int = 20
    recent_change_window_minutes: int = 60

    # Compatibility scoring
    resume_threshold: float = 0.6
    missing_tool_penalty: float = 0.7
    similarity_warning_threshold: float = 0.8
    adaptation_threshold: float = 0.5

    @classmethod
    def load(cls, waypoint_dir: Path) -> "ResumeConfig":
        """Load config from a waypoint directory.

        Args:
            waypoint_dir: Path to .waypoint directory (project-local or user-level)

        Returns:
            ResumeConfig with values from file, or defaults if not found
        """
        config_path = waypoint_dir / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path) as f:
                overrides = yaml.safe_load(f) or {}
            if not isinstance(overrides, dict):
                overrides = {}
            # Only apply known fields
            valid_fields = {f.name for f in fields(cls)}
            valid_overrides = {k: v for k, v in overrides.items() if k in valid_fields}
            return cls(**valid_overrides)
        return cls()

    def save(self, waypoint_dir: Path) -> Path:
        """Save non-default values to a waypoint directory.

        Args:
            waypoint_dir: Path to .waypoint directory

        Returns:
            Path to saved config file
        """
        waypoint_dir.mkdir(parents=True, exist_ok=True)
        config_path = waypoint_dir / CONFIG_FILENAME

        defaults = ResumeConfig()
        data = {
            key: value
            for key, value in self.to_dict().items()
            if getattr(defaults, key) != value
        }
        if not data:
            data = {"_version": 1}  # Marker that config was explicitly saved

        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
        config_path.chmod(0o600)

        return config_path

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def optimizer_limits(self) -> OptimizerLimits:
        return OptimizerLimits(
            max_completed_tools=self.max_completed_tools,
            max_chat_history=self.max_chat_history,
            max_context_variables=self.max_context_variables,
            max_key_insights=self.max_key_insights,
            max_context_changes=self.max_context_changes,
            recent_change_window_minutes=self.recent_change_window_minutes,
        )

    def compatibility_thresholds(self) -> CompatibilityThresholds:
        return CompatibilityThresholds(
            resume_threshold=self.resume_threshold,
            missing_tool_penalty=self.missing_tool_penalty,
            similarity_warning_threshold=self.similarity_warning_threshold,
            adaptation_threshold=self.adaptation_threshold,
        )


def get_resume_config(project_path: Path | None = None) -> ResumeConfig:
    """Load ResumeConfig with project → user → default cascade.

    Args:
        project_path: Explicit project path. If None, auto-detects.

    Returns:
        ResumeConfig with merged values
    """
    if project_path is None:
        project_path = detect_project_root()

    if project_path is not None:
        project_dir = project_path / ".waypoint"
        if (project_dir / CONFIG_FILENAME).exists():
            return ResumeConfig.load(project_dir)

    return ResumeConfig.load(WAYPOINT_DIR)


def get_resume_dir(config: ResumeConfig, project_path: Path | None = None) -> Path:
    """Resolve the directory holding checkpoint documents.

    Priority: WAYPOINT_RESUME_DIR env var → config.storage_location →
    project-local .waypoint/resume (if the project has .waypoint) → ~/.waypoint/resume.
    """
    if env_dir := os.environ.get(STORAGE_ENV_VAR):
        return Path(env_dir).expanduser()

    if config.storage_location:
        location = Path(config.storage_location).expanduser()
        if not location.is_absolute() and project_path is not None:
            return project_path / location
        return location

    if project_path is None:
        project_path = detect_project_root()
    if project_path is not None and (project_path / ".waypoint").is_dir():
        return project_path / ".waypoint" / RESUME_SUBDIR

    return WAYPOINT_DIR / RESUME_SUBDIR


def detect_project_root(start_path: Path | None = None) -> Path | None:
    """Detect project root by traversing up from start_path looking for markers.

    Looks for (in order of priority):
    1. A .waypoint directory
    2. A .git directory (git repository root)

    Traversal stops at the home directory.

    Args:
        start_path: Starting path for traversal. Defaults to cwd.

    Returns:
        Project root path, or None if no project markers found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    home = Path.home()

    while current != current.parent:
        if current == home:
            break

        if (current / ".waypoint").is_dir():
            return current

        if (current / ".git").exists():
            return current

        current = current.parent

    return None
