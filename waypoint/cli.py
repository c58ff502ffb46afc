"""Waypoint CLI - inspect, validate and resume interrupted workflow runs."""

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from waypoint import __version__
from waypoint.compatibility import CompatibilityValidator
from waypoint.config import (
    WAYPOINT_DIR,
    ResumeConfig,
    detect_project_root,
    get_resume_config,
    get_resume_dir,
)
from waypoint.errors import DeserializationError, format_error
from waypoint.logging import configure_logging
from waypoint.manager import ResumeStateManager
from waypoint.state import CheckpointState, state_to_document
from waypoint.store import StateStore, validate_workflow_id

console = Console()

# Exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_WORKFLOW_VALIDATION_ERROR = 3
EXIT_INVALID_ARGUMENTS = 8
EXIT_NO_PROGRESS_FOUND = 10
EXIT_AMBIGUOUS_INPUT = 11
EXIT_CORRUPT_STATE = 12


def _load_config() -> ResumeConfig:
    return get_resume_config(detect_project_root())


def _get_store(directory: str | None = None) -> StateStore:
    config = _load_config()
    if directory:
        return StateStore(Path(directory), config)
    return StateStore(get_resume_dir(config, detect_project_root()), config)


def _check_workflow_id(workflow_id: str) -> None:
    try:
        validate_workflow_id(workflow_id)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_INVALID_ARGUMENTS)


def _format_ts(value) -> str:
    return value.isoformat()[:16].replace("T", " ")


def _print_report(report) -> None:
    verdict = "[green]resumable[/green]" if report.can_resume else "[red]not resumable[/red]"
    console.print(f"Compatibility: {verdict} [dim](score: {report.compatibility_score:.2f})[/dim]")
    for warning in report.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")
    for adaptation in report.adaptations:
        console.print(f"  [cyan]→[/cyan] {adaptation}")
    if report.migration_strategies:
        console.print()
        console.print("[bold]Migration strategies:[/bold]")
        for name, description in report.migration_strategies.items():
            console.print(f"  {name}: {description}")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--dir", "directory", type=click.Path(file_okay=False), help="Checkpoint directory override")
@click.pass_context
def main(ctx, verbose, directory):
    """Waypoint: checkpoint and resume for agentic workflows."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["directory"] = directory


@main.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed runs")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def list_cmd(ctx, show_all, as_json):
    """List saved workflow checkpoints, most recent first."""
    store = _get_store(ctx.obj["directory"])
    states = store.list_available() if show_all else store.list_resumable()

    if as_json:
        for state in states:
            meta = state_to_document(state)["metadata"]
            meta.pop("original_content", None)
            print(json.dumps(meta))
        return

    if not states:
        console.print("[yellow]No resumable workflows found.[/yellow]")
        return

    table = Table()
    table.add_column("WORKFLOW")
    table.add_column("FILE")
    table.add_column("STATUS")
    table.add_column("TOOLS", justify="right")
    table.add_column("MESSAGES", justify="right")
    table.add_column("LAST ACTIVE")

    for state in states:
        table.add_row(
            state.workflow_id,
            state.file_path or "-",
            state.status,
            str(len(state.completed_tools)),
            str(len(state.conversation_history)),
            _format_ts(state.last_activity),
        )

    console.print(table)


@main.command()
@click.argument("workflow_id")
@click.pass_context
def show(ctx, workflow_id):
    """Show details of one checkpoint."""
    _check_workflow_id(workflow_id)
    store = _get_store(ctx.obj["directory"])
    try:
        state = store.load(workflow_id)
    except DeserializationError as e:
        console.print(f"[red]{format_error(e)}[/red]")
        sys.exit(EXIT_CORRUPT_STATE)

    if state is None:
        console.print(f"[yellow]No checkpoint found for '{workflow_id}'[/yellow]")
        sys.exit(EXIT_NO_PROGRESS_FOUND)

    _show_state(state)


def _show_state(state: CheckpointState) -> None:
    console.print()
    console.print(f"[bold]{'═' * 60}[/bold]")
    console.print(f"[bold]WORKFLOW: {state.workflow_id}[/bold]")
    console.print(f"[bold]{'═' * 60}[/bold]")
    console.print(f"file: {state.file_path or '-'}")
    console.print(f"status: {state.status}")
    console.print(f"started: {_format_ts(state.start_time)}")
    console.print(f"last active: {_format_ts(state.last_activity)}")
    if state.current_phase:
        console.print(f"phase: {state.current_phase}")
    if state.current_strategy:
        console.print(f"strategy: {state.current_strategy}")

    console.print()
    console.print(f"[bold]─── COMPLETED TOOLS ({len(state.completed_tools)}) ───[/bold]")
    if state.completed_tools:
        for tool in state.completed_tools:
            marker = "[green]✓[/green]" if tool.success else "[red]✗[/red]"
            console.print(f"  {marker} {_format_ts(tool.executed_at)} {tool.function_name}")
    else:
        console.print("  [dim]No tools captured[/dim]")

    evolution = state.context_evolution
    console.print()
    console.print(f"[bold]─── CONTEXT ({len(evolution.current_context)} variables) ───[/bold]")
    for key, value in evolution.current_context.items():
        text = str(value)
        preview = text[:60] + "..." if len(text) > 60 else text
        console.print(f"  {key}: {preview}")

    if evolution.key_insights:
        console.print()
        console.print(f"[bold]─── KEY INSIGHTS ({len(evolution.key_insights)}) ───[/bold]")
        for insight in evolution.key_insights:
            console.print(f"  {insight}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--workflow-id", "-w", required=True, help="Workflow run to check")
@click.option("--tool", "tools", multiple=True, help="Tool available now (repeatable)")
@click.pass_context
def check(ctx, workflow_file, workflow_id, tools):
    """Check whether a checkpoint can resume against WORKFLOW_FILE."""
    _check_workflow_id(workflow_id)
    store = _get_store(ctx.obj["directory"])
    content = Path(workflow_file).read_text(encoding="utf-8")

    try:
        state = store.load(workflow_id)
    except DeserializationError as e:
        console.print(f"[red]{format_error(e)}[/red]")
        sys.exit(EXIT_CORRUPT_STATE)

    if state is None:
        console.print(f"[yellow]No checkpoint found for '{workflow_id}'[/yellow]")
        sys.exit(EXIT_NO_PROGRESS_FOUND)

    validator = CompatibilityValidator(store.config.compatibility_thresholds())
    report = validator.validate(state, content, list(tools) if tools else None)
    _print_report(report)

    if not report.can_resume:
        sys.exit(EXIT_WORKFLOW_VALIDATION_ERROR)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--workflow-id", "-w", help="Workflow run to resume")
@click.option("--force", "-f", is_flag=True, help="Resume even if incompatible")
@click.option("--tool", "tools", multiple=True, help="Tool available now (repeatable)")
@click.pass_context
def resume(ctx, workflow_file, workflow_id, force, tools):
    """Resume an interrupted run of WORKFLOW_FILE.

    Prints the continuation message to hand to the conversation engine.

    Examples:
        waypoint resume review.prompt.md
        waypoint resume review.prompt.md -w wf-1 --tool read_file
    """
    if workflow_id:
        _check_workflow_id(workflow_id)
    store = _get_store(ctx.obj["directory"])
    manager = ResumeStateManager(store)
    content = Path(workflow_file).read_text(encoding="utf-8")

    if not workflow_id:
        target = str(Path(workflow_file).resolve())
        candidates = [
            s for s in store.list_resumable() if s.file_path and str(Path(s.file_path).resolve()) == target
        ]
        if not candidates:
            console.print("[yellow]No resumable workflow states found for this file.[/yellow]")
            console.print("Start a new workflow execution instead.")
            sys.exit(EXIT_NO_PROGRESS_FOUND)
        if len(candidates) > 1:
            console.print("[yellow]Multiple resumable states found. Specify --workflow-id:[/yellow]")
            for state in candidates:
                console.print(f"  - {state.workflow_id} ({_format_ts(state.last_activity)})")
            sys.exit(EXIT_AMBIGUOUS_INPUT)
        workflow_id = candidates[0].workflow_id

    try:
        plan = manager.resume(
            workflow_id,
            content,
            available_tools=list(tools) if tools else None,
            force=force,
        )
    except DeserializationError as e:
        console.print(f"[red]{format_error(e)}[/red]")
        console.print("Start a new workflow execution instead.")
        sys.exit(EXIT_CORRUPT_STATE)

    if plan.state is None:
        console.print(f"[yellow]No checkpoint found for '{workflow_id}'[/yellow]")
        sys.exit(EXIT_NO_PROGRESS_FOUND)

    if not plan.resumed:
        if plan.next_state == "completed":
            console.print(f"[yellow]Workflow '{workflow_id}' already completed.[/yellow]")
            sys.exit(EXIT_NO_PROGRESS_FOUND)
        _print_report(plan.report)
        console.print()
        console.print("Use --force to attempt resume anyway, or start a new workflow execution.")
        sys.exit(EXIT_WORKFLOW_VALIDATION_ERROR)

    for warning in plan.report.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    print(plan.messages[0].content)


@main.command()
@click.option("--days", type=int, help="Retention in days (default from config)")
@click.pass_context
def cleanup(ctx, days):
    """Delete checkpoints older than the retention period."""
    if days is not None and days < 0:
        console.print("[red]--days must not be negative[/red]")
        sys.exit(EXIT_INVALID_ARGUMENTS)

    store = _get_store(ctx.obj["directory"])
    deleted = store.cleanup(days)
    console.print(f"[green]✓[/green] Deleted {deleted} old checkpoint(s)")


@main.group()
def config():
    """Manage configuration (resume.yaml)."""
    pass


@config.command("list")
def config_list():
    """Show effective configuration.

    Examples:
        waypoint config list
    """
    project_root = detect_project_root()
    effective = get_resume_config(project_root)
    defaults = ResumeConfig()

    console.print("[bold]Resume Configuration[/bold] [dim](resume.yaml)[/dim]")
    console.print(f"  [dim]storage: {get_resume_dir(effective, project_root)}[/dim]")
    console.print()
    for key, value in effective.to_dict().items():
        _show_config_value(key, value, getattr(defaults, key))


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--project", is_flag=True, help="Set in project-level config")
def config_set(key: str, value: str, project: bool):
    """Set a configuration value.

    Examples:
        waypoint config set retention_days 14
        waypoint config set resume_threshold 0.5 --project
    """
    waypoint_dir = Path.cwd() / ".waypoint" if project else WAYPOINT_DIR
    current = ResumeConfig.load(waypoint_dir)

    key = key.replace("-", "_")
    fields = ResumeConfig.__dataclass_fields__
    if key not in fields:
        console.print(f"[red]Unknown config key: {key}[/red]")
        sys.exit(EXIT_INVALID_ARGUMENTS)

    default = getattr(ResumeConfig(), key)
    try:
        if isinstance(default, bool):
            if value.lower() not in ("true", "false", "1", "0", "yes", "no"):
                raise ValueError(value)
            typed_value = value.lower() in ("true", "1", "yes")
        elif isinstance(default, int):
            typed_value = int(value)
        elif isinstance(default, float):
            typed_value = float(value)
        else:
            typed_value = value
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/red]")
        sys.exit(EXIT_INVALID_ARGUMENTS)

    data = current.to_dict()
    data[key] = typed_value
    ResumeConfig(**data).save(waypoint_dir)

    location = "project" if project else "user"
    console.print(f"[green]✓[/green] Set {key} = {typed_value} ({location}-level)")


def _show_config_value(key: str, value, default):
    """Display a config value, highlighting if non-default."""
    if value != default:
        console.print(f"  {key}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
    else:
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
