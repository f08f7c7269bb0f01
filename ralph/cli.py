"""CLI for Ralph.

Provides the command-line interface for the autonomous agent loop.
"""

import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ralph.archive import archive_previous_run, ensure_progress_file, record_last_branch
from ralph.config import RalphConfig, RuntimeSettings
from ralph.environment import validate_environment
from ralph.errors import ConfigurationError, LockHeldError, RalphError
from ralph.git_ops import GitClient, GitWorkflow
from ralph.invoker import AgentInvoker
from ralph.lock import RunLock
from ralph.logging_config import configure_logging
from ralph.loop import IterationLoop, LoopOptions, LoopResult, describe_blocked
from ralph.models import IterationRecord, Task, TaskSet
from ralph.prd import (
    add_task,
    find_dependency_cycles,
    load_prd,
    new_fix_store,
    next_eligible_task,
    next_fix_id,
    persist_prd,
    task_list_identity,
)
from ralph.rotation import RotationMachine, RotationState
from ralph.sleep_guard import SleepGuard
from ralph.telemetry import create_metrics, setup_telemetry

console = Console()

CONFIG_ERROR_EXIT_CODE = 5
LOCK_HELD_EXIT_CODE = 6
INTERRUPTED_EXIT_CODE = 130


@click.group()
@click.version_option(package_name="ralph")
def cli() -> None:
    """Ralph - Autonomous coding-agent loop over a prd.json task list."""
    pass


@cli.command()
@click.argument("max_iterations", type=click.IntRange(min=1), required=False)
@click.option(
    "--timeout",
    type=click.IntRange(min=1),
    default=None,
    help="Per-iteration agent timeout in seconds (default: 7200)",
)
@click.option("--no-timeout", is_flag=True, help="Let the agent run without a time limit")
@click.option("--rotation/--no-rotation", default=None, help="Override agent rotation")
@click.option("--push/--no-push", default=None, help="Override git push")
@click.option("--create-pr/--no-pr", "create_pr", default=None, help="Override PR creation")
@click.option("--auto-merge/--no-auto-merge", default=None, help="Override PR auto-merge")
@click.option("--fixes", is_flag=True, help="Run against prd-fixes.json instead of prd.json")
@click.option("--prd", "prd_file", type=click.Path(path_type=Path), help="Task store to use")
@click.option(
    "--config", "config_file", type=click.Path(path_type=Path), help="Agent configuration file"
)
@click.option("--no-sleep-prevent", is_flag=True, help="Allow the machine to sleep")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging on the console")
def run(
    max_iterations: int | None,
    timeout: int | None,
    no_timeout: bool,
    rotation: bool | None,
    push: bool | None,
    create_pr: bool | None,
    auto_merge: bool | None,
    fixes: bool,
    prd_file: Path | None,
    config_file: Path | None,
    no_sleep_prevent: bool,
    verbose: bool,
) -> None:
    """Run the agent loop for up to MAX_ITERATIONS iterations."""
    if timeout is not None and no_timeout:
        raise click.UsageError("--timeout and --no-timeout are mutually exclusive")

    # SIGTERM unwinds like Ctrl-C so the lock, sleep helper and agent are cleaned up
    signal.signal(signal.SIGTERM, _raise_interrupt)

    try:
        settings = RuntimeSettings.from_env()
        if max_iterations is not None:
            settings.max_iterations = max_iterations
        if no_timeout:
            settings.agent_timeout_seconds = 0
        elif timeout is not None:
            settings.agent_timeout_seconds = timeout
        if prd_file is not None:
            settings.prd_path = prd_file
        elif fixes:
            settings.prd_path = settings.fixes_prd_path
        if config_file is not None:
            settings.config_path = config_file
        if no_sleep_prevent:
            settings.sleep_prevention = False

        config = RalphConfig.load(settings.config_path)
        if rotation is not None:
            config.rotation.enabled = rotation
        if push is not None:
            config.git.push.enabled = push
        if create_pr is not None:
            config.git.pr.enabled = create_pr
        if auto_merge is not None:
            config.git.pr.auto_merge = auto_merge

        result = _run_loop(settings, config, fixes=fixes, verbose=verbose)
    except ConfigurationError as e:
        _print_error(e)
        sys.exit(CONFIG_ERROR_EXIT_CODE)
    except LockHeldError as e:
        _print_error(e)
        sys.exit(LOCK_HELD_EXIT_CODE)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(INTERRUPTED_EXIT_CODE)

    _print_loop_summary(result)
    sys.exit(result.exit_code)


def _run_loop(
    settings: RuntimeSettings, config: RalphConfig, fixes: bool = False, verbose: bool = False
) -> LoopResult:
    """Wire up the loop from settings and config and run it to a terminal state."""
    configure_logging(settings.log_path, verbose=verbose)
    tracer, meter = setup_telemetry(settings)
    create_metrics(meter)

    git_settings = config.git
    needs_git = git_settings.auto_checkout_branch or git_settings.push.enabled or git_settings.pr.enabled
    cwd = validate_environment(settings.prd_path, require_git=needs_git)
    task_set = load_prd(settings.prd_path)

    primary = config.resolve_primary()
    agents = [config.descriptor(name, settings.instructions_dir) for name in config.rotation_order(primary)]
    fallback = None
    if config.agent.fallback:
        fallback = config.descriptor(config.agent.fallback, settings.instructions_dir)

    with RunLock(settings.state_dir):
        if not fixes:
            archived = archive_previous_run(
                settings.prd_path,
                settings.progress_path,
                settings.archive_dir,
                settings.state_dir / "last-branch",
                task_set.branch_name,
            )
            if archived is not None:
                console.print(f"Archived previous run to {archived}")
            record_last_branch(settings.state_dir / "last-branch", task_set.branch_name)
        ensure_progress_file(settings.progress_path)

        rotation = RotationMachine.load(
            config.rotation,
            agents,
            settings.rotation_state_path,
            task_list_identity(settings.prd_path, task_set),
        )

        git = None
        if needs_git:
            git = GitWorkflow(
                GitClient(cwd, exclude_paths=(settings.state_dir.as_posix(),)),
                prd_filename=settings.prd_path.as_posix(),
            )

        options = LoopOptions(
            max_iterations=settings.max_iterations,
            timeout_seconds=settings.agent_timeout_seconds or None,
            delay_seconds=settings.iteration_delay_seconds,
            auto_checkout_branch=git_settings.auto_checkout_branch,
            base_branch=git_settings.base_branch,
            push_enabled=git_settings.push.enabled,
            push_timing=git_settings.push.timing,
            create_pr=git_settings.pr.enabled,
            pr_draft=git_settings.pr.draft,
            auto_merge=git_settings.pr.auto_merge,
            max_branch_failures=settings.max_branch_failures,
        )

        _print_run_header(settings, task_set, agents[0].name, config, options)
        started = time.monotonic()

        def on_iteration_start(iteration: int, task: Task, current: TaskSet, agent: str, model: str) -> None:
            """Display the banner before each iteration."""
            console.rule(f"Iteration {iteration} of {options.max_iterations}")
            console.print(
                f"Story: [bold]{task.id}[/bold] {task.title}  |  "
                f"Stories: {current.completed_count}/{current.total_count}  |  "
                f"Agent: {agent} ({model})  |  "
                f"Elapsed: {_format_duration(time.monotonic() - started)}"
            )

        with SleepGuard(enabled=settings.sleep_prevention):
            loop = IterationLoop(
                prd_path=settings.prd_path,
                invoker=AgentInvoker(on_output=_echo_output, cwd=cwd),
                rotation=rotation,
                options=options,
                git=git,
                fallback=fallback,
                tracer=tracer,
                on_iteration_start=on_iteration_start,
                on_iteration_end=_print_iteration_summary,
            )
            return loop.run()


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


def _echo_output(line: str) -> None:
    """Pass agent output through verbatim, without rich markup."""
    click.echo(line, nl=False)


def _print_error(error: RalphError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    if error.suggestion:
        console.print(f"  {error.suggestion}")


def _print_run_header(
    settings: RuntimeSettings,
    task_set: TaskSet,
    agent: str,
    config: RalphConfig,
    options: LoopOptions,
) -> None:
    """Print what the loop is about to do."""
    timeout = _format_duration(options.timeout_seconds) if options.timeout_seconds else "none"
    console.print(f"[bold]Starting Ralph:[/bold] {task_set.project or settings.prd_path}")
    console.print(f"  Task store: {settings.prd_path} ({task_set.completed_count}/{task_set.total_count} done)")
    if task_set.branch_name:
        console.print(f"  Branch: {task_set.branch_name}")
    console.print(f"  Agent: {agent}  |  Rotation: {'on' if config.rotation.enabled else 'off'}")
    console.print(f"  Max iterations: {options.max_iterations}  |  Timeout: {timeout}")


def _print_iteration_summary(record: IterationRecord) -> None:
    """Display a one-line summary after each iteration."""
    status_color = {
        "success": "green",
        "error": "red",
        "timeout": "red",
        "rate_limited": "yellow",
        "skipped": "yellow",
    }
    color = status_color[record.outcome]
    agent = f"{record.agent} ({record.model})" if record.agent else "no agent"
    line = (
        f"Iteration {record.iteration}: "
        f"[bold {color}]{record.outcome.upper()}[/bold {color}] "
        f"({_format_duration(record.duration_seconds)}, {agent}"
    )
    if record.fallback_agent:
        line += f", fallback {record.fallback_agent}"
    line += ")"
    if record.newly_completed:
        line += f" completed {', '.join(record.newly_completed)}"
    console.print(line)


def _print_loop_summary(result: LoopResult) -> None:
    """Print the terminal-state summary."""
    status_color = {
        "complete": "green",
        "max_iterations": "yellow",
        "blocked": "red",
        "rate_limited": "yellow",
        "git_failure": "red",
    }
    color = status_color[result.status]

    console.print(f"\n[bold {color}]Loop {result.status.upper()}[/bold {color}]")
    console.print(f"  Tasks: {result.completed_tasks}/{result.total_tasks} completed")
    console.print(f"  Iterations: {result.iterations}")
    console.print(f"  Duration: {_format_duration(result.duration_seconds)}")
    if result.message:
        console.print(f"  {result.message}")
    for warning in result.warnings:
        console.print(f"  [yellow]Warning:[/yellow] {warning}")
    if result.pr_url:
        console.print(f"  PR: {result.pr_url}")
    if result.status in ("max_iterations", "rate_limited"):
        console.print("  Run 'ralph run' again to continue.")


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int(seconds % 3600 // 60)}m"


def _task_state(task: Task, completed: set[str]) -> str:
    if task.removed:
        return "[dim]removed[/dim]"
    if task.passes:
        return "[green]done[/green]"
    if all(dep in completed for dep in task.blocked_by):
        return "ready"
    return "[yellow]blocked[/yellow]"


@cli.command()
@click.option("--fixes", is_flag=True, help="Show prd-fixes.json instead of prd.json")
@click.option("--prd", "prd_file", type=click.Path(path_type=Path), help="Task store to show")
def status(fixes: bool, prd_file: Path | None) -> None:
    """Show task progress and rotation state."""
    try:
        settings = RuntimeSettings.from_env()
        path = prd_file or (settings.fixes_prd_path if fixes else settings.prd_path)
        if not path.exists():
            console.print(f"[yellow]No task store found at {path}[/yellow]")
            return
        task_set = load_prd(path)
    except ConfigurationError as e:
        _print_error(e)
        sys.exit(CONFIG_ERROR_EXIT_CODE)

    completed = task_set.completed_ids
    table = Table(title=task_set.project or str(path))
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    table.add_column("State")
    table.add_column("Blocked by")
    for task in sorted(task_set.tasks, key=lambda t: t.priority):
        table.add_row(
            task.id,
            task.title,
            str(task.priority),
            _task_state(task, completed),
            ", ".join(task.blocked_by),
        )
    console.print(table)
    console.print(f"Progress: {task_set.completed_count}/{task_set.total_count} tasks complete")
    if task_set.branch_name:
        console.print(f"Branch: {task_set.branch_name}")

    for cycle in find_dependency_cycles(task_set):
        console.print(f"[red]Dependency cycle:[/red] {' -> '.join(cycle)}")
    if not task_set.all_complete and next_eligible_task(task_set) is None:
        console.print("[red]Blocked:[/red] no incomplete task is eligible")
        for reason in describe_blocked(task_set):
            console.print(f"  {reason}")

    _print_rotation_state(settings.rotation_state_path, task_list_identity(path, task_set))


def _print_rotation_state(state_path: Path, task_list_id: str) -> None:
    state = RotationState.load(state_path)
    if state is None:
        return
    if state.task_list_id != task_list_id:
        console.print("Rotation: state belongs to another task list (resets on next run)")
        return
    console.print(f"Rotation: agent #{state.agent_index + 1}, model #{state.model_index + 1}")
    for key, count in sorted(state.failures.items()):
        console.print(f"  Failures {key}: {count}")
    now = datetime.now(timezone.utc)
    for agent, until in sorted(state.cooldowns.items()):
        if until > now:
            console.print(f"  [yellow]Cooling down[/yellow] {agent} for {_format_duration((until - now).total_seconds())}")


@cli.command("add-fix")
@click.argument("title")
@click.option("--description", "-d", default=None, help="What to fix (default: the title)")
@click.option("--priority", "-p", type=int, default=1, help="Priority, lower runs first")
@click.option("--blocked-by", "blocked_by", multiple=True, help="Task ID this fix waits on")
@click.option("--criteria", "-c", multiple=True, help="Acceptance criterion (repeatable)")
def add_fix(
    title: str,
    description: str | None,
    priority: int,
    blocked_by: tuple[str, ...],
    criteria: tuple[str, ...],
) -> None:
    """Append a change request to prd-fixes.json."""
    try:
        settings = RuntimeSettings.from_env()
        fixes_path = settings.fixes_prd_path
        if fixes_path.exists():
            task_set = load_prd(fixes_path)
        elif settings.prd_path.exists():
            task_set = new_fix_store(load_prd(settings.prd_path))
        else:
            raise ConfigurationError(
                f"Task store not found: {settings.prd_path}",
                error_code="ENV-NoPrd",
                suggestion="Create prd.json first so the fixes share its project and branch",
            )

        fix = Task(
            id=next_fix_id(task_set),
            title=title,
            description=description or title,
            priority=priority,
            passes=False,
            acceptance_criteria=criteria,
            blocked_by=blocked_by,
        )
        persist_prd(add_task(task_set, fix), fixes_path)
    except ConfigurationError as e:
        _print_error(e)
        sys.exit(CONFIG_ERROR_EXIT_CODE)

    console.print(f"Added [bold]{fix.id}[/bold] to {fixes_path}")
    console.print("Run 'ralph run --fixes' to work on it.")


def main() -> None:
    """Main entry point for the ralph CLI."""
    cli()


if __name__ == "__main__":
    main()
