"""taskd CLI application."""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import datetime
from typing import NoReturn, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from taskd import __version__
from taskd.config import (
    create_default_config,
    ensure_home,
    get_config_file,
    get_logs_dir,
    get_runtime_file,
    get_tasks_dir,
    load_config,
)
from taskd.core.builtin import DAEMON_FLAG
from taskd.core.daemon import DaemonManager
from taskd.core.manager import TaskManager
from taskd.core.monitor import TaskMonitor
from taskd.core.state import StateStore
from taskd.errors import ConfigError, TaskdError
from taskd.models import RestartPolicy, TaskConfig, TaskdConfig, TaskInfo, TaskStatus

app = typer.Typer(
    name="taskd",
    help="taskd - user-level process supervisor",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
FILE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message}"


def setup_logging(verbose: bool = False, level: str | None = None, log_file: str | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else (level or "WARNING").upper()

    # Console logging
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(log_file, format=FILE_LOG_FORMAT, level=level)


def build_manager(config: TaskdConfig | None = None) -> TaskManager:
    """Build the services for one command invocation."""
    home = ensure_home()
    config = config or load_config()
    store = StateStore(get_runtime_file(home))
    daemon = DaemonManager(
        store,
        logs_dir=get_logs_dir(home),
        startup_wait=config.daemon_startup_wait,
    )
    return TaskManager(store, get_tasks_dir(home), daemon=daemon, config=config)


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(1)


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _format_status(info: TaskInfo) -> str:
    status = info.status.value
    if info.status == TaskStatus.RUNNING:
        return f"[green]{status}[/green]"
    if info.status == TaskStatus.FAILED:
        return f"[red]{status}[/red]"
    return f"[dim]{status}[/dim]"


def _parse_policy(value: str | None) -> RestartPolicy | None:
    if value is None:
        return None
    try:
        return RestartPolicy(value)
    except ValueError:
        choices = ", ".join(p.value for p in RestartPolicy)
        raise typer.BadParameter(f"expected one of: {choices}", param_hint="--restart-policy")


# ============================================================================
# Definition Commands
# ============================================================================


@app.command("add")
def add_task(
    name: str = typer.Argument(..., help="Task name"),
    exec_: str = typer.Option(..., "--exec", "-e", help="Executable, optionally with arguments"),
    args: Optional[list[str]] = typer.Argument(None, help="Arguments (after --)"),
    workdir: Optional[str] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    env: Optional[list[str]] = typer.Option(None, "--env", "-E", help="Environment variable KEY=VALUE"),
    inherit_env: bool = typer.Option(True, "--inherit-env/--no-inherit-env", help="Inherit the environment"),
    stdin: Optional[str] = typer.Option(None, "--stdin", help="Standard input file"),
    stdout: Optional[str] = typer.Option(None, "--stdout", help="Standard output file (relative to workdir)"),
    stderr: Optional[str] = typer.Option(None, "--stderr", help="Standard error file (relative to workdir)"),
    auto_start: bool = typer.Option(False, "--auto-start", "-a", help="Restart automatically when it dies"),
    max_retry: int = typer.Option(3, "--max-retry", "-r", help="Maximum automatic restarts (0 = unlimited)"),
    restart_policy: Optional[str] = typer.Option(None, "--restart-policy", help="always, on-failure or never"),
    restart_delay: Optional[str] = typer.Option(None, "--restart-delay", help="Delay before a restart, e.g. 5s"),
    display_name: str = typer.Option("", "--display-name", help="Human readable name"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Add a new task."""
    setup_logging(verbose)

    data: dict = {
        "name": name,
        "executable": exec_,
        "args": args or [],
        "workdir": workdir,
        "env": env or [],
        "inherit_env": inherit_env,
        "stdin": stdin,
        "stdout": stdout,
        "stderr": stderr,
        "auto_start": auto_start,
        "max_retry_num": max_retry,
        "display_name": display_name,
        "description": description,
    }
    restart: dict = {}
    policy = _parse_policy(restart_policy)
    if policy is not None:
        restart["policy"] = policy
    if restart_delay is not None:
        restart["delay"] = restart_delay
    if restart:
        data["restart"] = restart

    try:
        config = TaskConfig.model_validate(data)
    except ValueError as e:
        _fail(e)

    try:
        manager = build_manager()
        manager.add_task(name, config)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Added task '{name}'[/green]")


@app.command("edit")
def edit_task(
    name: str = typer.Argument(..., help="Task name"),
    exec_: Optional[str] = typer.Option(None, "--exec", "-e", help="Executable, optionally with arguments"),
    workdir: Optional[str] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    env: Optional[list[str]] = typer.Option(None, "--env", "-E", help="Environment (replaces existing entries)"),
    inherit_env: Optional[bool] = typer.Option(None, "--inherit-env/--no-inherit-env", help="Inherit the environment"),
    stdin: Optional[str] = typer.Option(None, "--stdin", help="Standard input file"),
    stdout: Optional[str] = typer.Option(None, "--stdout", help="Standard output file"),
    stderr: Optional[str] = typer.Option(None, "--stderr", help="Standard error file"),
    auto_start: Optional[bool] = typer.Option(None, "--auto-start/--no-auto-start", help="Automatic restart"),
    max_retry: Optional[int] = typer.Option(None, "--max-retry", "-r", help="Maximum automatic restarts"),
    restart_policy: Optional[str] = typer.Option(None, "--restart-policy", help="always, on-failure or never"),
    restart_delay: Optional[str] = typer.Option(None, "--restart-delay", help="Delay before a restart"),
    display_name: Optional[str] = typer.Option(None, "--display-name", help="Human readable name"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Description"),
    clear_env: bool = typer.Option(False, "--clear-env", help="Remove all environment entries"),
    clear_stdin: bool = typer.Option(False, "--clear-stdin", help="Remove stdin redirection"),
    clear_stdout: bool = typer.Option(False, "--clear-stdout", help="Remove stdout redirection"),
    clear_stderr: bool = typer.Option(False, "--clear-stderr", help="Remove stderr redirection"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Edit an existing task. Takes effect on the next start."""
    setup_logging(verbose)

    changes: dict = {}
    if exec_ is not None:
        # A new command line replaces the old argument vector
        changes["executable"] = exec_
        changes["args"] = []
    for key, value in (
        ("workdir", workdir),
        ("env", env),
        ("inherit_env", inherit_env),
        ("stdin", stdin),
        ("stdout", stdout),
        ("stderr", stderr),
        ("auto_start", auto_start),
        ("max_retry_num", max_retry),
        ("display_name", display_name),
        ("description", description),
    ):
        if value is not None:
            changes[key] = value

    if clear_env:
        changes["env"] = []
    if clear_stdin:
        changes["stdin"] = None
    if clear_stdout:
        changes["stdout"] = None
    if clear_stderr:
        changes["stderr"] = None

    restart: dict = {}
    policy = _parse_policy(restart_policy)
    if policy is not None:
        restart["policy"] = policy
    if restart_delay is not None:
        restart["delay"] = restart_delay
    if restart:
        changes["restart"] = restart

    if not changes:
        console.print("[yellow]Nothing to change[/yellow]")
        raise typer.Exit(1)

    try:
        manager = build_manager()
        manager.edit_task(name, changes)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Updated task '{name}'[/green]")
    if manager.get_status(name).status == TaskStatus.RUNNING:
        console.print("[dim]Restart the task to apply the changes[/dim]")


@app.command("del")
def delete_task(
    name: str = typer.Argument(..., help="Task name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Delete a task, stopping it first if it is running."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        manager.remove_task(name)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Deleted task '{name}'[/green]")


# ============================================================================
# Query Commands
# ============================================================================


@app.command("list")
def list_tasks(
    running: bool = typer.Option(False, "--running", help="Show only running tasks"),
    stopped: bool = typer.Option(False, "--stopped", help="Show only tasks that are not running"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List all tasks."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        infos = manager.list_tasks()
    except TaskdError as e:
        _fail(e)

    if running:
        infos = [info for info in infos if info.status == TaskStatus.RUNNING]
    elif stopped:
        infos = [info for info in infos if info.status != TaskStatus.RUNNING]

    if not infos:
        console.print("[yellow]No tasks match the filter[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("PID", justify="right")
    table.add_column("Started")
    table.add_column("Retries", justify="right")
    table.add_column("Command")

    for info in infos:
        table.add_row(
            info.name,
            _format_status(info),
            str(info.pid) if info.pid else "-",
            _format_time(info.start_time),
            str(info.retry_num),
            info.executable,
        )

    console.print(table)


@app.command("info")
def task_info(
    name: str = typer.Argument(..., help="Task name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Show status and configuration of a task."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        detail = manager.get_task_detail(name)
    except TaskdError as e:
        _fail(e)

    console.print(f"\n[bold]Task: {detail.name}[/bold]")
    if detail.display_name:
        console.print(f"  Display name: {detail.display_name}")
    if detail.description:
        console.print(f"  Description: {detail.description}")
    console.print(f"  Status: {_format_status(detail)}")
    if detail.pid:
        console.print(f"  PID: {detail.pid}")
    console.print(f"  Started: {_format_time(detail.start_time)}")
    if detail.status != TaskStatus.RUNNING:
        console.print(f"  Last exit code: {detail.exit_code}")
    if detail.last_error:
        console.print(f"  Last error: {detail.last_error}")
    if detail.stopped_by_taskd:
        console.print("  [dim]Stopped by operator, auto-restart suppressed[/dim]")

    console.print(f"\n  Executable: {detail.executable}")
    if detail.args:
        console.print(f"  Args: {' '.join(detail.args)}")
    console.print(f"  Workdir: {detail.workdir}")
    console.print(f"  Inherit env: {detail.inherit_env}")
    for entry in detail.env:
        console.print(f"  Env: {entry}")
    console.print(f"  Retries: {detail.retry_num}/{detail.max_retry_num or 'unlimited'}")

    io_info = detail.io_info
    console.print(f"\n  Stdin: {io_info.stdin_path or '-'}")
    if io_info.same_output:
        console.print(f"  Stdout+Stderr: {io_info.stdout_path}")
    else:
        console.print(f"  Stdout: {io_info.stdout_path or '-'}")
        console.print(f"  Stderr: {io_info.stderr_path or '-'}")


# ============================================================================
# Process Commands
# ============================================================================


@app.command("start")
def start_task(
    name: str = typer.Argument(..., help="Task name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Start a task."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        pid = manager.start_task(name)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Started task '{name}'[/green]")
    console.print(f"[dim]PID: {pid}[/dim]")


@app.command("stop")
def stop_task(
    name: str = typer.Argument(..., help="Task name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Stop a running task."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        manager.stop_task(name)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Stopped task '{name}'[/green]")


@app.command("restart")
def restart_task(
    name: str = typer.Argument(..., help="Task name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Restart a task and reset its retry count."""
    setup_logging(verbose)

    try:
        manager = build_manager()
        pid = manager.restart_task(name)
    except TaskdError as e:
        _fail(e)

    console.print(f"[green]✓ Restarted task '{name}'[/green]")
    console.print(f"[dim]PID: {pid}[/dim]")


@app.command("init")
def init_config() -> None:
    """Initialize the taskd home directory."""
    home = create_default_config()
    console.print(f"[green]✓ Created configuration at {get_config_file(home)}[/green]")
    console.print(f"\nTask definitions live in: {get_tasks_dir(home)}/")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"taskd v{__version__}")


# ============================================================================
# Daemon Mode
# ============================================================================


def run_daemon() -> None:
    """Run the monitoring daemon until SIGTERM or SIGINT."""
    home = ensure_home()
    try:
        config = load_config()
    except ConfigError as e:
        config = TaskdConfig()
        setup_logging(level=config.log_level)
        logger.error(f"{e}; using default configuration")
    else:
        setup_logging(level=config.log_level, log_file=config.log_file)

    store = StateStore(get_runtime_file(home))
    # The daemon never starts another daemon
    manager = TaskManager(store, get_tasks_dir(home), daemon=None, config=config)
    monitor = TaskMonitor(manager, store, interval=config.monitor_interval)

    def handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        monitor.shutdown()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        asyncio.run(monitor.run())
    except Exception as e:
        logger.error(f"Daemon error: {e}")
        raise


def main() -> None:
    """Console entry point.

    The daemon flag bypasses normal command dispatch and must be used alone.
    """
    args = sys.argv[1:]
    if DAEMON_FLAG in args:
        if len(args) != 1:
            console.print(f"[red]Error: {DAEMON_FLAG} cannot be combined with other arguments[/red]")
            sys.exit(1)
        run_daemon()
        sys.exit(0)

    app()


if __name__ == "__main__":
    main()
