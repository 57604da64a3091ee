"""Command-line interface for chronsync.

chronsync runs external commands on cron schedules and reloads its
configuration file live, without restarting.

CONCEPTS:
---------
- TASK:     One entry of the configuration file: a name, a cron schedule
            and the command (with arguments) to execute.

- SCHEDULE: A six-field cron expression with seconds first
            ("sec min hour day month weekday"), optionally followed
            by a year field.

- DAEMON:   The long-running process started by `chronsync run`. It
            watches the configuration file and swaps in the new schedule
            whenever the file changes and validates.
"""

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from chronsync import __version__
from chronsync.config import settings
from chronsync.cron import (
    ConfigError,
    JsonConfigLoader,
    ProcessExecutor,
    ScheduleParseError,
    ScheduleSet,
    SchedulingError,
    get_cron_description,
    local_now,
    next_fire_after,
    write_initial_config,
)
from chronsync.service import ChronsyncDaemon, get_service_pid, stop_service, write_pid_file

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def _config_path_or_exit(args: argparse.Namespace) -> Path:
    """Resolve the config file, exiting if it does not exist."""
    explicit = getattr(args, "config_path", None)
    config_path = settings.resolve_config_path(explicit)
    logger.debug(f"Resolved config path: {config_path}")

    if not config_path.exists():
        logger.error("Error: Configuration file not found at path:")
        for searched in settings.config_search_paths(explicit):
            logger.error(f"-> Path: {searched.absolute()}")
        console.print("[dim]Create one with: chronsync init[/dim]")
        sys.exit(1)

    return config_path


def core_check_config(config_path: Path) -> ScheduleSet:
    """Load and validate a configuration file.

    Raises:
        ConfigError: If the file is missing or malformed.
        ScheduleParseError: If a task has an invalid cron schedule.
    """
    schedule_set = JsonConfigLoader(lock_dir=settings.state_dir).load(config_path)
    logger.info(f"Configuration check successful: {len(schedule_set)} tasks loaded.")
    return schedule_set


def _load_or_exit(config_path: Path) -> ScheduleSet:
    try:
        return core_check_config(config_path)
    except (ConfigError, ScheduleParseError) as e:
        console.print("[red]Validation failed:[/red] Invalid JSON or Cron Schedule.")
        console.print(f"  Details: {e}")
        sys.exit(1)


def _daemonize() -> None:
    """Fork the process to run in the background (Unix double-fork)."""
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.chdir("/")
    os.setsid()
    os.umask(0o022)

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    sys.stdout.flush()
    sys.stderr.flush()

    settings.state_dir.mkdir(parents=True, exist_ok=True)
    log_fd = os.open(str(settings.log_file), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    null_fd = os.open(os.devnull, os.O_RDONLY)

    os.dup2(null_fd, sys.stdin.fileno())
    os.dup2(log_fd, sys.stdout.fileno())
    os.dup2(log_fd, sys.stderr.fileno())

    os.close(null_fd)
    os.close(log_fd)


def cmd_run(args: argparse.Namespace) -> None:
    """Start the daemon."""
    config_path = _config_path_or_exit(args)
    _load_or_exit(config_path)
    logger.info("Configuration validated successfully.")

    existing_pid = get_service_pid()
    if existing_pid:
        console.print(f"[yellow]chronsync is already running[/yellow] (PID {existing_pid})")
        console.print("Stop it first with: chronsync stop")
        sys.exit(1)

    if args.daemon:
        console.print("[green]Starting chronsync in background...[/green]")
        console.print(f"  Config: {config_path}")
        console.print(f"  Log: {settings.log_file}")
        console.print("\nUse 'chronsync status' to check status")
        console.print("Use 'chronsync stop' to stop")
        _daemonize()
        print(f"\n{'=' * 60}")
        print(f"chronsync started at {datetime.now().isoformat()}")
        print(f"PID: {os.getpid()}")
        print(f"{'=' * 60}\n")

    pid_file = write_pid_file()
    daemon = ChronsyncDaemon(config_path)
    try:
        asyncio.run(daemon.run())
    except (ConfigError, ScheduleParseError) as e:
        logger.error(f"[Main] Failed to load initial config: {e}")
        sys.exit(1)
    finally:
        pid_file.unlink(missing_ok=True)


def cmd_check(args: argparse.Namespace) -> None:
    """Validate the configuration file."""
    config_path = _config_path_or_exit(args)
    _load_or_exit(config_path)
    console.print("[green]Configuration check passed.[/green]")


def cmd_list(args: argparse.Namespace) -> None:
    """List the configured tasks."""
    config_path = _config_path_or_exit(args)
    schedule_set = _load_or_exit(config_path)

    console.print(f"Configuration loaded from: {config_path}")
    if not schedule_set:
        console.print("[yellow]No tasks configured.[/yellow]")
        return

    table = Table(title=f"chronsync Task List ({len(schedule_set)} Tasks)")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Schedule", style="yellow", no_wrap=True)
    table.add_column("Description", style="white")
    table.add_column("Next Run", style="blue")
    table.add_column("Command", style="magenta")

    now = local_now()
    for task in schedule_set:
        try:
            next_run = next_fire_after(task.cron_schedule, now, settings.lookahead_years).isoformat()
        except SchedulingError:
            next_run = "never"

        table.add_row(
            task.name,
            task.cron_schedule.text,
            get_cron_description(task.cron_schedule.text),
            next_run,
            " ".join(task.command_line),
        )

    console.print(table)


def cmd_init(args: argparse.Namespace) -> None:
    """Create a sample configuration file."""
    explicit = getattr(args, "config_path", None)
    config_path = settings.resolve_config_path(explicit)

    overwrite = args.force
    if config_path.exists() and not overwrite:
        console.print(f"Configuration file already exists at: {config_path}")
        response = console.input("Do you want to overwrite it? [y/N]: ").strip().lower()
        if response not in ("y", "yes"):
            console.print("Initialization cancelled.")
            return
        overwrite = True

    try:
        write_initial_config(config_path, overwrite=overwrite, lock_dir=settings.state_dir)
    except OSError as e:
        logger.error(f"Failed to write configuration file to {config_path}: {e}")
        sys.exit(1)

    console.print("\n[green]Successfully created initial configuration file.[/green]")
    console.print(f"  Path: {config_path}")
    console.print("\nNext steps:")
    console.print("1. Edit the file to define your tasks: chronsync edit")
    console.print("2. Run the daemon: chronsync run")


def cmd_edit(args: argparse.Namespace) -> None:
    """Open the configuration file in an editor, then validate it."""
    config_path = _config_path_or_exit(args)

    editor = os.environ.get("EDITOR") or os.environ.get("VISUAL")
    if not editor:
        logger.warning("$EDITOR or $VISUAL environment variable not set. Falling back to 'vi'.")
        editor = "vi"

    logger.info(f"Opening config file with editor: {editor}")
    try:
        status = subprocess.run([editor, str(config_path)])
    except OSError as e:
        logger.error(f"Failed to execute editor '{editor}': {e}")
        sys.exit(1)

    if status.returncode != 0:
        logger.error(f"Editor process exited with an error status: {status.returncode}")
        sys.exit(1)

    try:
        core_check_config(config_path)
    except (ConfigError, ScheduleParseError) as e:
        console.print("\n[red]Validation failed after editing![/red] The daemon WILL NOT reload this file.")
        console.print(f"  Details: {e}")
        sys.exit(1)

    console.print("[green]Configuration saved and validated.[/green] The daemon will reload automatically.")


def cmd_exec(args: argparse.Namespace) -> None:
    """Run one task immediately and wait for it."""
    config_path = _config_path_or_exit(args)
    schedule_set = _load_or_exit(config_path)

    task = schedule_set.get(args.task_name)
    if task is None:
        logger.error(f"Task '{args.task_name}' not found in configuration.")
        logger.error(f"Available tasks: {schedule_set.names()}")
        sys.exit(1)

    logger.info(f"Manually executing task: '{task.name}'")
    executor = ProcessExecutor(webhook_timeout=settings.webhook_timeout_seconds)
    result = asyncio.run(executor.execute(task))

    if result.success:
        console.print(f"[green]Completed:[/green] {task.name} in {result.duration_ms:.0f}ms")
        if result.stdout:
            console.print(result.stdout)
        return

    console.print(f"[red]Failed:[/red] {task.name}")
    console.print(result.describe_failure())
    sys.exit(1)


def cmd_status(args: argparse.Namespace) -> None:
    """Check whether the daemon is running."""
    pid = get_service_pid()

    if pid:
        console.print(f"[green]chronsync is running[/green] (PID {pid})")
        console.print(f"  Log file: {settings.log_file}")

        if settings.log_file.exists():
            console.print("\n[dim]Recent log entries:[/dim]")
            lines = settings.log_file.read_text().strip().split("\n")
            for line in lines[-10:]:
                console.print(f"  {line}", markup=False)
    else:
        console.print("[yellow]chronsync is not running[/yellow]")


def cmd_stop(args: argparse.Namespace) -> None:
    """Stop the background daemon."""
    pid = get_service_pid()

    if not pid:
        console.print("[yellow]chronsync is not running[/yellow]")
        return

    try:
        signalled = stop_service()
    except PermissionError:
        console.print(f"[red]Permission denied[/red] to stop PID {pid}")
        sys.exit(1)

    if not signalled:
        console.print("[yellow]chronsync process not found[/yellow]")
    elif get_service_pid():
        console.print(f"[yellow]chronsync may still be shutting down...[/yellow] (PID {pid})")
    else:
        console.print(f"[green]chronsync stopped[/green] (PID {pid})")


def cmd_log(args: argparse.Namespace) -> None:
    """Show the daemon log file."""
    log_file = settings.log_file
    if not log_file.exists():
        console.print("[yellow]No log file found[/yellow]")
        return

    if args.follow:
        console.print(f"[dim]Following {log_file} (Ctrl+C to stop)...[/dim]\n")
        try:
            subprocess.run(["tail", "-f", str(log_file)])
        except KeyboardInterrupt:
            pass
    else:
        if args.lines <= 0:
            return
        lines = log_file.read_text().strip().split("\n")
        for line in lines[-args.lines:]:
            console.print(line, markup=False)


def cmd_version(args: argparse.Namespace) -> None:
    """Show version and configuration information."""
    console.print(f"[bold]chronsync[/bold] v{__version__}")
    console.print(f"Config search path: {', '.join(str(p) for p in settings.config_search_paths())}")
    console.print(f"Reload debounce: {settings.debounce_ms}ms")
    console.print(f"State directory: {settings.state_dir}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="chronsync",
        description="chronsync - cron daemon that reloads its configuration live",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    def add_config_option(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "-c", "--config-path", type=Path, default=None,
            help="Configuration file (default: ~/.config/chronsync/config.json)",
        )

    run_parser = subparsers.add_parser(
        "run",
        help="Start the scheduler daemon",
        description="Load the configuration, run every task on its schedule and "
                    "reload automatically when the file changes.",
    )
    add_config_option(run_parser)
    run_parser.add_argument(
        "-d", "--daemon", action="store_true",
        help="Run in the background (logs go to ~/.chronsync/chronsync.log)",
    )
    run_parser.set_defaults(func=cmd_run)

    check_parser = subparsers.add_parser("check", help="Validate the configuration file")
    add_config_option(check_parser)
    check_parser.set_defaults(func=cmd_check)

    list_parser = subparsers.add_parser("list", help="List configured tasks")
    add_config_option(list_parser)
    list_parser.set_defaults(func=cmd_list)

    init_parser = subparsers.add_parser(
        "init",
        help="Create a sample configuration file",
        epilog="""Configuration format:
  {
    "tasks": [
      {
        "name": "sample_ping",
        "cron_schedule": "*/10 * * * * *",
        "command": "/bin/sh",
        "args": ["-c", "echo ping"],
        "timeout": 30
      }
    ]
  }""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_config_option(init_parser)
    init_parser.add_argument("-f", "--force", action="store_true", help="Overwrite without asking")
    init_parser.set_defaults(func=cmd_init)

    edit_parser = subparsers.add_parser("edit", help="Edit the configuration file")
    add_config_option(edit_parser)
    edit_parser.set_defaults(func=cmd_edit)

    exec_parser = subparsers.add_parser("exec", help="Run a task immediately")
    exec_parser.add_argument("task_name", help="Name of the task to run")
    add_config_option(exec_parser)
    exec_parser.set_defaults(func=cmd_exec)

    status_parser = subparsers.add_parser("status", help="Check whether the daemon is running")
    status_parser.set_defaults(func=cmd_status)

    stop_parser = subparsers.add_parser("stop", help="Stop the background daemon")
    stop_parser.set_defaults(func=cmd_stop)

    log_parser = subparsers.add_parser("log", help="View the daemon log")
    log_parser.add_argument(
        "-f", "--follow", action="store_true",
        help="Follow log output (like tail -f)",
    )
    log_parser.add_argument(
        "-n", "--lines", type=int, default=50,
        help="Number of lines to show (default: 50)",
    )
    log_parser.set_defaults(func=cmd_log)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the chronsync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    args.func(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
