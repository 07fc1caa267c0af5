#!/usr/bin/env python3
"""Rich-powered CLI: run a command under a deadline and kill its process group on expiry."""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config import Config
from logging_setup import setup_logging
from process_utils import CommandSpec, DeadlineExceeded, KillFailed, LaunchError, Output, SpawnError, spawn

TIMEOUT_EXIT_CODE = 124
KILL_FAILED_EXIT_CODE = 125
LAUNCH_ERROR_EXIT_CODE = 127
INTERRUPTED_EXIT_CODE = 130

console = Console(stderr=True)


def _timeout_arg(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {value!r}") from None
    if seconds < 0:
        raise argparse.ArgumentTypeError(f"timeout must be >= 0, got {value}")
    return seconds


def _print_summary(spec: CommandSpec, output: Output) -> None:
    table = Table(title="grace-run")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Command", escape(str(spec)))
    table.add_row("Exit code", str(output.exit_code))
    table.add_row("Duration", f"{output.duration_seconds:.3f}s")
    table.add_row("Stdout", f"{len(output.stdout)} chars")
    table.add_row("Stderr", f"{len(output.stderr)} chars")
    if not output.ok and output.stderr:
        table.add_row("Stderr tail", escape(output.stderr_tail()))
    console.print(table)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="grace-run",
        description="Run a command with a deadline; on expiry terminate its whole process group.",
    )
    parser.add_argument("--timeout", type=_timeout_arg, default=None, help="Deadline in seconds (default from config).")
    parser.add_argument("--shell", action="store_true", help="Join the words and run them through '<shell> -c'.")
    parser.add_argument("--config", default="grace.yaml", help="YAML configuration file.")
    parser.add_argument("--summary", action="store_true", help="Print a result table after the command finishes.")
    parser.add_argument("command", nargs="+", help="Command and arguments (put them after '--').")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = Config.load(args.config)
    logger = setup_logging(cfg.paths.logs_file)

    timeout = args.timeout if args.timeout is not None else cfg.defaults.timeout_seconds
    if args.shell:
        spec = CommandSpec.shell(" ".join(args.command), shell=cfg.shell)
    else:
        spec = CommandSpec(tuple(args.command))

    try:
        output = spawn(timeout, spec, encoding=cfg.defaults.encoding)
    except KeyboardInterrupt:
        console.print(f"[yellow]Interrupted:[/yellow] {escape(str(spec))}")
        return INTERRUPTED_EXIT_CODE
    except LaunchError as exc:
        console.print(f"[red]Launch failed:[/red] {escape(str(exc))}")
        return LAUNCH_ERROR_EXIT_CODE
    except KillFailed as exc:
        console.print(f"[bold red]Timed out; process group {exc.pid} could not be killed:[/bold red] {escape(str(exc.os_error))}")
        return KILL_FAILED_EXIT_CODE
    except DeadlineExceeded:
        console.print(f"[yellow]Timed out after {timeout:g}s:[/yellow] {escape(str(spec))}")
        return TIMEOUT_EXIT_CODE
    except SpawnError as exc:
        console.print(f"[red]Execution failed:[/red] {escape(str(exc))}")
        logger.debug("execution failed", exc_info=True)
        return 1

    sys.stdout.write(output.stdout)
    sys.stdout.flush()
    sys.stderr.write(output.stderr)
    sys.stderr.flush()
    if args.summary:
        _print_summary(spec, output)
    return output.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
