"""Convenience wrappers that return the combined output of a bounded command."""

from __future__ import annotations

import logging

from process_utils import CommandSpec, Deadline, spawn

logger = logging.getLogger("grace.commands")


def run_with_timeout(timeout: Deadline | float, command_line: str, *args: str, encoding: str = "utf-8") -> str:
    """Run ``command_line`` (split on whitespace) plus ``args`` and return stdout + stderr.

    ``args`` are appended as-is, so they may contain spaces. Errors from
    :func:`process_utils.spawn` propagate unchanged; a non-zero exit code does
    not raise.
    """
    spec = CommandSpec.from_line(command_line, *args)
    logger.debug("run_with_timeout(%s): %s", timeout, spec)
    return spawn(timeout, spec, encoding=encoding).combined()


def run_shell_with_timeout(
    timeout: Deadline | float,
    shell_command: str,
    shell: str = "sh",
    encoding: str = "utf-8",
) -> str:
    """Run ``shell_command`` through ``shell -c`` and return stdout + stderr.

    The command text reaches the shell verbatim; quoting is the caller's job.
    """
    spec = CommandSpec.shell(shell_command, shell=shell)
    logger.debug("run_shell_with_timeout(%s): %s", timeout, spec)
    return spawn(timeout, spec, encoding=encoding).combined()
