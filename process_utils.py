"""Deadline-bounded subprocess execution with process-group supervision.

A command is started as the leader of a fresh process group. A background
thread drains stdout and stderr and reaps the child; the calling thread races
that result against a :class:`Deadline`. When the deadline wins, the whole
group is signalled (SIGTERM, escalating to SIGKILL only if SIGTERM could not
be delivered) and the call fails with :class:`DeadlineExceeded`.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, NoReturn, Sequence

logger = logging.getLogger("grace.process")


class SpawnError(RuntimeError):
    """Base class for failures of a supervised command."""

    def __init__(self, message: str, command: CommandSpec | None = None):
        super().__init__(message)
        self.command = command


class LaunchError(SpawnError):
    """Raised when the process or its pipes could not be set up."""


class StreamError(SpawnError):
    """Raised when stdout or stderr could not be read to end-of-stream."""


class WaitError(SpawnError):
    """Raised when the child did not finish through a normal exit status."""

    def __init__(self, message: str, command: CommandSpec | None = None, signal_number: int | None = None):
        super().__init__(message, command)
        self.signal_number = signal_number


class DeadlineExceeded(SpawnError, TimeoutError):
    """Raised when the deadline fired before the command finished."""

    def __init__(
        self,
        message: str,
        command: CommandSpec | None = None,
        pid: int | None = None,
        signal_sent: signal.Signals | None = None,
    ):
        super().__init__(message, command)
        self.pid = pid
        self.signal_sent = signal_sent


class KillFailed(DeadlineExceeded):
    """Deadline fired and the process group could not be signalled at all.

    This is the only outcome where the command may still be running.
    ``os_error`` is the failure of the forceful kill, ``term_error`` the
    failure of the graceful one that preceded it.
    """

    def __init__(
        self,
        message: str,
        command: CommandSpec | None,
        pid: int,
        term_error: OSError,
        os_error: OSError,
    ):
        super().__init__(message, command, pid=pid, signal_sent=None)
        self.term_error = term_error
        self.os_error = os_error


@dataclass(frozen=True)
class CommandSpec:
    """What to run: argv, environment overrides and working directory."""

    argv: tuple[str, ...]
    env: Mapping[str, str] | None = field(default=None, hash=False)
    cwd: str | Path | None = None

    def __post_init__(self) -> None:
        argv = tuple(str(arg) for arg in self.argv)
        if not argv:
            raise ValueError("argv must contain at least the executable")
        object.__setattr__(self, "argv", argv)
        if self.env is not None:
            object.__setattr__(self, "env", MappingProxyType({str(k): str(v) for k, v in self.env.items()}))

    @classmethod
    def from_line(
        cls,
        command_line: str,
        *args: str,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> CommandSpec:
        """Split ``command_line`` on whitespace and append ``args`` untouched."""
        tokens = command_line.split()
        if not tokens:
            raise ValueError("command line is empty")
        return cls(tuple(tokens) + tuple(args), env=env, cwd=cwd)

    @classmethod
    def shell(
        cls,
        text: str,
        shell: str = "sh",
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> CommandSpec:
        """Run ``text`` through ``shell -c``.

        The text is handed to the shell as a single argument exactly as given;
        no quoting or escaping is added.
        """
        return cls((shell, "-c", text), env=env, cwd=cwd)

    def environ(self) -> dict[str, str] | None:
        if self.env is None:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class Output:
    stdout: str
    stderr: str
    exit_code: int
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def combined(self) -> str:
        return self.stdout + self.stderr

    def stdout_tail(self, lines: int = 20) -> str:
        if lines <= 0:
            return ""
        return "\n".join(self.stdout.splitlines()[-lines:])

    def stderr_tail(self, chars: int = 800) -> str:
        if chars <= 0:
            return ""
        return self.stderr[-chars:]


class Deadline:
    """One-shot expiry: a relative timeout, an explicit ``cancel()``, or both.

    ``Deadline()`` never expires on its own. Cancelling is idempotent and wakes
    any thread blocked in :meth:`wait_for`.
    """

    def __init__(self, timeout: float | None = None):
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be >= 0")
        self._expires_at = None if timeout is None else time.monotonic() + timeout
        self._cancelled = False
        self._lock = threading.Lock()
        self._waiters: list[threading.Event] = []

    @classmethod
    def coerce(cls, value: Deadline | float | None) -> Deadline:
        if isinstance(value, Deadline):
            return value
        return cls(value)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            waiters = list(self._waiters)
        for waiter in waiters:
            waiter.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        if self._cancelled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> float | None:
        """Seconds left, ``0.0`` once expired, ``None`` when unbounded."""
        if self._cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def wait_for(self, future: Future) -> bool:
        """Block until ``future`` is done or the deadline expires.

        Returns True when the future finished first. A future that is already
        done wins even against an expired deadline.
        """
        wake = threading.Event()
        future.add_done_callback(lambda _f: wake.set())
        with self._lock:
            self._waiters.append(wake)
            if self._cancelled:
                wake.set()
        try:
            while not future.done():
                if self.expired:
                    return False
                wake.wait(self.remaining())
            return True
        finally:
            with self._lock:
                self._waiters.remove(wake)


def spawn(
    deadline: Deadline | float | None,
    command: CommandSpec | Sequence[str],
    encoding: str = "utf-8",
) -> Output:
    """Run ``command`` to completion or until ``deadline`` expires.

    Args:
        deadline: A :class:`Deadline`, a timeout in seconds, or ``None`` for no limit.
        command: A :class:`CommandSpec` or an argv sequence.
        encoding: Used to decode captured bytes (undecodable bytes are replaced).

    Returns:
        The captured output and exit status. A non-zero exit code is a
        successful result, not an error.

    Raises:
        LaunchError: the process could not be started; nothing is left running.
        StreamError: reading stdout/stderr failed.
        WaitError: the child was killed by a signal or could not be reaped.
        DeadlineExceeded: the deadline fired and the process group was signalled.
        KillFailed: the deadline fired and no signal could be delivered.
    """
    spec = command if isinstance(command, CommandSpec) else CommandSpec(tuple(command))
    deadline = Deadline.coerce(deadline)
    if deadline.expired:
        raise DeadlineExceeded(f"Deadline expired before launch: {spec}", command=spec)

    proc = _launch(spec)
    started = time.monotonic()
    result: Future[Output] = Future()
    try:
        worker = threading.Thread(
            target=_drain_and_wait,
            args=(proc, spec, result, started, encoding),
            name=f"grace-drain-{proc.pid}",
            daemon=True,
        )
        worker.start()
        finished = deadline.wait_for(result)
    except BaseException:
        _interrupt_group(proc.pid, spec)
        raise
    if finished:
        return result.result()
    _terminate_group(proc.pid, spec)


def _launch(spec: CommandSpec) -> subprocess.Popen:
    if os.name != "posix":
        raise LaunchError(f"Process-group supervision requires a POSIX platform, not {sys.platform}", command=spec)
    try:
        proc = subprocess.Popen(
            list(spec.argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=spec.cwd,
            env=spec.environ(),
            start_new_session=True,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        raise LaunchError(f"Could not start {spec}: {exc}", command=spec) from exc
    logger.debug("Started pid %d in a new process group: %s", proc.pid, spec)
    return proc


def _drain_and_wait(
    proc: subprocess.Popen,
    spec: CommandSpec,
    result: Future,
    started: float,
    encoding: str,
) -> None:
    if not result.set_running_or_notify_cancel():
        return
    try:
        output = _collect(proc, spec, started, encoding)
    except Exception as exc:
        result.set_exception(exc)
    else:
        result.set_result(output)


def _collect(proc: subprocess.Popen, spec: CommandSpec, started: float, encoding: str) -> Output:
    # communicate() reads both pipes to EOF before reaping, so a chatty child
    # never blocks on a full pipe buffer.
    try:
        stdout, stderr = proc.communicate()
    except (OSError, ValueError) as exc:
        raise StreamError(f"Reading output of pid {proc.pid} failed: {exc}", command=spec) from exc

    try:
        returncode = proc.wait()
    except OSError as exc:
        raise WaitError(f"Waiting for pid {proc.pid} failed: {exc}", command=spec) from exc

    if returncode < 0:
        signum = -returncode
        raise WaitError(
            f"pid {proc.pid} was terminated by {_signal_name(signum)}: {spec}",
            command=spec,
            signal_number=signum,
        )

    duration = time.monotonic() - started
    logger.debug("pid %d exited with %d after %.3fs", proc.pid, returncode, duration)
    return Output(
        stdout=stdout.decode(encoding, errors="replace"),
        stderr=stderr.decode(encoding, errors="replace"),
        exit_code=returncode,
        duration_seconds=duration,
    )


def _interrupt_group(pgid: int, spec: CommandSpec) -> None:
    # The group lives in its own session, so a terminal Ctrl-C never reaches it.
    logger.warning("Interrupted, sending SIGTERM to process group %d: %s", pgid, spec)
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        pass


def _terminate_group(pgid: int, spec: CommandSpec) -> NoReturn:
    logger.warning("Deadline exceeded, sending SIGTERM to process group %d: %s", pgid, spec)
    try:
        os.killpg(pgid, signal.SIGTERM)
    except OSError as term_error:
        logger.warning("sending SIGKILL to process group %d (SIGTERM failed: %s): %s", pgid, term_error, spec)
        try:
            os.killpg(pgid, signal.SIGKILL)
        except OSError as kill_error:
            logger.error("Could not kill process group %d, it may still be running: %s", pgid, kill_error)
            raise KillFailed(
                f"Timed out and failed to kill process group {pgid}: {kill_error}",
                command=spec,
                pid=pgid,
                term_error=term_error,
                os_error=kill_error,
            ) from kill_error
        raise DeadlineExceeded(
            f"Timed out, process group {pgid} killed: {spec}",
            command=spec,
            pid=pgid,
            signal_sent=signal.SIGKILL,
        ) from term_error
    raise DeadlineExceeded(
        f"Timed out, process group {pgid} terminated: {spec}",
        command=spec,
        pid=pgid,
        signal_sent=signal.SIGTERM,
    )


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"
