"""Subprocess execution with timeouts, output caps and exit classification."""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_OUTPUT = 10 * 1024 * 1024


class CommandError(Exception):
    """Raised by check_command when a command does not succeed."""

    def __init__(self, result: "CommandResult"):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        if result.timed_out:
            detail = f"timed out after {result.duration:.0f}s"
        super().__init__(f"{result.display} failed (exit {result.exit_code}): {detail}")


@dataclass
class CommandResult:
    command: str | list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"

    @property
    def display(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]


def _kill_tree(proc: subprocess.Popen):
    """Kill the process group started for a command."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    max_output: int = MAX_OUTPUT,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    String commands go through the shell so chains like ``a || b`` work;
    lists are executed directly. A non-zero exit or a timeout is reported
    in the returned result rather than raised.
    """
    shell = isinstance(cmd, str)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            shell=shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            env={**os.environ, **env} if env else None,
            start_new_session=os.name == "posix",
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
        return CommandResult(command=cmd, exit_code=127, stderr=str(e))

    timed_out = False
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_tree(proc)
        stdout, stderr = proc.communicate()
        logger.warning("Command timed out after %ss: %s", timeout, cmd)

    return CommandResult(
        command=cmd,
        exit_code=proc.returncode if not timed_out else -1,
        stdout=_truncate(stdout or "", max_output),
        stderr=_truncate(stderr or "", max_output),
        timed_out=timed_out,
        duration=time.monotonic() - started,
    )


def check_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and raise CommandError unless it succeeds."""
    result = run_command(cmd, cwd=cwd, timeout=timeout, env=env)
    if not result.ok:
        raise CommandError(result)
    return result


def split_output_lines(output: str) -> list[str]:
    """Split command output into non-empty, right-trimmed lines."""
    return [line.rstrip() for line in output.splitlines() if line.strip()]
