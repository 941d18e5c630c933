"""Child process execution with timeouts and process-group cancellation."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from kegtap.logging_utils import log_event

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class CommandResult:
    """Outcome of one child process run."""

    command: list[str]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.not_found

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as a shell ``2>&1`` would show it."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def tail(self, lines: int = 20) -> str:
        """Return the last lines of combined output."""
        return "\n".join(self.output.splitlines()[-lines:])


def terminate_process_group(process: subprocess.Popen[str]) -> None:
    """Stop a child and everything it spawned: SIGTERM, then SIGKILL."""
    try:
        os.killpg(process.pid, signal.SIGTERM)
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        os.killpg(process.pid, signal.SIGKILL)
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except ProcessLookupError:
        pass


def run_command(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command in its own process group, capturing output.

    The child is started with ``start_new_session`` so a timeout or an
    interrupt can terminate the whole group, including grandchildren such
    as compiler jobs spawned by a build tool.
    """
    argv = [str(part) for part in command]
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)

    log_event(logger, logging.DEBUG, "process.started", command=argv, cwd=str(cwd) if cwd else None)
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        return CommandResult(
            command=argv,
            returncode=None,
            stdout="",
            stderr=f"command not found: {exc.filename or argv[0]}",
            not_found=True,
        )
    except PermissionError as exc:
        return CommandResult(
            command=argv,
            returncode=None,
            stdout="",
            stderr=f"permission denied: {exc.filename or argv[0]}",
            not_found=True,
        )

    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        terminate_process_group(process)
        stdout, stderr = process.communicate()
        log_event(logger, logging.WARNING, "process.timed_out", command=argv, timeout=timeout)
        return CommandResult(
            command=argv,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=(stderr or "") + f"\ncommand timed out after {timeout}s",
            timed_out=True,
        )
    except BaseException:
        terminate_process_group(process)
        raise

    log_event(
        logger,
        logging.DEBUG,
        "process.finished",
        command=argv,
        returncode=process.returncode,
    )
    return CommandResult(
        command=argv,
        returncode=process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
    )
