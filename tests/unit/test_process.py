"""Unit tests for child process execution."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path

import pytest

from kegtap.process import CommandResult, run_command


def test_run_command_captures_output_and_env(tmp_path: Path) -> None:
    result = run_command(
        ["/bin/sh", "-c", 'echo "$KEGTAP_GREETING"; pwd; echo warn >&2'],
        cwd=tmp_path,
        env={"KEGTAP_GREETING": "hello"},
    )

    assert result.ok is True
    assert result.returncode == 0
    assert result.stdout.splitlines()[0] == "hello"
    assert Path(result.stdout.splitlines()[1]).resolve() == tmp_path.resolve()
    assert result.stderr == "warn\n"
    assert result.output == f"{result.stdout.rstrip()}\nwarn\n"


def test_run_command_reports_non_zero_exit() -> None:
    result = run_command(["/bin/sh", "-c", "exit 7"])

    assert result.ok is False
    assert result.returncode == 7
    assert result.timed_out is False


def test_run_command_reports_missing_executable() -> None:
    result = run_command(["kegtap-definitely-missing"])

    assert result.ok is False
    assert result.not_found is True
    assert result.returncode is None
    assert "command not found" in result.stderr


def test_timeout_kills_the_whole_process_group(tmp_path: Path) -> None:
    marker = tmp_path / "grandchild-survived"
    started = time.monotonic()

    result = run_command(
        ["/bin/sh", "-c", f"(sleep 2; touch {marker}) & sleep 30"],
        timeout=0.5,
    )

    assert result.timed_out is True
    assert result.ok is False
    assert "timed out" in result.stderr
    assert time.monotonic() - started < 15
    time.sleep(2.5)
    assert not marker.exists()


def test_tail_returns_last_lines() -> None:
    result = CommandResult(
        command=["x"],
        returncode=1,
        stdout="\n".join(f"line {index}" for index in range(30)),
        stderr="",
    )

    assert result.tail(3) == "line 27\nline 28\nline 29"


def test_run_command_replaces_undecodable_output() -> None:
    result = run_command(["/bin/sh", "-c", r"printf 'tool \377\376 help\n'; printf '\351' >&2"])

    assert result.ok is True
    assert result.stdout == "tool \ufffd\ufffd help\n"
    assert result.stderr == "\ufffd"


def test_interrupt_kills_the_whole_process_group(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    marker = tmp_path / "grandchild-survived"
    spawned: list[subprocess.Popen[str]] = []

    def _interrupted(self: subprocess.Popen[str], input: str | None = None, timeout: float | None = None):
        _ = input, timeout
        spawned.append(self)
        time.sleep(0.3)
        raise KeyboardInterrupt

    monkeypatch.setattr(subprocess.Popen, "communicate", _interrupted)

    with pytest.raises(KeyboardInterrupt):
        run_command(["/bin/sh", "-c", f"(sleep 1; touch {marker}) & sleep 30"])

    assert spawned[0].returncode is not None
    time.sleep(1.5)
    assert not marker.exists()
