"""Post-install smoke tests run against an installed keg."""

from __future__ import annotations

import logging
import os
import re
import shlex
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kegtap.config import RecipeConfig, SmokeTestConfig
from kegtap.errors import TestFailure
from kegtap.logging_utils import log_event
from kegtap.process import CommandResult, run_command

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(prefix|bin|name|version|testpath)\}")
OUTPUT_EXCERPT_CHARS = 2000


@dataclass(slots=True)
class AssertionResult:
    """Outcome of one smoke-test assertion."""

    command: list[str]
    passed: bool
    exit_code: int | None
    expected_exit_code: int
    output: str = ""
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "passed": self.passed,
            "exit_code": self.exit_code,
            "expected_exit_code": self.expected_exit_code,
            "output": self.output,
            "failures": self.failures,
        }


@dataclass(slots=True)
class SmokeTestReport:
    """All assertion results for one recipe."""

    recipe: str
    results: list[AssertionResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[str]:
        return [failure for result in self.results for failure in result.failures]

    def raise_for_failure(self) -> None:
        """Raise ``TestFailure`` describing every failed assertion."""
        if self.passed:
            return
        failed = sum(1 for result in self.results if not result.passed)
        raise TestFailure(
            f"{failed} of {len(self.results)} smoke test(s) failed",
            recipe=self.recipe,
            failures=self.failures,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe": self.recipe,
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
        }


def _excerpt(output: str) -> str:
    if len(output) <= OUTPUT_EXCERPT_CHARS:
        return output
    return output[:OUTPUT_EXCERPT_CHARS] + "\n... (truncated)"


def evaluate_assertion(
    assertion: SmokeTestConfig,
    command: list[str],
    result: CommandResult,
) -> AssertionResult:
    """Compare a finished command against the assertion's expectations."""
    rendered = shlex.join(command)
    output = result.output
    failures: list[str] = []

    if result.not_found or result.timed_out:
        failures.append(f"`{rendered}` could not complete: {result.stderr.strip()}")
    elif result.returncode != assertion.exit_code:
        failures.append(
            f"`{rendered}` exited with status {result.returncode}, "
            f"expected {assertion.exit_code}"
        )

    if assertion.expect is not None and assertion.expect not in output:
        failures.append(
            f"expected output of `{rendered}` to contain {assertion.expect!r}; "
            f"got:\n{_excerpt(output)}"
        )
    if assertion.pattern is not None and re.search(assertion.pattern, output) is None:
        failures.append(
            f"expected output of `{rendered}` to match /{assertion.pattern}/; "
            f"got:\n{_excerpt(output)}"
        )

    return AssertionResult(
        command=command,
        passed=not failures,
        exit_code=result.returncode,
        expected_exit_code=assertion.exit_code,
        output=output,
        failures=failures,
    )


class SmokeTestRunner:
    """Run a recipe's ``test`` assertions in a scratch directory."""

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.timeout = timeout
        self._runner = runner

    def run(
        self,
        recipe: RecipeConfig,
        keg: Path,
        *,
        prefix_bin: Path | None = None,
    ) -> SmokeTestReport:
        """Run every assertion against the installed keg; never raises on failure."""
        report = SmokeTestReport(recipe=recipe.name)
        if not recipe.test:
            log_event(logger, logging.INFO, "smoke.no_tests", recipe=recipe.name)
            return report

        path_entries = [str(keg / "bin")]
        if prefix_bin is not None:
            path_entries.append(str(prefix_bin))
        path_entries.append(os.environ.get("PATH", os.defpath))
        env = {"PATH": os.pathsep.join(path_entries)}

        with tempfile.TemporaryDirectory(prefix=f"kegtap-test-{recipe.name}-") as testpath:
            values = {
                "prefix": str(keg),
                "bin": str(keg / "bin"),
                "name": recipe.name,
                "version": recipe.version or "",
                "testpath": testpath,
            }
            for assertion in recipe.test:
                command = [
                    _PLACEHOLDER.sub(lambda match: values[match.group(1)], token)
                    for token in assertion.run
                ]
                result = self._runner(
                    command,
                    cwd=Path(testpath),
                    env=env,
                    timeout=self.timeout,
                )
                outcome = evaluate_assertion(assertion, command, result)
                report.results.append(outcome)
                log_event(
                    logger,
                    logging.INFO if outcome.passed else logging.WARNING,
                    "smoke.assertion",
                    recipe=recipe.name,
                    command=command,
                    passed=outcome.passed,
                    exit_code=outcome.exit_code,
                )
        return report
