"""Install-step builders and the executor that runs them."""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import stat
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from kegtap.config import InstallStepConfig, RecipeConfig
from kegtap.errors import BuildError
from kegtap.logging_utils import log_event
from kegtap.process import CommandResult, run_command

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(prefix|bin|buildpath|name|version)\}")
CARGO_METADATA_FILES = (".crates.toml", ".crates2.json")


@dataclass(slots=True)
class BuildContext:
    """Paths and limits for building one recipe."""

    recipe: RecipeConfig
    buildpath: Path
    prefix: Path
    work_dir: Path
    log_path: Path
    timeout: float | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def bin(self) -> Path:
        return self.prefix / "bin"

    def substitute(self, value: str) -> str:
        """Expand ``{prefix}``, ``{bin}``, ``{buildpath}``, ``{name}``, ``{version}``."""
        values = {
            "prefix": str(self.prefix),
            "bin": str(self.bin),
            "buildpath": str(self.buildpath),
            "name": self.recipe.name,
            "version": self.recipe.version or "",
        }
        return _PLACEHOLDER.sub(lambda match: values[match.group(1)], value)

    def resolve(self, relative: str) -> Path:
        return (self.buildpath / relative).resolve()


@dataclass(slots=True)
class BuildCommand:
    """A planned child process for one install step."""

    argv: list[str]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        env_prefix = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(self.env.items()))
        command = shlex.join(self.argv)
        return f"{env_prefix} {command}" if env_prefix else command


CommandRunner = Callable[[BuildCommand], CommandResult]


class Builder(Protocol):
    """Capability interface for one build-tool family."""

    name: str

    def plan(self, step: InstallStepConfig, context: BuildContext) -> list[BuildCommand]:
        """Return child processes the step will run (empty for pure file steps)."""
        ...

    def execute(
        self,
        step: InstallStepConfig,
        context: BuildContext,
        run: CommandRunner,
    ) -> None:
        """Perform the step, installing into ``context.prefix``."""
        ...


class CargoBuilder:
    """``cargo install --locked --root <prefix> --path <path>``."""

    name = "cargo"

    def plan(self, step: InstallStepConfig, context: BuildContext) -> list[BuildCommand]:
        argv = [
            "cargo",
            "install",
            "--locked",
            "--root",
            str(context.prefix),
            "--path",
            str(context.resolve(step.path)),
            *(context.substitute(arg) for arg in step.args),
        ]
        env = {"CARGO_TARGET_DIR": str(context.work_dir / "cargo-target")}
        env.update({key: context.substitute(value) for key, value in step.env.items()})
        return [BuildCommand(argv=argv, cwd=context.buildpath, env=env)]

    def execute(
        self,
        step: InstallStepConfig,
        context: BuildContext,
        run: CommandRunner,
    ) -> None:
        for command in self.plan(step, context):
            run(command)
        for metadata in CARGO_METADATA_FILES:
            (context.prefix / metadata).unlink(missing_ok=True)


class ScriptBuilder:
    """Run one templated command from the unpacked source tree."""

    name = "script"

    def plan(self, step: InstallStepConfig, context: BuildContext) -> list[BuildCommand]:
        argv = [context.substitute(token) for token in step.run or []]
        env = {key: context.substitute(value) for key, value in step.env.items()}
        return [BuildCommand(argv=argv, cwd=context.resolve(step.path), env=env)]

    def execute(
        self,
        step: InstallStepConfig,
        context: BuildContext,
        run: CommandRunner,
    ) -> None:
        context.bin.mkdir(parents=True, exist_ok=True)
        for command in self.plan(step, context):
            run(command)


class CopyBuilder:
    """Copy prebuilt files from an unpacked archive into the keg."""

    name = "copy"

    def plan(self, step: InstallStepConfig, context: BuildContext) -> list[BuildCommand]:
        return []

    def execute(
        self,
        step: InstallStepConfig,
        context: BuildContext,
        run: CommandRunner,
    ) -> None:
        destination = context.prefix / step.dest
        destination.mkdir(parents=True, exist_ok=True)
        make_executable = Path(step.dest).parts[:1] in {("bin",), ("sbin",)}
        for pattern in step.files:
            matches = sorted(path for path in context.buildpath.glob(pattern) if path.is_file())
            if not matches:
                raise BuildError(
                    f"copy step matched no files for pattern {pattern!r}",
                    recipe=context.recipe.name,
                )
            for source in matches:
                target = destination / source.name
                shutil.copy2(source, target)
                if make_executable:
                    mode = target.stat().st_mode
                    target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                _append_log(context.log_path, f"==> copy {source} -> {target}\n")


BUILDERS: dict[str, Builder] = {
    "cargo": CargoBuilder(),
    "script": ScriptBuilder(),
    "copy": CopyBuilder(),
}


def _append_log(log_path: Path, text: str) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(text)


class BuildExecutor:
    """Run a recipe's install steps in order, stopping at the first failure.

    Output of every step is appended to ``context.log_path``. Nothing is
    rolled back when a step fails: whatever the earlier steps wrote into the
    staging prefix stays there for inspection.
    """

    def __init__(
        self,
        *,
        builders: Mapping[str, Builder] | None = None,
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.builders = dict(BUILDERS if builders is None else builders)
        self._runner = runner

    def builder_for(self, step: InstallStepConfig, *, recipe: str | None = None) -> Builder:
        """Select the builder variant named by the step metadata."""
        builder = self.builders.get(step.builder)
        if builder is None:
            raise BuildError(f"no builder registered for '{step.builder}'", recipe=recipe)
        return builder

    def plan(self, context: BuildContext) -> list[str]:
        """Render the commands the recipe's install steps would run."""
        rendered: list[str] = []
        for step in context.recipe.install:
            builder = self.builder_for(step, recipe=context.recipe.name)
            commands = builder.plan(step, context)
            if not commands:
                rendered.append(f"[{builder.name}] {', '.join(step.files)} -> {step.dest}")
            rendered.extend(command.render() for command in commands)
        return rendered

    def run(self, context: BuildContext) -> None:
        """Execute every install step of ``context.recipe``."""
        recipe = context.recipe
        context.prefix.mkdir(parents=True, exist_ok=True)
        context.work_dir.mkdir(parents=True, exist_ok=True)
        _append_log(
            context.log_path,
            f"# {recipe.name} {recipe.version} build started {datetime.now(UTC).isoformat()}\n",
        )

        def _run(command: BuildCommand) -> CommandResult:
            return self._run_command(context, command)

        total = len(recipe.install)
        for position, step in enumerate(recipe.install, start=1):
            builder = self.builder_for(step, recipe=recipe.name)
            log_event(
                logger,
                logging.INFO,
                "build.step_started",
                recipe=recipe.name,
                builder=builder.name,
                step=position,
                total=total,
            )
            try:
                builder.execute(step, context, _run)
            except BuildError as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "build.step_failed",
                    recipe=recipe.name,
                    builder=builder.name,
                    step=position,
                    returncode=exc.returncode,
                )
                exc.with_recipe(recipe.name)
                raise
            except OSError as exc:
                raise BuildError(
                    f"step {position} ({builder.name}) failed: {exc}",
                    recipe=recipe.name,
                ) from exc

    def _run_command(self, context: BuildContext, command: BuildCommand) -> CommandResult:
        env = dict(context.env)
        env.update(command.env)
        _append_log(context.log_path, f"==> {command.render()}\n")
        result = self._runner(command.argv, cwd=command.cwd, env=env, timeout=context.timeout)
        _append_log(context.log_path, result.output if result.output.endswith("\n") else result.output + "\n")
        if result.ok:
            return result

        if result.not_found:
            reason = result.stderr
        elif result.timed_out:
            reason = f"timed out after {context.timeout}s"
        else:
            reason = f"exited with status {result.returncode}"
        raise BuildError(
            f"`{shlex.join(command.argv)}` {reason} (log: {context.log_path})",
            recipe=context.recipe.name,
            command=command.argv,
            returncode=result.returncode,
            output_tail=result.tail(),
        )
