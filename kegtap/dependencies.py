"""Build/run dependency checks against installed recipes and system tools."""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from kegtap.config import DependencyConfig, DependencyScope, RecipeConfig, parse_numeric_version
from kegtap.errors import DependencyMissingError
from kegtap.logging_utils import log_event
from kegtap.process import run_command
from kegtap.repository import Repository

logger = logging.getLogger(__name__)

Provider = Literal["kegtap", "system"]
_VERSION_IN_OUTPUT = re.compile(r"(\d+(?:\.\d+){0,2})")

# Recipe-style dependency names whose presence is proven by these commands.
KNOWN_TOOL_COMMANDS: dict[str, tuple[str, ...]] = {
    "rust": ("cargo", "rustc"),
    "go": ("go",),
    "node": ("node", "npm"),
    "python": ("python3",),
    "python3": ("python3",),
    "openjdk": ("java",),
    "pkgconf": ("pkg-config",),
    "cmake": ("cmake",),
    "meson": ("meson",),
    "ninja": ("ninja",),
    "autoconf": ("autoconf",),
    "automake": ("automake",),
    "zig": ("zig",),
}


@dataclass(slots=True)
class DependencyStatus:
    """Resolution outcome for one declared dependency."""

    name: str
    scope: DependencyScope
    satisfied: bool
    provider: Provider | None = None
    location: str | None = None
    version: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "scope": self.scope,
            "satisfied": self.satisfied,
            "provider": self.provider,
            "location": self.location,
            "version": self.version,
            "reason": self.reason,
        }


def commands_for(name: str) -> tuple[str, ...]:
    """Return the executables that must exist for a dependency name."""
    return KNOWN_TOOL_COMMANDS.get(name, (name,))


def _query_version(executable: str, timeout: float) -> str | None:
    result = run_command([executable, "--version"], timeout=timeout)
    if not result.ok:
        return None
    match = _VERSION_IN_OUTPUT.search(result.output)
    return match.group(1) if match else None


def _meets_minimum(version: str | None, minimum: str | None) -> bool:
    if minimum is None:
        return True
    if version is None:
        return False
    current = parse_numeric_version(version)
    required = parse_numeric_version(minimum)
    if current is None or required is None:
        return False
    return current >= required


class DependencyResolver:
    """Check that a recipe's dependencies are present before building.

    A dependency is satisfied by an intact kegtap install of the same name or
    by executables on ``PATH`` (the prefix ``bin`` directory is searched
    first). Nothing is installed automatically.
    """

    def __init__(
        self,
        repository: Repository,
        *,
        which: Callable[..., str | None] = shutil.which,
        version_query: Callable[[str, float], str | None] = _query_version,
        version_timeout: float = 10.0,
    ) -> None:
        self.repository = repository
        self._which = which
        self._version_query = version_query
        self.version_timeout = version_timeout

    def _search_path(self) -> str:
        system_path = os.environ.get("PATH", os.defpath)
        return os.pathsep.join([str(self.repository.settings.bin_dir), system_path])

    def check_one(self, dependency: DependencyConfig) -> DependencyStatus:
        """Resolve a single dependency."""
        record = self.repository.get_record(dependency.name)
        if record is not None and self.repository.is_intact(record):
            satisfied = _meets_minimum(record.version, dependency.min_version)
            return DependencyStatus(
                name=dependency.name,
                scope=dependency.scope,
                satisfied=satisfied,
                provider="kegtap",
                location=str(record.keg),
                version=record.version,
                reason=None if satisfied else f"requires >= {dependency.min_version}",
            )

        search_path = self._search_path()
        located: list[str] = []
        for command in commands_for(dependency.name):
            location = self._which(command, path=search_path)
            if location is None:
                return DependencyStatus(
                    name=dependency.name,
                    scope=dependency.scope,
                    satisfied=False,
                    reason=f"command '{command}' not found on PATH",
                )
            located.append(location)

        version = None
        if dependency.min_version is not None:
            version = self._version_query(located[0], self.version_timeout)
        satisfied = _meets_minimum(version, dependency.min_version)
        reason = None
        if not satisfied:
            found = version or "unknown version"
            reason = f"requires >= {dependency.min_version}, found {found}"
        return DependencyStatus(
            name=dependency.name,
            scope=dependency.scope,
            satisfied=satisfied,
            provider="system",
            location=located[0],
            version=version,
            reason=reason,
        )

    def check(self, recipe: RecipeConfig) -> list[DependencyStatus]:
        """Resolve every declared dependency of a recipe."""
        statuses = [self.check_one(dependency) for dependency in recipe.depends_on]
        for status in statuses:
            log_event(
                logger,
                logging.DEBUG,
                "dependencies.checked",
                recipe=recipe.name,
                dependency=status.name,
                scope=status.scope,
                satisfied=status.satisfied,
                provider=status.provider,
            )
        return statuses

    def ensure(self, recipe: RecipeConfig) -> list[DependencyStatus]:
        """Raise ``DependencyMissingError`` unless every dependency is satisfied."""
        statuses = self.check(recipe)
        missing = [status for status in statuses if not status.satisfied]
        if missing:
            details = ", ".join(
                f"{status.name} ({status.scope}): {status.reason}" for status in missing
            )
            log_event(
                logger,
                logging.ERROR,
                "dependencies.missing",
                recipe=recipe.name,
                missing=[status.name for status in missing],
            )
            raise DependencyMissingError(
                f"missing dependencies: {details}",
                recipe=recipe.name,
                missing=[status.name for status in missing],
            )
        return statuses
