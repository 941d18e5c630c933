"""Error taxonomy for the recipe install pipeline."""

from __future__ import annotations

from typing import Literal

Stage = Literal[
    "parse",
    "lookup",
    "dependencies",
    "fetch",
    "verify",
    "build",
    "install",
    "test",
    "uninstall",
    "lock",
]


class KegtapError(Exception):
    """Base error carrying recipe context and a CLI exit code."""

    exit_code = 1
    stage: Stage = "install"

    def __init__(self, message: str, *, recipe: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.recipe = recipe

    def __str__(self) -> str:
        if self.recipe:
            return f"{self.recipe}: {self.message}"
        return self.message

    def with_recipe(self, recipe: str) -> KegtapError:
        """Attach recipe context if the error does not carry one yet."""
        if self.recipe is None:
            self.recipe = recipe
        return self


class ParseError(KegtapError):
    """Recipe document is missing, malformed, or fails validation."""

    exit_code = 2
    stage = "parse"

    def __init__(
        self,
        message: str,
        *,
        recipe: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message, recipe=recipe)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        details = "; ".join(self.errors)
        return f"{base} ({details})"


class FetchError(KegtapError):
    """Network or transport failure while downloading a source archive."""

    exit_code = 3
    stage = "fetch"


class IntegrityError(KegtapError):
    """Downloaded archive digest does not match the declared checksum."""

    exit_code = 4
    stage = "verify"

    def __init__(
        self,
        message: str,
        *,
        recipe: str | None = None,
        expected: str,
        actual: str,
    ) -> None:
        super().__init__(message, recipe=recipe)
        self.expected = expected
        self.actual = actual


class DependencyMissingError(KegtapError):
    """One or more declared dependencies are not available."""

    exit_code = 5
    stage = "dependencies"

    def __init__(
        self,
        message: str,
        *,
        recipe: str | None = None,
        missing: list[str] | None = None,
    ) -> None:
        super().__init__(message, recipe=recipe)
        self.missing = list(missing or [])


class BuildError(KegtapError):
    """An install step exited non-zero or could not be started."""

    exit_code = 6
    stage = "build"

    def __init__(
        self,
        message: str,
        *,
        recipe: str | None = None,
        command: list[str] | None = None,
        returncode: int | None = None,
        output_tail: str = "",
    ) -> None:
        super().__init__(message, recipe=recipe)
        self.command = list(command or [])
        self.returncode = returncode
        self.output_tail = output_tail


class TestFailure(KegtapError):
    """Post-install smoke test did not produce the expected output."""

    __test__ = False

    exit_code = 7
    stage = "test"

    def __init__(
        self,
        message: str,
        *,
        recipe: str | None = None,
        failures: list[str] | None = None,
    ) -> None:
        super().__init__(message, recipe=recipe)
        self.failures = list(failures or [])


class RecipeNotFoundError(KegtapError):
    """No recipe file matches the requested name or path."""

    stage = "lookup"


class RecipeNotInstalledError(KegtapError):
    """Operation requires an installed recipe that is not in the index."""

    stage = "uninstall"


class LockTimeoutError(KegtapError):
    """Another install holds the package lock for too long."""

    stage = "lock"
