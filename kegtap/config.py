"""Configuration models for declarative package recipes."""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kegtap.errors import ParseError

DependencyScope = Literal["build", "run"]
BuilderType = Literal["cargo", "script", "copy"]

NAME_PATTERN = r"^[a-z0-9][a-z0-9+_.-]*$"
_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_NUMERIC_VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+){0,2}$")
_VERSION_PATTERN = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._+-]*$")
_ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tbz", ".txz", ".tar", ".zip")
_TRAILING_VERSION_PATTERN = re.compile(
    r"(?:^|[-_])v?(\d+(?:\.\d+)*(?:[-.]?(?:alpha|beta|rc|pre)\.?\d*)?)$",
    re.IGNORECASE,
)


def parse_numeric_version(value: str) -> tuple[int, int, int] | None:
    """Parse ``major[.minor[.patch]]`` into a comparable tuple."""
    if not _NUMERIC_VERSION_PATTERN.match(value):
        return None
    parts = [int(part) for part in value.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return (parts[0], parts[1], parts[2])


def _split_command(value: Any) -> Any:
    if isinstance(value, str):
        return shlex.split(value)
    return value


def _validate_tokens(value: list[str], *, label: str) -> list[str]:
    if not value:
        raise ValueError(f"{label} must contain at least one token")
    tokens: list[str] = []
    for token in value:
        if not token.strip():
            raise ValueError(f"{label} tokens must not be empty")
        tokens.append(token)
    return tokens


def derive_version(url: str) -> str | None:
    """Guess a version from a source archive URL (``.../v0.1.0.tar.gz`` -> ``0.1.0``)."""
    path = urlparse(url).path if "://" in url else url
    basename = path.rstrip("/").rsplit("/", 1)[-1]
    lowered = basename.lower()
    for suffix in _ARCHIVE_SUFFIXES:
        if lowered.endswith(suffix):
            basename = basename[: -len(suffix)]
            break
    match = _TRAILING_VERSION_PATTERN.search(basename)
    if match is None:
        return None
    return match.group(1)


class DependencyConfig(BaseModel):
    """Reference to another recipe or system tool needed by a recipe."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    scope: DependencyScope = "run"
    min_version: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("dependency name must not be empty")
        return normalized

    @field_validator("min_version")
    @classmethod
    def _validate_min_version(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip()
        if parse_numeric_version(normalized) is None:
            raise ValueError("min_version must use numeric format (major.minor.patch)")
        return normalized


class InstallStepConfig(BaseModel):
    """One install step executed by the builder named in ``builder``."""

    model_config = ConfigDict(extra="forbid")

    builder: BuilderType
    path: str = "."
    args: list[str] = Field(default_factory=list)
    run: list[str] | None = None
    env: dict[str, str] = Field(default_factory=dict)
    files: list[str] = Field(default_factory=list)
    dest: str = "bin"

    @field_validator("run", "args", mode="before")
    @classmethod
    def _split_string_commands(cls, value: Any) -> Any:
        return _split_command(value)

    @model_validator(mode="after")
    def validate_required_fields(self) -> InstallStepConfig:
        """Validate step fields required by builder type."""
        if self.builder == "script":
            if self.run is None:
                raise ValueError("builder 'script' is missing required field(s): run")
            self.run = _validate_tokens(self.run, label="run")
        if self.builder == "copy" and not self.files:
            raise ValueError("builder 'copy' is missing required field(s): files")
        for relative in (self.path, self.dest, *self.files):
            if Path(relative).is_absolute() or ".." in Path(relative).parts:
                raise ValueError(f"step paths must stay inside the build tree: {relative!r}")
        return self


class SmokeTestConfig(BaseModel):
    """A post-install assertion against command output."""

    model_config = ConfigDict(extra="forbid")

    run: list[str]
    expect: str | None = None
    pattern: str | None = None
    exit_code: int = 0

    @field_validator("run", mode="before")
    @classmethod
    def _split_string_command(cls, value: Any) -> Any:
        return _split_command(value)

    @field_validator("run", mode="after")
    @classmethod
    def _validate_run(cls, value: list[str]) -> list[str]:
        return _validate_tokens(value, label="test run")

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid test pattern: {exc}") from exc
        return value


class RecipeConfig(BaseModel):
    """Top-level recipe loaded from a ``<name>.yaml`` file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=NAME_PATTERN)
    desc: str = ""
    homepage: str | None = None
    url: str = Field(min_length=1)
    sha256: str
    license: str | None = None
    version: str | None = None
    depends_on: list[DependencyConfig] = Field(default_factory=list)
    install: list[InstallStepConfig] = Field(min_length=1)
    test: list[SmokeTestConfig] = Field(default_factory=list)

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_sha256(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        normalized = value.strip().lower()
        if not _SHA256_PATTERN.match(normalized):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return normalized

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> Any:
        # YAML reads ``version: 1.2`` as a float.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalize_depends_on(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, Mapping):
            value = [{key: item} for key, item in value.items()]
        if not isinstance(value, list):
            return value
        normalized: list[Any] = []
        for item in value:
            if isinstance(item, str):
                normalized.append({"name": item})
            elif isinstance(item, Mapping) and len(item) == 1 and "name" not in item:
                ((name, scope),) = item.items()
                normalized.append({"name": str(name), "scope": scope})
            else:
                normalized.append(item)
        return normalized

    @model_validator(mode="after")
    def validate_version_and_dependencies(self) -> RecipeConfig:
        """Fill and check the version, then reject duplicate dependencies."""
        if self.version is not None:
            self.version = self.version.strip() or None
        if self.version is None:
            self.version = derive_version(self.url)
        if self.version is None:
            raise ValueError("version could not be derived from url; set 'version' explicitly")
        if not _VERSION_PATTERN.match(self.version) or ".." in self.version:
            raise ValueError(f"invalid version {self.version!r}: use letters, digits, '.', '_', '+' and '-' only")

        seen: set[str] = set()
        for dependency in self.depends_on:
            if dependency.name in seen:
                raise ValueError(f"dependency '{dependency.name}' is declared more than once")
            if dependency.name == self.name:
                raise ValueError("recipe must not depend on itself")
            seen.add(dependency.name)
        return self

    @property
    def build_dependencies(self) -> list[DependencyConfig]:
        return [dep for dep in self.depends_on if dep.scope == "build"]

    @property
    def run_dependencies(self) -> list[DependencyConfig]:
        return [dep for dep in self.depends_on if dep.scope == "run"]

    def to_document(self) -> dict[str, Any]:
        """Serialize back into the YAML document shape."""
        return self.model_dump(mode="json", exclude_none=True)


def _format_validation_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "recipe"
        if error.get("type") == "missing":
            messages.append(f"missing required field '{location}'")
        else:
            messages.append(f"{location}: {error.get('msg')}")
    return messages


def parse_recipe_config(data: Mapping[str, object], *, source: str | None = None) -> RecipeConfig:
    """Validate recipe data, raising ``ParseError`` with every field problem."""
    raw_name = data.get("name") if isinstance(data, Mapping) else None
    recipe_name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else None
    try:
        return RecipeConfig.model_validate(data)
    except ValidationError as exc:
        where = f" in {source}" if source else ""
        raise ParseError(
            f"invalid recipe{where}",
            recipe=recipe_name,
            errors=_format_validation_errors(exc),
        ) from exc


def load_recipe_file(path: Path) -> RecipeConfig:
    """Load and validate a recipe YAML document."""
    if not path.exists() or not path.is_file():
        raise ParseError(f"recipe file not found: {path}")
    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ParseError(f"{path} is not valid YAML: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ParseError(f"{path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise ParseError(f"failed to read {path}: {exc}") from exc
    if raw_data is None:
        raise ParseError(f"{path} is empty")
    if not isinstance(raw_data, dict):
        raise ParseError(f"{path} must contain a YAML mapping")
    recipe_data = {str(key): value for key, value in raw_data.items()}
    return parse_recipe_config(recipe_data, source=str(path))


def dump_recipe_file(recipe: RecipeConfig, path: Path) -> None:
    """Write a recipe back to YAML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(recipe.to_document(), sort_keys=False), encoding="utf-8")
