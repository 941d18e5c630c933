"""Unit tests for dependency resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from kegtap.config import RecipeConfig
from kegtap.dependencies import DependencyResolver, commands_for
from kegtap.errors import DependencyMissingError
from kegtap.repository import InstallRecord, Repository
from kegtap.settings import Settings


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        prefix=tmp_path / "prefix",
        cache_dir=tmp_path / "cache",
        recipes_dir=tmp_path / "recipes",
        lock_timeout=2.0,
    )


def _recipe(depends_on: list[object]) -> RecipeConfig:
    return RecipeConfig.model_validate(
        {
            "name": "spread",
            "url": "https://example.com/spread-0.1.0.tar.gz",
            "sha256": "a" * 64,
            "depends_on": depends_on,
            "install": [{"builder": "cargo", "path": "app"}],
        }
    )


def _which(available: dict[str, str]):
    def _lookup(command: str, path: str | None = None) -> str | None:
        _ = path
        return available.get(command)

    return _lookup


def test_commands_for_known_and_unknown_tools() -> None:
    assert commands_for("rust") == ("cargo", "rustc")
    assert commands_for("jq") == ("jq",)


def test_system_tool_satisfies_build_dependency(tmp_path: Path) -> None:
    resolver = DependencyResolver(
        Repository(_settings(tmp_path)),
        which=_which({"cargo": "/usr/bin/cargo", "rustc": "/usr/bin/rustc"}),
    )

    statuses = resolver.ensure(_recipe([{"rust": "build"}]))

    assert len(statuses) == 1
    assert statuses[0].satisfied is True
    assert statuses[0].provider == "system"
    assert statuses[0].location == "/usr/bin/cargo"
    assert statuses[0].scope == "build"


def test_missing_build_dependency_raises(tmp_path: Path) -> None:
    resolver = DependencyResolver(
        Repository(_settings(tmp_path)),
        which=_which({"cargo": "/usr/bin/cargo"}),
    )

    with pytest.raises(DependencyMissingError) as exc_info:
        resolver.ensure(_recipe([{"rust": "build"}, "jq"]))

    error = exc_info.value
    assert error.exit_code == 5
    assert error.recipe == "spread"
    assert error.missing == ["rust", "jq"]
    assert "rustc" in str(error)


def test_search_path_prefers_prefix_bin(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    seen: list[str | None] = []

    def _lookup(command: str, path: str | None = None) -> str | None:
        seen.append(path)
        return f"/usr/bin/{command}"

    DependencyResolver(Repository(settings), which=_lookup).ensure(_recipe(["jq"]))

    assert seen[0] is not None
    assert seen[0].split(":")[0] == str(settings.bin_dir)


def test_min_version_is_queried(tmp_path: Path) -> None:
    queried: list[str] = []

    def _query(executable: str, timeout: float) -> str | None:
        _ = timeout
        queried.append(executable)
        return "1.70.0"

    resolver = DependencyResolver(
        Repository(_settings(tmp_path)),
        which=_which({"cargo": "/usr/bin/cargo", "rustc": "/usr/bin/rustc"}),
        version_query=_query,
    )

    ok = resolver.check(_recipe([{"name": "rust", "scope": "build", "min_version": "1.65"}]))
    too_old = resolver.check(_recipe([{"name": "rust", "scope": "build", "min_version": "1.75"}]))

    assert queried == ["/usr/bin/cargo", "/usr/bin/cargo"]
    assert ok[0].satisfied is True
    assert ok[0].version == "1.70.0"
    assert too_old[0].satisfied is False
    assert too_old[0].reason == "requires >= 1.75, found 1.70.0"


def test_installed_recipe_satisfies_dependency(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    repository = Repository(settings)
    keg = settings.cellar / "jq" / "1.7.1"
    (keg / "bin").mkdir(parents=True)
    repository.record_install(
        InstallRecord(name="jq", version="1.7.1", sha256="b" * 64, url="file:///jq.tar.gz", keg=keg)
    )

    resolver = DependencyResolver(repository, which=_which({}))
    statuses = resolver.ensure(_recipe(["jq"]))

    assert statuses[0].provider == "kegtap"
    assert statuses[0].version == "1.7.1"


def test_recipe_without_dependencies_resolves_empty(tmp_path: Path) -> None:
    resolver = DependencyResolver(Repository(_settings(tmp_path)), which=_which({}))

    assert resolver.ensure(_recipe([])) == []
