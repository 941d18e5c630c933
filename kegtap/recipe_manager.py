"""Recipe lookup across the recipes directory and taps, plus tap management."""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from kegtap.config import RecipeConfig, load_recipe_file
from kegtap.errors import ParseError, RecipeNotFoundError
from kegtap.repository import Repository
from kegtap.settings import Settings

logger = logging.getLogger(__name__)

TAPS_MANIFEST_FILENAME = "taps.json"
RECIPE_SUFFIXES = (".yaml", ".yml")
TAP_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
TapSourceType = Literal["local", "git"]


@dataclass(slots=True)
class RecipeEntry:
    """A recipe file found in the recipes directory or a tap."""

    name: str
    path: Path
    origin: str
    recipe: RecipeConfig | None
    error: str | None = None


@dataclass(slots=True)
class TapRecord:
    """A registered recipe repository."""

    name: str
    path: Path
    source: str
    source_ref: str | None
    source_type: TapSourceType
    added_at: str


def taps_manifest_path(settings: Settings) -> Path:
    """Return the path to the tap registration manifest."""
    return settings.state_dir / TAPS_MANIFEST_FILENAME


def _empty_manifest() -> dict[str, Any]:
    return {"version": 1, "taps": {}}


def load_taps_manifest(settings: Settings) -> dict[str, Any]:
    """Load tap registrations, ignoring unreadable manifests."""
    path = taps_manifest_path(settings)
    if not path.exists():
        return _empty_manifest()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Ignoring invalid tap manifest at %s", path)
        return _empty_manifest()
    if not isinstance(raw, dict) or not isinstance(raw.get("taps"), dict):
        logger.warning("Ignoring malformed tap manifest at %s", path)
        return _empty_manifest()
    return {"version": 1, "taps": raw["taps"]}


def save_taps_manifest(settings: Settings, manifest: dict[str, Any]) -> None:
    """Write tap registrations."""
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    taps_manifest_path(settings).write_text(
        json.dumps(manifest, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def list_taps(settings: Settings) -> list[TapRecord]:
    """Return registered taps sorted by name."""
    taps: list[TapRecord] = []
    for name, record in sorted(load_taps_manifest(settings)["taps"].items()):
        if not isinstance(record, dict):
            continue
        source_type = record.get("source_type")
        taps.append(
            TapRecord(
                name=str(name),
                path=settings.taps_dir / str(name),
                source=str(record.get("source") or ""),
                source_ref=record.get("source_ref") if isinstance(record.get("source_ref"), str) else None,
                source_type="local" if source_type == "local" else "git",
                added_at=str(record.get("added_at") or ""),
            )
        )
    return taps


def resolve_source_type(source: str) -> TapSourceType:
    """Resolve tap source type from source value."""
    if Path(source).expanduser().exists():
        return "local"
    return "git"


def _checkout(source: str, target: Path, *, source_ref: str | None, source_type: TapSourceType) -> None:
    if source_type == "local":
        shutil.copytree(Path(source).expanduser().resolve(), target)
        return
    subprocess.run(["git", "clone", "--quiet", source, str(target)], check=True, text=True)
    if source_ref is not None:
        subprocess.run(
            ["git", "-C", str(target), "checkout", "--quiet", source_ref],
            check=True,
            text=True,
        )


def add_tap(
    settings: Settings,
    name: str,
    source: str,
    *,
    source_ref: str | None = None,
    overwrite: bool = False,
) -> TapRecord:
    """Register a recipe repository from a local path or git URL."""
    if not TAP_NAME_PATTERN.match(name):
        raise ValueError(f"invalid tap name {name!r}; use lowercase letters, digits, '-' or '_'")
    source_type = resolve_source_type(source)
    target = settings.taps_dir / name
    if target.exists():
        if not overwrite:
            raise ValueError(f"tap already exists: {target}")
        shutil.rmtree(target)

    settings.taps_dir.mkdir(parents=True, exist_ok=True)
    try:
        _checkout(source, target, source_ref=source_ref, source_type=source_type)
    except (subprocess.CalledProcessError, OSError):
        if target.exists():
            shutil.rmtree(target)
        raise

    recorded_source = str(Path(source).expanduser().resolve()) if source_type == "local" else source
    added_at = datetime.now(UTC).isoformat()
    manifest = load_taps_manifest(settings)
    manifest["taps"][name] = {
        "source": recorded_source,
        "source_ref": source_ref,
        "source_type": source_type,
        "added_at": added_at,
    }
    save_taps_manifest(settings, manifest)
    return TapRecord(
        name=name,
        path=target,
        source=recorded_source,
        source_ref=source_ref,
        source_type=source_type,
        added_at=added_at,
    )


def update_tap(settings: Settings, name: str) -> TapRecord:
    """Refresh a tap from its recorded source."""
    for tap in list_taps(settings):
        if tap.name == name:
            if tap.source_type == "git" and tap.source_ref is None and tap.path.exists():
                subprocess.run(
                    ["git", "-C", str(tap.path), "pull", "--quiet", "--ff-only"],
                    check=True,
                    text=True,
                )
                return tap
            return add_tap(settings, name, tap.source, source_ref=tap.source_ref, overwrite=True)
    raise ValueError(f"tap '{name}' is not registered")


def remove_tap(settings: Settings, name: str) -> bool:
    """Delete a tap checkout and its registration. Returns True if removed."""
    manifest = load_taps_manifest(settings)
    target = settings.taps_dir / name
    existed = name in manifest["taps"] or target.exists()
    if target.exists():
        shutil.rmtree(target)
    if name in manifest["taps"]:
        del manifest["taps"][name]
        save_taps_manifest(settings, manifest)
    return existed


def recipe_search_dirs(settings: Settings) -> list[tuple[str, Path]]:
    """Return ``(origin, directory)`` pairs searched for recipe files, in priority order."""
    dirs: list[tuple[str, Path]] = [("local", settings.recipes_dir)]
    for tap in list_taps(settings):
        for candidate in (tap.path / "recipes", tap.path / "Formula", tap.path):
            if candidate.is_dir():
                dirs.append((f"tap:{tap.name}", candidate))
                break
    return dirs


def _recipe_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix in RECIPE_SUFFIXES and not path.name.startswith(".")
    )


def discover_recipe_entries(settings: Settings) -> list[RecipeEntry]:
    """List available recipes; invalid files are reported, not raised."""
    entries: list[RecipeEntry] = []
    seen: set[str] = set()
    for origin, directory in recipe_search_dirs(settings):
        for path in _recipe_files(directory):
            name = path.stem
            if name in seen:
                continue
            seen.add(name)
            try:
                recipe = load_recipe_file(path)
            except ParseError as exc:
                entries.append(RecipeEntry(name=name, path=path, origin=origin, recipe=None, error=str(exc)))
                continue
            entries.append(RecipeEntry(name=recipe.name, path=path, origin=origin, recipe=recipe))
    return entries


def find_recipe_file(settings: Settings, name: str) -> Path | None:
    """Locate ``<name>.yaml`` in the recipes directory, then in each tap."""
    for _, directory in recipe_search_dirs(settings):
        for suffix in RECIPE_SUFFIXES:
            candidate = directory / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
    return None


def _looks_like_path(reference: str) -> bool:
    return "/" in reference or reference.endswith(RECIPE_SUFFIXES)


def resolve_recipe(
    reference: str,
    settings: Settings,
    *,
    repository: Repository | None = None,
) -> tuple[RecipeConfig, Path]:
    """Resolve a recipe reference to a parsed recipe and the file it came from.

    ``reference`` may be a path to a YAML file or a recipe name. Names are
    looked up in the recipes directory and taps; when a repository is given,
    the snapshot kept in an installed keg is used as a last resort.
    """
    candidate = Path(reference).expanduser()
    if candidate.is_file():
        recipe = load_recipe_file(candidate)
        return recipe, candidate
    if _looks_like_path(reference):
        raise RecipeNotFoundError(f"recipe file not found: {reference}")

    path = find_recipe_file(settings, reference)
    if path is not None:
        recipe = load_recipe_file(path)
        if recipe.name != reference:
            raise ParseError(
                f"{path} declares name '{recipe.name}', expected '{reference}'",
                recipe=reference,
            )
        return recipe, path

    if repository is not None:
        record = repository.get_record(reference)
        if record is not None:
            snapshot = repository.snapshot_path(record.keg)
            if snapshot.is_file():
                return load_recipe_file(snapshot), snapshot

    raise RecipeNotFoundError(f"no recipe named '{reference}'", recipe=reference)


def recipe_reference_name(reference: str) -> str:
    """Best-effort recipe name for error context before parsing succeeds."""
    return Path(reference).stem if _looks_like_path(reference) else reference
