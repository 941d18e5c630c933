"""Installed-recipe index, keg layout, binary links, and per-package locks."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from kegtap.errors import KegtapError, LockTimeoutError
from kegtap.logging_utils import log_event
from kegtap.settings import Settings

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
INDEX_VERSION = 1
SNAPSHOT_DIRNAME = ".kegtap"
SNAPSHOT_FILENAME = "recipe.yaml"
LOCK_POLL_SECONDS = 0.1


@dataclass(slots=True)
class InstallRecord:
    """Index entry describing one installed recipe."""

    name: str
    version: str
    sha256: str
    url: str
    keg: Path
    binaries: list[str] = field(default_factory=list)
    installed_at: str = ""
    tested: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sha256": self.sha256,
            "url": self.url,
            "keg": str(self.keg),
            "binaries": list(self.binaries),
            "installed_at": self.installed_at,
            "tested": self.tested,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> InstallRecord | None:
        """Build a record from index JSON; ``None`` if required fields are missing."""
        version = data.get("version")
        keg = data.get("keg")
        if not isinstance(version, str) or not isinstance(keg, str):
            return None
        binaries = data.get("binaries")
        tested = data.get("tested")
        return cls(
            name=name,
            version=version,
            sha256=str(data.get("sha256") or ""),
            url=str(data.get("url") or ""),
            keg=Path(keg),
            binaries=[str(item) for item in binaries] if isinstance(binaries, list) else [],
            installed_at=str(data.get("installed_at") or ""),
            tested=tested if isinstance(tested, bool) else None,
        )


def _empty_index() -> dict[str, Any]:
    return {"version": INDEX_VERSION, "recipes": {}}


class Repository:
    """Shared index of installed recipes rooted at an install prefix.

    The repository is an explicit object handed to every operation. Writes to
    a package's keg and links happen under ``lock(name)``; the index file
    itself is rewritten atomically under a separate index lock so concurrent
    installs of different packages do not lose each other's records.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def index_path(self) -> Path:
        return self.settings.state_dir / INDEX_FILENAME

    @property
    def locks_dir(self) -> Path:
        return self.settings.state_dir / "locks"

    def keg_path(self, name: str, version: str) -> Path:
        """Return the final keg directory for a recipe version."""
        return self.settings.cellar / name / version

    def staging_keg_path(self, name: str, version: str) -> Path:
        """Return the directory a build installs into before being swapped in."""
        return self.settings.cellar / name / f".{version}.partial"

    @staticmethod
    def snapshot_path(keg: Path) -> Path:
        """Return where the recipe used for a keg is kept."""
        return keg / SNAPSHOT_DIRNAME / SNAPSHOT_FILENAME

    def load_index(self) -> dict[str, Any]:
        """Load the index, treating unreadable or malformed files as empty."""
        path = self.index_path
        if not path.exists():
            return _empty_index()

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring invalid install index at %s", path)
            return _empty_index()

        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed install index at %s", path)
            return _empty_index()

        recipes = raw.get("recipes")
        if not isinstance(recipes, dict):
            logger.warning("Ignoring install index without 'recipes' mapping at %s", path)
            return _empty_index()

        version = raw.get("version")
        if not isinstance(version, int):
            version = INDEX_VERSION
        return {"version": version, "recipes": recipes}

    def save_index(self, index: dict[str, Any]) -> None:
        """Write the index atomically."""
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(index, indent=2, sort_keys=True) + "\n"
        fd, tmp_name = tempfile.mkstemp(dir=self.settings.state_dir, prefix=".index-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.index_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get_record(self, name: str) -> InstallRecord | None:
        """Return the install record for ``name`` if present and well formed."""
        recipes = self.load_index()["recipes"]
        data = recipes.get(name)
        if not isinstance(data, dict):
            return None
        return InstallRecord.from_dict(name, data)

    def list_records(self) -> list[InstallRecord]:
        """Return all well-formed install records sorted by name."""
        records: list[InstallRecord] = []
        for name, data in sorted(self.load_index()["recipes"].items()):
            if not isinstance(data, dict):
                continue
            record = InstallRecord.from_dict(str(name), data)
            if record is not None:
                records.append(record)
        return records

    def record_install(self, record: InstallRecord) -> InstallRecord:
        """Upsert an install record."""
        if not record.installed_at:
            record.installed_at = datetime.now(UTC).isoformat()
        with self._file_lock("index", timeout=self.settings.lock_timeout):
            index = self.load_index()
            index["recipes"][record.name] = record.to_dict()
            self.save_index(index)
        log_event(logger, logging.INFO, "repository.recorded", recipe=record.name, version=record.version)
        return record

    def mark_tested(self, name: str, passed: bool) -> None:
        """Store the latest smoke-test outcome on an install record."""
        with self._file_lock("index", timeout=self.settings.lock_timeout):
            index = self.load_index()
            data = index["recipes"].get(name)
            if not isinstance(data, dict):
                return
            data["tested"] = passed
            self.save_index(index)

    def remove_record(self, name: str) -> bool:
        """Delete an install record. Returns True if removed."""
        with self._file_lock("index", timeout=self.settings.lock_timeout):
            index = self.load_index()
            if name not in index["recipes"]:
                return False
            del index["recipes"][name]
            self.save_index(index)
        log_event(logger, logging.INFO, "repository.removed", recipe=name)
        return True

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[None]:
        """Hold the exclusive install lock for one package."""
        effective = self.settings.lock_timeout if timeout is None else timeout
        with self._file_lock(f"pkg-{name}", timeout=effective, recipe=name):
            yield

    @contextmanager
    def _file_lock(
        self,
        lock_name: str,
        *,
        timeout: float,
        recipe: str | None = None,
    ) -> Iterator[None]:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        path = self.locks_dir / f"{lock_name}.lock"
        deadline = time.monotonic() + timeout
        with path.open("a+") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"timed out after {timeout}s waiting for lock {path}",
                            recipe=recipe,
                        ) from None
                    time.sleep(LOCK_POLL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def keg_binaries(self, keg: Path) -> list[Path]:
        """Return executable files in a keg's ``bin`` directory."""
        bin_dir = keg / "bin"
        if not bin_dir.is_dir():
            return []
        return sorted(
            path for path in bin_dir.iterdir() if path.is_file() and os.access(path, os.X_OK)
        )

    def link_binaries(self, name: str, keg: Path) -> list[str]:
        """Symlink a keg's executables into the prefix ``bin`` directory."""
        bin_dir = self.settings.bin_dir
        bin_dir.mkdir(parents=True, exist_ok=True)
        cellar = (self.settings.cellar / name).resolve()
        linked: list[str] = []
        for binary in self.keg_binaries(keg):
            link = bin_dir / binary.name
            if link.exists() or link.is_symlink():
                owned = link.is_symlink() and cellar in link.resolve().parents
                if not owned:
                    raise KegtapError(
                        f"cannot link {binary.name}: {link} exists and is not managed by this recipe",
                        recipe=name,
                    )
            tmp_link = bin_dir / f".{binary.name}.{os.getpid()}.tmp"
            tmp_link.unlink(missing_ok=True)
            tmp_link.symlink_to(binary)
            os.replace(tmp_link, link)
            linked.append(binary.name)
        log_event(logger, logging.INFO, "repository.linked", recipe=name, binaries=linked)
        return linked

    def unlink_binaries(self, record: InstallRecord) -> list[Path]:
        """Remove prefix links that point into the record's keg."""
        removed: list[Path] = []
        cellar = (self.settings.cellar / record.name).resolve()
        for binary in record.binaries:
            link = self.settings.bin_dir / binary
            if not link.is_symlink():
                continue
            target = Path(os.path.realpath(link))
            if cellar in target.parents:
                link.unlink()
                removed.append(link)
        return removed

    def is_intact(self, record: InstallRecord) -> bool:
        """Return True if the keg and every recorded link still exist."""
        if not record.keg.is_dir():
            return False
        for binary in record.binaries:
            link = self.settings.bin_dir / binary
            if not link.exists() or not (record.keg / "bin" / binary).exists():
                return False
        return True

    def remove_keg(self, record: InstallRecord) -> None:
        """Delete a keg and its now-empty parent directory."""
        if record.keg.exists():
            shutil.rmtree(record.keg)
        parent = record.keg.parent
        if parent.exists() and parent != self.settings.cellar and not any(parent.iterdir()):
            parent.rmdir()
