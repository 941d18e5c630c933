"""Install pipeline: resolve, fetch, verify, build, install, test."""

from __future__ import annotations

import concurrent.futures
import logging
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from kegtap.builders import BuildContext, BuildExecutor
from kegtap.config import RecipeConfig, dump_recipe_file
from kegtap.dependencies import DependencyResolver, DependencyStatus
from kegtap.errors import BuildError, KegtapError, RecipeNotInstalledError
from kegtap.fetcher import Fetcher, extract_archive
from kegtap.logging_utils import install_context, log_event
from kegtap.repository import InstallRecord, Repository
from kegtap.settings import Settings
from kegtap.smoke import SmokeTestReport, SmokeTestRunner

logger = logging.getLogger(__name__)

InstallState = Literal[
    "parsed",
    "dependencies_resolved",
    "fetched",
    "verified",
    "built",
    "installed",
    "tested",
    "done",
    "failed",
]

# Dependencies are checked before the source is fetched so a recipe that
# cannot build never touches the network.
_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    "parsed": frozenset({"dependencies_resolved", "done"}),
    "dependencies_resolved": frozenset({"fetched"}),
    "fetched": frozenset({"verified"}),
    "verified": frozenset({"built"}),
    "built": frozenset({"installed"}),
    "installed": frozenset({"tested", "done"}),
    "tested": frozenset({"done"}),
    "done": frozenset(),
    "failed": frozenset(),
}


@dataclass(slots=True)
class InstallProgress:
    """Per-install state machine; ``failed`` is reachable from any live state."""

    recipe: str
    state: InstallState = "parsed"
    history: list[InstallState] = field(default_factory=lambda: ["parsed"])

    def advance(self, state: InstallState) -> None:
        """Move to ``state``, rejecting transitions the pipeline never makes."""
        if state == "failed":
            self.fail()
            return
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"illegal install transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)
        log_event(logger, logging.DEBUG, "installer.stage_entered", recipe=self.recipe, stage=state)

    def fail(self) -> None:
        if self.state in {"done", "failed"}:
            raise ValueError(f"illegal install transition {self.state} -> failed")
        self.state = "failed"
        self.history.append("failed")


@dataclass(slots=True)
class InstallReport:
    """What one install invocation did."""

    recipe: str
    version: str
    state: InstallState
    history: list[InstallState]
    keg: Path | None = None
    binaries: list[str] = field(default_factory=list)
    skipped: bool = False
    dependencies: list[DependencyStatus] = field(default_factory=list)
    test_report: SmokeTestReport | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == "done"

    @property
    def tests_passed(self) -> bool | None:
        if self.test_report is None:
            return None
        return self.test_report.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe": self.recipe,
            "version": self.version,
            "state": self.state,
            "history": list(self.history),
            "keg": str(self.keg) if self.keg is not None else None,
            "binaries": list(self.binaries),
            "skipped": self.skipped,
            "dependencies": [status.to_dict() for status in self.dependencies],
            "tests_passed": self.tests_passed,
            "test_report": self.test_report.to_dict() if self.test_report is not None else None,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class InstallOutcome:
    """Result slot for one recipe in a batch install."""

    recipe: str
    report: InstallReport | None = None
    error: KegtapError | None = None


class Installer:
    """Drive recipes through the install pipeline against one repository."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: Repository | None = None,
        fetcher: Fetcher | None = None,
        resolver: DependencyResolver | None = None,
        executor: BuildExecutor | None = None,
        smoke_runner: SmokeTestRunner | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository or Repository(settings)
        self.fetcher = fetcher or Fetcher(
            settings.downloads_dir,
            timeout=settings.fetch_timeout,
            retries=settings.fetch_retries,
            backoff=settings.fetch_backoff,
        )
        self.resolver = resolver or DependencyResolver(self.repository)
        self.executor = executor or BuildExecutor()
        self.smoke_runner = smoke_runner or SmokeTestRunner(timeout=settings.test_timeout)

    def close(self) -> None:
        self.fetcher.close()

    def log_path(self, recipe: RecipeConfig) -> Path:
        """Return the build log location for a recipe version."""
        return self.settings.logs_dir / f"{recipe.name}-{recipe.version}.log"

    def is_current(self, recipe: RecipeConfig) -> bool:
        """Return True if this exact recipe version is installed and intact."""
        return self._matches(recipe, self.repository.get_record(recipe.name))

    def _matches(self, recipe: RecipeConfig, record: InstallRecord | None) -> bool:
        return (
            record is not None
            and record.version == recipe.version
            and record.sha256 == recipe.sha256
            and self.repository.is_intact(record)
        )

    def plan(self, recipe: RecipeConfig) -> list[str]:
        """Describe what an install would do without touching the network or disk."""
        context = BuildContext(
            recipe=recipe,
            buildpath=self.settings.work_dir / recipe.name / "src",
            prefix=self.repository.keg_path(recipe.name, recipe.version or ""),
            work_dir=self.settings.work_dir / recipe.name / "work",
            log_path=self.log_path(recipe),
        )
        steps = [f"fetch {recipe.url} (sha256 {recipe.sha256})"]
        steps.extend(self.executor.plan(context))
        return steps

    def install(
        self,
        recipe: RecipeConfig,
        *,
        force: bool = False,
        run_tests: bool = True,
    ) -> InstallReport:
        """Install a recipe, or do nothing if the same version is already installed.

        Raises the ``KegtapError`` subclass for the first fatal stage. Smoke
        test failures are reported on the returned report and never raised.
        """
        with install_context(), self.repository.lock(recipe.name):
            progress = InstallProgress(recipe=recipe.name)
            log_event(
                logger,
                logging.INFO,
                "installer.started",
                recipe=recipe.name,
                version=recipe.version,
                force=force,
            )
            try:
                return self._install_locked(recipe, progress, force=force, run_tests=run_tests)
            except KegtapError as exc:
                exc.with_recipe(recipe.name)
                progress.fail()
                log_event(
                    logger,
                    logging.ERROR,
                    "installer.failed",
                    recipe=recipe.name,
                    stage=exc.stage,
                    error=exc.message,
                )
                raise
            except OSError as exc:
                progress.fail()
                raise KegtapError(f"install failed: {exc}", recipe=recipe.name) from exc

    def _install_locked(
        self,
        recipe: RecipeConfig,
        progress: InstallProgress,
        *,
        force: bool,
        run_tests: bool,
    ) -> InstallReport:
        version = recipe.version or ""
        existing = self.repository.get_record(recipe.name)
        if not force and existing is not None and self._matches(recipe, existing):
            progress.advance("done")
            log_event(logger, logging.INFO, "installer.already_installed", recipe=recipe.name)
            return InstallReport(
                recipe=recipe.name,
                version=version,
                state=progress.state,
                history=list(progress.history),
                keg=existing.keg,
                binaries=list(existing.binaries),
                skipped=True,
            )

        dependencies = self.resolver.ensure(recipe)
        progress.advance("dependencies_resolved")

        downloaded = self.fetcher.download(recipe.url, recipe.sha256, name=recipe.name)
        progress.advance("fetched")
        archive = self.fetcher.verify(recipe.url, downloaded, recipe.sha256, name=recipe.name)
        progress.advance("verified")

        staging = self.repository.staging_keg_path(recipe.name, version)
        self._build(recipe, archive, staging)
        progress.advance("built")

        keg = self._promote(recipe, staging)
        binaries = self.repository.link_binaries(recipe.name, keg)
        if existing is not None:
            self._unlink_stale(existing, keep=set(binaries))
            if existing.keg != keg:
                self._retire(existing)
        self.repository.record_install(
            InstallRecord(
                name=recipe.name,
                version=version,
                sha256=recipe.sha256,
                url=recipe.url,
                keg=keg,
                binaries=binaries,
            )
        )
        progress.advance("installed")

        report = InstallReport(
            recipe=recipe.name,
            version=version,
            state=progress.state,
            history=progress.history,
            keg=keg,
            binaries=binaries,
            dependencies=dependencies,
        )
        if run_tests:
            test_report = self.smoke_runner.run(recipe, keg, prefix_bin=self.settings.bin_dir)
            self.repository.mark_tested(recipe.name, test_report.passed)
            report.test_report = test_report
            if not test_report.passed:
                report.warnings.extend(test_report.failures)
                log_event(logger, logging.WARNING, "installer.test_failed", recipe=recipe.name)
            progress.advance("tested")

        progress.advance("done")
        report.state = progress.state
        report.history = list(progress.history)
        log_event(logger, logging.INFO, "installer.completed", recipe=recipe.name, keg=str(keg))
        return report

    def _build(self, recipe: RecipeConfig, archive: Path, staging: Path) -> None:
        if staging.exists():
            # Left behind by an earlier failed build.
            shutil.rmtree(staging)
        staging.parent.mkdir(parents=True, exist_ok=True)
        self.settings.work_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path(recipe)
        log_path.unlink(missing_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{recipe.name}-", dir=self.settings.work_dir) as tmp:
            scratch = Path(tmp)
            buildpath = extract_archive(archive, scratch / "src", name=recipe.name)
            context = BuildContext(
                recipe=recipe,
                buildpath=buildpath,
                prefix=staging,
                work_dir=scratch / "work",
                log_path=log_path,
                timeout=self.settings.build_timeout,
            )
            self.executor.run(context)

        if not staging.exists() or not any(staging.iterdir()):
            raise BuildError("install steps produced an empty installation", recipe=recipe.name)

    def _promote(self, recipe: RecipeConfig, staging: Path) -> Path:
        """Swap a finished staging keg into place and keep a recipe snapshot in it."""
        keg = self.repository.keg_path(recipe.name, recipe.version or "")
        dump_recipe_file(recipe, self.repository.snapshot_path(staging))
        if keg.exists():
            backup = keg.with_name(f".{keg.name}.old")
            if backup.exists():
                shutil.rmtree(backup)
            keg.rename(backup)
            staging.rename(keg)
            shutil.rmtree(backup)
        else:
            staging.rename(keg)
        return keg

    def _unlink_stale(self, previous: InstallRecord, *, keep: set[str]) -> None:
        """Drop links to executables the new keg no longer ships."""
        stale = [name for name in previous.binaries if name not in keep]
        if not stale:
            return
        self.repository.unlink_binaries(
            InstallRecord(
                name=previous.name,
                version=previous.version,
                sha256=previous.sha256,
                url=previous.url,
                keg=previous.keg,
                binaries=stale,
            )
        )
        log_event(logger, logging.INFO, "installer.unlinked_stale", recipe=previous.name, binaries=stale)

    def _retire(self, previous: InstallRecord) -> None:
        self.repository.remove_keg(previous)
        log_event(
            logger,
            logging.INFO,
            "installer.retired_keg",
            recipe=previous.name,
            version=previous.version,
        )

    def test(self, recipe: RecipeConfig) -> SmokeTestReport:
        """Run a recipe's smoke tests against its installed keg."""
        with install_context(), self.repository.lock(recipe.name):
            record = self.repository.get_record(recipe.name)
            if record is None or not record.keg.is_dir():
                raise RecipeNotInstalledError(f"'{recipe.name}' is not installed", recipe=recipe.name)
            report = self.smoke_runner.run(recipe, record.keg, prefix_bin=self.settings.bin_dir)
            self.repository.mark_tested(recipe.name, report.passed)
            return report

    def uninstall(self, name: str) -> InstallRecord:
        """Remove a recipe's links, keg, and index record."""
        with install_context(), self.repository.lock(name):
            record = self.repository.get_record(name)
            if record is None:
                raise RecipeNotInstalledError(f"'{name}' is not installed", recipe=name)
            try:
                self.repository.unlink_binaries(record)
                self.repository.remove_keg(record)
                for leftover in (self.settings.cellar / name).glob(".*.partial"):
                    shutil.rmtree(leftover)
                cellar_dir = self.settings.cellar / name
                if cellar_dir.is_dir() and not any(cellar_dir.iterdir()):
                    cellar_dir.rmdir()
            except OSError as exc:
                raise KegtapError(f"uninstall failed: {exc}", recipe=name) from exc
            self.repository.remove_record(name)
            log_event(logger, logging.INFO, "installer.uninstalled", recipe=name, version=record.version)
            return record

    def _install_outcome(
        self,
        recipe: RecipeConfig,
        *,
        force: bool,
        run_tests: bool,
    ) -> InstallOutcome:
        try:
            report = self.install(recipe, force=force, run_tests=run_tests)
        except KegtapError as exc:
            return InstallOutcome(recipe=recipe.name, error=exc)
        return InstallOutcome(recipe=recipe.name, report=report)

    def install_many(
        self,
        recipes: Sequence[RecipeConfig],
        *,
        jobs: int = 1,
        force: bool = False,
        run_tests: bool = True,
    ) -> list[InstallOutcome]:
        """Install independent recipes, up to ``jobs`` at a time, in input order."""
        if jobs <= 1 or len(recipes) <= 1:
            return [self._install_outcome(recipe, force=force, run_tests=run_tests) for recipe in recipes]

        outcomes: list[InstallOutcome | None] = [None] * len(recipes)
        with concurrent.futures.ThreadPoolExecutor(max_workers=jobs) as pool:
            futures = {
                pool.submit(self._install_outcome, recipe, force=force, run_tests=run_tests): index
                for index, recipe in enumerate(recipes)
            }
            for future in concurrent.futures.as_completed(futures):
                outcomes[futures[future]] = future.result()
        return [outcome for outcome in outcomes if outcome is not None]
