"""Command line interface for installing, testing, and removing recipes."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer

from kegtap import __version__
from kegtap.config import RecipeConfig
from kegtap.errors import KegtapError
from kegtap.installer import InstallReport, Installer
from kegtap.logging_utils import configure_logging
from kegtap.recipe_manager import (
    add_tap,
    discover_recipe_entries,
    list_taps,
    recipe_reference_name,
    remove_tap,
    resolve_recipe,
    update_tap,
)
from kegtap.repository import Repository
from kegtap.settings import VERBOSE_ENV, Settings, env_bool, load_settings

app = typer.Typer(
    no_args_is_help=True,
    help="Fetch, verify, build, install, and smoke-test packages from YAML recipes.",
    add_completion=False,
)


@dataclass(slots=True)
class CliState:
    """Options shared by every command."""

    settings: Settings
    verbose: bool = False


@app.callback()
def _main(
    ctx: typer.Context,
    prefix: Path | None = typer.Option(
        None,
        "--prefix",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Install prefix (defaults to KEGTAP_PREFIX or ~/.kegtap).",
    ),
    cache_dir: Path | None = typer.Option(
        None,
        "--cache-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Download and build cache (defaults to KEGTAP_CACHE or <prefix>/cache).",
    ),
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Local recipe directory (defaults to KEGTAP_RECIPES_DIR or <prefix>/recipes).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline events to stderr."),
) -> None:
    verbose = verbose or env_bool(VERBOSE_ENV)
    configure_logging(verbose=verbose)
    ctx.obj = CliState(
        settings=load_settings(prefix=prefix, cache_dir=cache_dir, recipes_dir=recipes_dir),
        verbose=verbose,
    )


def _state(ctx: typer.Context) -> CliState:
    state = ctx.find_object(CliState)
    if state is None:
        state = CliState(settings=load_settings())
        ctx.obj = state
    return state


def _exit_for(exc: KegtapError) -> NoReturn:
    typer.echo(f"Error: {exc.stage}: {exc}", err=True)
    raise typer.Exit(code=exc.exit_code) from exc


def _confirm_or_exit(prompt: str, *, yes: bool) -> None:
    if yes:
        return
    if typer.confirm(prompt):
        return
    raise typer.Exit(code=1)


def _load(reference: str, settings: Settings, *, installed_fallback: bool = False) -> RecipeConfig:
    repository = Repository(settings) if installed_fallback else None
    try:
        recipe, _ = resolve_recipe(reference, settings, repository=repository)
    except KegtapError as exc:
        exc.with_recipe(recipe_reference_name(reference))
        _exit_for(exc)
    return recipe


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _print_report(report: InstallReport, settings: Settings) -> None:
    if report.skipped:
        typer.echo(f"{report.recipe} {report.version} is already installed.")
        return
    typer.echo(f"Installed {report.recipe} {report.version} -> {report.keg}")
    for binary in report.binaries:
        typer.echo(f"  {settings.bin_dir / binary}")
    if report.tests_passed is False:
        typer.echo(f"Warning: smoke tests failed for {report.recipe}:", err=True)
        for failure in report.warnings:
            typer.echo(f"  {failure}", err=True)


@app.command("install")
def install(
    ctx: typer.Context,
    recipes: list[str] = typer.Argument(help="Recipe names or paths to recipe YAML files."),
    force: bool = typer.Option(False, "--force", help="Reinstall even if already installed."),
    no_test: bool = typer.Option(False, "--no-test", help="Skip post-install smoke tests."),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Install up to N recipes in parallel."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without installing."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Install one or more recipes."""
    settings = _state(ctx).settings
    loaded = [_load(reference, settings) for reference in recipes]
    installer = Installer(settings)

    if dry_run:
        plans: list[dict[str, Any]] = []
        for recipe in loaded:
            try:
                statuses = installer.resolver.check(recipe)
                steps = installer.plan(recipe)
            except KegtapError as exc:
                _exit_for(exc)
            plans.append(
                {
                    "recipe": recipe.name,
                    "version": recipe.version,
                    "installed": installer.is_current(recipe),
                    "dependencies": [status.to_dict() for status in statuses],
                    "steps": steps,
                }
            )
        if json_output:
            _echo_json(plans)
            return
        for plan in plans:
            suffix = " (already installed)" if plan["installed"] else ""
            typer.echo(f"{plan['recipe']} {plan['version']}{suffix}")
            for status in plan["dependencies"]:
                mark = "ok" if status["satisfied"] else f"missing: {status['reason']}"
                typer.echo(f"  depends on {status['name']} ({status['scope']}): {mark}")
            for step in plan["steps"]:
                typer.echo(f"  $ {step}")
        return

    try:
        outcomes = installer.install_many(loaded, jobs=jobs, force=force, run_tests=not no_test)
    finally:
        installer.close()

    if json_output:
        _echo_json(
            [
                {
                    "recipe": outcome.recipe,
                    "report": outcome.report.to_dict() if outcome.report is not None else None,
                    "error": (
                        {
                            "stage": outcome.error.stage,
                            "exit_code": outcome.error.exit_code,
                            "message": str(outcome.error),
                        }
                        if outcome.error is not None
                        else None
                    ),
                }
                for outcome in outcomes
            ]
        )
    else:
        for outcome in outcomes:
            if outcome.report is not None:
                _print_report(outcome.report, settings)
            elif outcome.error is not None:
                typer.echo(f"Error: {outcome.error.stage}: {outcome.error}", err=True)

    failed = [outcome.error for outcome in outcomes if outcome.error is not None]
    if failed:
        raise typer.Exit(code=failed[0].exit_code)


@app.command("test")
def test(
    ctx: typer.Context,
    recipe_ref: str = typer.Argument(help="Installed recipe name or recipe file."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Run a recipe's smoke tests against its installed keg."""
    settings = _state(ctx).settings
    recipe = _load(recipe_ref, settings, installed_fallback=True)
    installer = Installer(settings)
    try:
        report = installer.test(recipe)
    except KegtapError as exc:
        _exit_for(exc)

    if json_output:
        _echo_json(report.to_dict())
    elif not report.results:
        typer.echo(f"{recipe.name} declares no smoke tests.")
    else:
        for result in report.results:
            status = "ok" if result.passed else "FAILED"
            typer.echo(f"{status}: {' '.join(result.command)}")
            for failure in result.failures:
                typer.echo(f"  {failure}", err=True)

    try:
        report.raise_for_failure()
    except KegtapError as exc:
        _exit_for(exc)


@app.command("uninstall")
def uninstall(
    ctx: typer.Context,
    name: str = typer.Argument(help="Installed recipe name."),
    yes: bool = typer.Option(False, "--yes", help="Uninstall without prompt."),
) -> None:
    """Remove an installed recipe's keg and links."""
    settings = _state(ctx).settings
    installer = Installer(settings)
    record = installer.repository.get_record(name)
    if record is None:
        typer.echo(f"Error: uninstall: {name}: '{name}' is not installed", err=True)
        raise typer.Exit(code=1)
    _confirm_or_exit(f"Uninstall {name} {record.version} from {record.keg}?", yes=yes)
    try:
        removed = installer.uninstall(name)
    except KegtapError as exc:
        _exit_for(exc)
    typer.echo(f"Uninstalled {removed.name} {removed.version}.")


@app.command("fetch")
def fetch(
    ctx: typer.Context,
    recipe_ref: str = typer.Argument(help="Recipe name or recipe file."),
) -> None:
    """Download and verify a recipe's source archive without building it."""
    settings = _state(ctx).settings
    recipe = _load(recipe_ref, settings)
    installer = Installer(settings)
    try:
        path = installer.fetcher.fetch(recipe.url, recipe.sha256, name=recipe.name)
    except KegtapError as exc:
        _exit_for(exc)
    finally:
        installer.close()
    typer.echo(str(path))


@app.command("list")
def list_installed(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List installed recipes."""
    settings = _state(ctx).settings
    repository = Repository(settings)
    records = repository.list_records()
    if json_output:
        _echo_json(
            [
                {"name": record.name, **record.to_dict(), "intact": repository.is_intact(record)}
                for record in records
            ]
        )
        return
    if not records:
        typer.echo(f"Nothing installed in {settings.prefix}.")
        return
    for record in records:
        tested = {True: "passed", False: "failed", None: "-"}[record.tested]
        intact = "" if repository.is_intact(record) else ", broken"
        typer.echo(f"{record.name} {record.version}: tests={tested}{intact}, keg={record.keg}")


@app.command("info")
def info(
    ctx: typer.Context,
    recipe_ref: str = typer.Argument(help="Recipe name or recipe file."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Show a recipe and its install state."""
    settings = _state(ctx).settings
    recipe = _load(recipe_ref, settings, installed_fallback=True)
    repository = Repository(settings)
    record = repository.get_record(recipe.name)
    payload = {
        "recipe": recipe.to_document(),
        "installed": record.to_dict() if record is not None else None,
    }
    if json_output:
        _echo_json(payload)
        return

    typer.echo(f"{recipe.name} {recipe.version}")
    if recipe.desc:
        typer.echo(recipe.desc)
    if recipe.homepage:
        typer.echo(recipe.homepage)
    typer.echo(f"url: {recipe.url}")
    typer.echo(f"sha256: {recipe.sha256}")
    if recipe.license:
        typer.echo(f"license: {recipe.license}")
    for dependency in recipe.depends_on:
        typer.echo(f"depends on: {dependency.name} ({dependency.scope})")
    if record is None:
        typer.echo("Not installed.")
    else:
        typer.echo(f"Installed: {record.version} at {record.keg}")


@app.command("recipes")
def recipes(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List recipes available in the recipes directory and taps."""
    settings = _state(ctx).settings
    entries = discover_recipe_entries(settings)
    payload = [
        {
            "name": entry.name,
            "version": entry.recipe.version if entry.recipe is not None else None,
            "origin": entry.origin,
            "path": str(entry.path),
            "error": entry.error,
        }
        for entry in entries
    ]
    if json_output:
        _echo_json(payload)
        return
    if not payload:
        typer.echo(f"No recipes found in {settings.recipes_dir} or any tap.")
        return
    for item in payload:
        typer.echo(f"{item['name']} {item['version'] or '-'}: origin={item['origin']}, path={item['path']}")
        if item["error"]:
            typer.echo(f"  error: {item['error']}")


@app.command("tap")
def tap(
    ctx: typer.Context,
    name: str = typer.Argument(help="Tap name."),
    source: str = typer.Argument(help="Git URL or local directory of recipe files."),
    source_ref: str | None = typer.Option(None, "--ref", help="Git branch/tag/commit to checkout."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing tap."),
    yes: bool = typer.Option(False, "--yes", help="Clone without prompt."),
) -> None:
    """Register a recipe repository."""
    settings = _state(ctx).settings
    if not Path(source).expanduser().exists():
        _confirm_or_exit(f"Fetch recipes from git repository '{source}'?", yes=yes)
    try:
        record = add_tap(settings, name, source, source_ref=source_ref, overwrite=overwrite)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    except FileNotFoundError as exc:
        typer.echo(f"Required executable not found: {exc.filename}", err=True)
        raise typer.Exit(code=1) from exc
    except subprocess.CalledProcessError as exc:
        typer.echo(f"git failed with exit code {exc.returncode}.", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Tapped '{record.name}' from {record.source} ({record.source_type}).")


@app.command("tap-update")
def tap_update(
    ctx: typer.Context,
    name: str = typer.Argument(help="Tap name."),
) -> None:
    """Refresh a tap from its recorded source."""
    settings = _state(ctx).settings
    try:
        record = update_tap(settings, name)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    except FileNotFoundError as exc:
        typer.echo(f"Required executable not found: {exc.filename}", err=True)
        raise typer.Exit(code=1) from exc
    except subprocess.CalledProcessError as exc:
        typer.echo(f"git failed with exit code {exc.returncode}.", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Updated tap '{record.name}'.")


@app.command("untap")
def untap(
    ctx: typer.Context,
    name: str = typer.Argument(help="Tap name."),
) -> None:
    """Remove a registered recipe repository."""
    settings = _state(ctx).settings
    if not remove_tap(settings, name):
        typer.echo(f"Tap '{name}' is not registered.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed tap '{name}'.")


@app.command("taps")
def taps(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List registered recipe repositories."""
    records = list_taps(_state(ctx).settings)
    if json_output:
        _echo_json(
            [
                {
                    "name": record.name,
                    "path": str(record.path),
                    "source": record.source,
                    "source_ref": record.source_ref,
                    "source_type": record.source_type,
                    "added_at": record.added_at,
                }
                for record in records
            ]
        )
        return
    if not records:
        typer.echo("No taps registered.")
        return
    for record in records:
        ref = f"@{record.source_ref}" if record.source_ref else ""
        typer.echo(f"{record.name}: {record.source}{ref} ({record.source_type})")


@app.command("version")
def version() -> None:
    """Print kegtap version."""
    typer.echo(__version__)


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
