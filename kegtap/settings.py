"""Filesystem locations and tunables resolved from options and environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = Path.home() / ".kegtap"
PREFIX_ENV = "KEGTAP_PREFIX"
CACHE_ENV = "KEGTAP_CACHE"
RECIPES_DIR_ENV = "KEGTAP_RECIPES_DIR"
FETCH_TIMEOUT_ENV = "KEGTAP_FETCH_TIMEOUT"
FETCH_RETRIES_ENV = "KEGTAP_FETCH_RETRIES"
BUILD_TIMEOUT_ENV = "KEGTAP_BUILD_TIMEOUT"
TEST_TIMEOUT_ENV = "KEGTAP_TEST_TIMEOUT"
LOCK_TIMEOUT_ENV = "KEGTAP_LOCK_TIMEOUT"
VERBOSE_ENV = "KEGTAP_VERBOSE"


@dataclass(frozen=True, slots=True)
class Settings:
    """Resolved locations and timeouts for one kegtap invocation."""

    prefix: Path
    cache_dir: Path
    recipes_dir: Path
    fetch_timeout: float = 60.0
    fetch_retries: int = 3
    fetch_backoff: float = 1.0
    build_timeout: float = 3600.0
    test_timeout: float = 60.0
    lock_timeout: float = 300.0

    @property
    def cellar(self) -> Path:
        return self.prefix / "Cellar"

    @property
    def bin_dir(self) -> Path:
        return self.prefix / "bin"

    @property
    def state_dir(self) -> Path:
        return self.prefix / "var" / "kegtap"

    @property
    def taps_dir(self) -> Path:
        return self.prefix / "taps"

    @property
    def downloads_dir(self) -> Path:
        return self.cache_dir / "downloads"

    @property
    def work_dir(self) -> Path:
        return self.cache_dir / "work"

    @property
    def logs_dir(self) -> Path:
        return self.cache_dir / "logs"

    def with_overrides(self, **changes: object) -> Settings:
        """Return a copy with selected fields replaced."""
        return replace(self, **changes)


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip()).expanduser()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    return value if value > 0 else default


def env_bool(name: str, *, default: bool = False) -> bool:
    """Parse a boolean flag from the environment."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def resolve_prefix(prefix: Path | None = None) -> Path:
    """Resolve install prefix from argument or environment."""
    if prefix is not None:
        return prefix
    return _env_path(PREFIX_ENV) or DEFAULT_PREFIX


def load_settings(
    *,
    prefix: Path | None = None,
    cache_dir: Path | None = None,
    recipes_dir: Path | None = None,
) -> Settings:
    """Build settings from explicit options, then environment, then defaults."""
    resolved_prefix = resolve_prefix(prefix)
    resolved_cache = cache_dir or _env_path(CACHE_ENV) or resolved_prefix / "cache"
    resolved_recipes = recipes_dir or _env_path(RECIPES_DIR_ENV) or resolved_prefix / "recipes"
    return Settings(
        prefix=resolved_prefix,
        cache_dir=resolved_cache,
        recipes_dir=resolved_recipes,
        fetch_timeout=_env_float(FETCH_TIMEOUT_ENV, 60.0),
        fetch_retries=_env_int(FETCH_RETRIES_ENV, 3),
        build_timeout=_env_float(BUILD_TIMEOUT_ENV, 3600.0),
        test_timeout=_env_float(TEST_TIMEOUT_ENV, 60.0),
        lock_timeout=_env_float(LOCK_TIMEOUT_ENV, 300.0),
    )
