"""Source archive download, checksum verification, and unpacking."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tarfile
import threading
import time
import zipfile
from collections.abc import Callable
from pathlib import Path
from urllib.parse import unquote, urlparse
from uuid import uuid4

import httpx

from kegtap import __version__
from kegtap.errors import BuildError, FetchError, IntegrityError
from kegtap.logging_utils import log_event

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 64
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


class _TransientFetchError(Exception):
    """Failure worth retrying: transport errors, timeouts, 5xx responses."""


def compute_sha256(path: Path) -> str:
    """Return the hex SHA-256 digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_basename(url: str) -> str:
    """Return a filesystem-safe file name for a source URL."""
    path = urlparse(url).path if "://" in url else url
    basename = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", basename).strip("._")
    return cleaned or "download"


def _local_source_path(url: str) -> Path | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in {"http", "https"}:
        return None
    if "://" in url:
        return None
    return Path(url).expanduser()


class Fetcher:
    """Download source archives into a content-addressed cache."""

    def __init__(
        self,
        downloads_dir: Path,
        *,
        timeout: float = 60.0,
        retries: int = 3,
        backoff: float = 1.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.downloads_dir = downloads_dir
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = max(0.0, backoff)
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def cache_path(self, url: str, sha256: str) -> Path:
        """Return the cache entry path for a URL/checksum pair."""
        return self.downloads_dir / f"{sha256}--{download_basename(url)}"

    def fetch(self, url: str, sha256: str, *, name: str | None = None) -> Path:
        """Return a verified local copy of ``url`` whose digest equals ``sha256``."""
        downloaded = self.download(url, sha256, name=name)
        return self.verify(url, downloaded, sha256, name=name)

    def download(self, url: str, sha256: str, *, name: str | None = None) -> Path:
        """Retrieve ``url`` and return the unverified local file.

        A cache entry whose digest already matches is returned without network
        access. Transport failures are retried with exponential backoff up to
        ``retries`` attempts.
        """
        expected = sha256.lower()
        destination = self.cache_path(url, expected)
        if destination.exists():
            actual = compute_sha256(destination)
            if actual == expected:
                log_event(logger, logging.INFO, "fetcher.cache_hit", recipe=name, path=str(destination))
                return destination
            log_event(
                logger,
                logging.WARNING,
                "fetcher.cache_stale",
                recipe=name,
                path=str(destination),
                actual=actual,
            )
            destination.unlink(missing_ok=True)

        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f"{destination.name}.{uuid4().hex[:8]}.incomplete")
        try:
            self._download(url, partial, name=name)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return partial

    def verify(self, url: str, path: Path, sha256: str, *, name: str | None = None) -> Path:
        """Check a downloaded file against ``sha256`` and move it into the cache.

        A mismatch deletes the file and raises ``IntegrityError``; it is never
        retried.
        """
        expected = sha256.lower()
        destination = self.cache_path(url, expected)
        actual = compute_sha256(path)
        if actual != expected:
            path.unlink(missing_ok=True)
            log_event(
                logger,
                logging.ERROR,
                "fetcher.checksum_mismatch",
                recipe=name,
                url=url,
                expected=expected,
                actual=actual,
            )
            raise IntegrityError(
                f"checksum mismatch for {url}: expected {expected}, got {actual}",
                recipe=name,
                expected=expected,
                actual=actual,
            )
        if path != destination:
            path.replace(destination)
        log_event(logger, logging.INFO, "fetcher.verified", recipe=name, path=str(destination))
        return destination

    def close(self) -> None:
        """Close the underlying HTTP client."""
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _http_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                    headers={"User-Agent": f"kegtap/{__version__}"},
                )
            return self._client

    def _download(self, url: str, target: Path, *, name: str | None) -> None:
        local_path = _local_source_path(url)
        if local_path is not None:
            if not local_path.is_file():
                raise FetchError(f"source file does not exist: {local_path}", recipe=name)
            try:
                shutil.copyfile(local_path, target)
            except OSError as exc:
                raise FetchError(f"failed to copy {local_path}: {exc}", recipe=name) from exc
            return

        for attempt in range(1, self.retries + 1):
            log_event(logger, logging.INFO, "fetcher.download", recipe=name, url=url, attempt=attempt)
            try:
                self._stream(url, target, name=name)
                return
            except _TransientFetchError as exc:
                if attempt >= self.retries:
                    raise FetchError(
                        f"failed to download {url} after {attempt} attempt(s): {exc}",
                        recipe=name,
                    ) from exc
                delay = self.backoff * (2 ** (attempt - 1))
                log_event(
                    logger,
                    logging.WARNING,
                    "fetcher.retry",
                    recipe=name,
                    url=url,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                self._sleep(delay)

    def _stream(self, url: str, target: Path, *, name: str | None) -> None:
        try:
            with self._http_client().stream("GET", url) as response:
                status = response.status_code
                if status >= 500 or status in RETRYABLE_STATUS_CODES:
                    raise _TransientFetchError(f"HTTP {status}")
                if status >= 400:
                    raise FetchError(f"download of {url} failed with HTTP {status}", recipe=name)
                with target.open("wb") as handle:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        handle.write(chunk)
        except httpx.TransportError as exc:
            raise _TransientFetchError(f"{type(exc).__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"download of {url} failed: {exc}", recipe=name) from exc
        except OSError as exc:
            raise FetchError(f"failed to write {target}: {exc}", recipe=name) from exc


def _restore_zip_permissions(archive: zipfile.ZipFile, destination: Path) -> None:
    for info in archive.infolist():
        mode = (info.external_attr >> 16) & 0o777
        if mode and not info.is_dir():
            os.chmod(destination / info.filename, mode)


def _ensure_zip_members_inside(archive: zipfile.ZipFile, destination: Path) -> None:
    root = destination.resolve()
    for info in archive.infolist():
        target = (destination / info.filename).resolve()
        if target != root and root not in target.parents:
            raise BuildError(f"archive member escapes extraction directory: {info.filename}")


def extract_archive(archive: Path, destination: Path, *, name: str | None = None) -> Path:
    """Unpack ``archive`` into ``destination`` and return the source root.

    When the archive holds a single top-level directory (as GitHub tag
    tarballs do) that directory is returned. Files that are not archives are
    copied as-is.
    """
    destination.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive) as tar:
                tar.extractall(destination, filter="data")
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zipped:
                _ensure_zip_members_inside(zipped, destination)
                zipped.extractall(destination)
                _restore_zip_permissions(zipped, destination)
        else:
            original_name = archive.name.split("--", 1)[-1]
            shutil.copy2(archive, destination / original_name)
    except BuildError as exc:
        if name:
            exc.with_recipe(name)
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise BuildError(f"failed to unpack {archive.name}: {exc}", recipe=name) from exc

    entries = list(destination.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return destination
