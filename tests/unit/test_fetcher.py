"""Unit tests for source download, checksum verification, and unpacking."""

from __future__ import annotations

import hashlib
import io
import tarfile
import zipfile
from pathlib import Path

import httpx
import pytest

from kegtap.errors import BuildError, FetchError, IntegrityError
from kegtap.fetcher import Fetcher, compute_sha256, download_basename, extract_archive

URL = "https://github.com/nkinba/voca-agent/archive/refs/tags/v0.1.0.tar.gz"
PAYLOAD = b"spread source archive"
PAYLOAD_SHA = hashlib.sha256(PAYLOAD).hexdigest()


def _fetcher(tmp_path: Path, handler, *, retries: int = 3, sleeps: list[float] | None = None) -> Fetcher:
    recorded = sleeps if sleeps is not None else []
    return Fetcher(
        tmp_path / "downloads",
        retries=retries,
        backoff=0.5,
        transport=httpx.MockTransport(handler),
        sleep=recorded.append,
    )


def test_fetch_downloads_and_caches_verified_file(tmp_path: Path) -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        assert request.headers["User-Agent"].startswith("kegtap/")
        return httpx.Response(200, content=PAYLOAD)

    with _fetcher(tmp_path, _handler) as fetcher:
        path = fetcher.fetch(URL, PAYLOAD_SHA, name="spread")
        assert path == fetcher.cache_path(URL, PAYLOAD_SHA)
        assert path.read_bytes() == PAYLOAD
        assert path.name == f"{PAYLOAD_SHA}--v0.1.0.tar.gz"

        again = fetcher.fetch(URL, PAYLOAD_SHA, name="spread")

    assert again == path
    assert calls == [URL]


def test_checksum_mismatch_raises_integrity_error_and_deletes_file(tmp_path: Path) -> None:
    wrong = "0" * 64

    with _fetcher(tmp_path, lambda request: httpx.Response(200, content=PAYLOAD)) as fetcher:
        with pytest.raises(IntegrityError) as exc_info:
            fetcher.fetch(URL, wrong, name="spread")

    error = exc_info.value
    assert error.exit_code == 4
    assert error.recipe == "spread"
    assert error.expected == wrong
    assert error.actual == PAYLOAD_SHA
    assert list((tmp_path / "downloads").iterdir()) == []


def test_integrity_failure_is_not_retried(tmp_path: Path) -> None:
    calls: list[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, content=b"tampered")

    with _fetcher(tmp_path, _handler) as fetcher:
        with pytest.raises(IntegrityError):
            fetcher.fetch(URL, PAYLOAD_SHA)

    assert len(calls) == 1


def test_stale_cache_entry_is_replaced(tmp_path: Path) -> None:
    with _fetcher(tmp_path, lambda request: httpx.Response(200, content=PAYLOAD)) as fetcher:
        stale = fetcher.cache_path(URL, PAYLOAD_SHA)
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"corrupted")

        path = fetcher.fetch(URL, PAYLOAD_SHA)

    assert path.read_bytes() == PAYLOAD


def test_transient_failures_retry_with_exponential_backoff(tmp_path: Path) -> None:
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, content=PAYLOAD)])
    sleeps: list[float] = []

    with _fetcher(tmp_path, lambda request: next(responses), sleeps=sleeps) as fetcher:
        path = fetcher.fetch(URL, PAYLOAD_SHA)

    assert path.read_bytes() == PAYLOAD
    assert sleeps == [0.5, 1.0]


def test_transport_errors_exhaust_retries_as_fetch_error(tmp_path: Path) -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    with _fetcher(tmp_path, _handler, retries=3, sleeps=sleeps) as fetcher:
        with pytest.raises(FetchError, match="after 3 attempt"):
            fetcher.fetch(URL, PAYLOAD_SHA, name="spread")

    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]
    assert list((tmp_path / "downloads").iterdir()) == []


def test_client_errors_fail_without_retry(tmp_path: Path) -> None:
    attempts: list[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(404)

    with _fetcher(tmp_path, _handler) as fetcher:
        with pytest.raises(FetchError, match="HTTP 404") as exc_info:
            fetcher.fetch(URL, PAYLOAD_SHA, name="spread")

    assert exc_info.value.exit_code == 3
    assert len(attempts) == 1


def test_file_url_is_copied(tmp_path: Path) -> None:
    source = tmp_path / "spread-0.1.0.tar.gz"
    source.write_bytes(PAYLOAD)

    fetcher = Fetcher(tmp_path / "downloads")
    path = fetcher.fetch(source.as_uri(), PAYLOAD_SHA)

    assert path.read_bytes() == PAYLOAD
    assert source.exists()


def test_missing_local_source_raises_fetch_error(tmp_path: Path) -> None:
    fetcher = Fetcher(tmp_path / "downloads")

    with pytest.raises(FetchError, match="does not exist"):
        fetcher.fetch(str(tmp_path / "missing.tar.gz"), PAYLOAD_SHA, name="spread")


def test_download_then_verify_are_separate_steps(tmp_path: Path) -> None:
    with _fetcher(tmp_path, lambda request: httpx.Response(200, content=PAYLOAD)) as fetcher:
        downloaded = fetcher.download(URL, PAYLOAD_SHA)
        assert downloaded.name.endswith(".incomplete")

        verified = fetcher.verify(URL, downloaded, PAYLOAD_SHA)

    assert not downloaded.exists()
    assert verified == fetcher.cache_path(URL, PAYLOAD_SHA)


def test_compute_sha256_and_basename(tmp_path: Path) -> None:
    path = tmp_path / "blob"
    path.write_bytes(PAYLOAD)

    assert compute_sha256(path) == PAYLOAD_SHA
    assert download_basename(URL) == "v0.1.0.tar.gz"
    assert download_basename("https://example.com/a%20b/tool%201.zip") == "tool_1.zip"
    assert download_basename("https://example.com/") == "download"


def _tar_gz(path: Path, members: dict[str, bytes]) -> None:
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))


def test_extract_tarball_returns_single_top_level_directory(tmp_path: Path) -> None:
    archive = tmp_path / "v0.1.0.tar.gz"
    _tar_gz(
        archive,
        {
            "voca-agent-0.1.0/app/Cargo.toml": b"[package]\nname = \"spread\"\n",
            "voca-agent-0.1.0/README.md": b"readme",
        },
    )

    root = extract_archive(archive, tmp_path / "src")

    assert root == tmp_path / "src" / "voca-agent-0.1.0"
    assert (root / "app" / "Cargo.toml").is_file()


def test_extract_tarball_rejects_escaping_members(tmp_path: Path) -> None:
    archive = tmp_path / "evil.tar.gz"
    _tar_gz(archive, {"../escape.txt": b"nope"})

    with pytest.raises(BuildError, match="failed to unpack"):
        extract_archive(archive, tmp_path / "src", name="evil")

    assert not (tmp_path / "escape.txt").exists()


def test_extract_zip_keeps_permissions(tmp_path: Path) -> None:
    archive = tmp_path / "tool.zip"
    with zipfile.ZipFile(archive, "w") as zipped:
        info = zipfile.ZipInfo("tool/bin/tool")
        info.external_attr = 0o755 << 16
        zipped.writestr(info, "#!/bin/sh\necho tool\n")
        zipped.writestr("tool/LICENSE", "MIT")

    root = extract_archive(archive, tmp_path / "src")

    assert root.name == "tool"
    assert (root / "bin" / "tool").stat().st_mode & 0o111


def test_extract_zip_rejects_escaping_members(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zipped:
        zipped.writestr("../escape.txt", "nope")

    with pytest.raises(BuildError, match="escapes") as exc_info:
        extract_archive(archive, tmp_path / "src", name="evil")

    assert exc_info.value.recipe == "evil"


def test_non_archive_is_copied_under_original_name(tmp_path: Path) -> None:
    cached = tmp_path / f"{PAYLOAD_SHA}--tool"
    cached.write_bytes(b"#!/bin/sh\n")

    root = extract_archive(cached, tmp_path / "src")

    assert root == tmp_path / "src"
    assert (root / "tool").read_bytes() == b"#!/bin/sh\n"
