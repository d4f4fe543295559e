"""Shared test fixtures for longhaul."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
from pydantic import SecretStr

from longhaul.core.blob_store import BlobHandle, BlobStoreError, FilesystemBlobStore
from longhaul.models.config import CheckpointSettings

# Three files, 26 bytes in total: one 10240-byte tar record.
SMALL_TREE: dict[str, bytes] = {
    "src/a.txt": b"alpha-0001",
    "src/b.txt": b"bravo-0002",
    "src/sub/c.txt": b"c-0003",
}


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the host's LONGHAUL_* variables and any .env file out of tests."""
    for key in list(os.environ):
        if key.startswith("LONGHAUL_") or key in ("ARCHIVE_PASSWORD", "WSL_DISTRO_NAME"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Provide an empty build working directory."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path: Path) -> FilesystemBlobStore:
    """Provide a fresh FilesystemBlobStore in a temp directory."""
    return FilesystemBlobStore(tmp_path / "blobs")


@pytest.fixture
def settings() -> CheckpointSettings:
    """Small chunks and no retry delay."""
    return CheckpointSettings(
        chunk_size=4096,
        max_volumes=40,
        upload_attempts=3,
        volume_retry_delay=0,
        upload_retry_delay=0,
    )


@pytest.fixture
def secret_settings(settings: CheckpointSettings) -> CheckpointSettings:
    return settings.model_copy(update={"secret": SecretStr("correct horse battery staple")})


@pytest.fixture
def sleeps() -> list[float]:
    """Records the delays an upload retry loop asked for."""
    return []


@pytest.fixture
def no_sleep(sleeps: list[float]) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def make_tree() -> Callable[[Path, dict[str, bytes]], None]:
    """Factory fixture: write {relative path: content} under a root."""

    def _factory(root: Path, files: dict[str, bytes]) -> None:
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

    return _factory


def snapshot_tree(root: Path, relative: str = "src") -> dict[str, bytes]:
    """Map every file under ``root/relative`` to its content."""
    base = root / relative
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(base.rglob("*"))
        if p.is_file()
    }


class FlakyStore:
    """Wraps a real store and fails uploads of chosen blob names.

    Parameters
    ----------
    inner:
        The store that does the real work.
    fail_names:
        Blob names whose uploads fail.
    failures:
        How many times each of those uploads fails; None means always.
    leave_partial:
        Upload first, then fail, leaving a stale blob behind.
    """

    def __init__(
        self,
        inner: FilesystemBlobStore,
        fail_names: set[str],
        failures: int | None = None,
        *,
        leave_partial: bool = False,
    ) -> None:
        self.inner = inner
        self.fail_names = fail_names
        self.failures = failures
        self.leave_partial = leave_partial
        self.attempts: dict[str, int] = {}
        self.deletes: list[str] = []

    def upload(
        self, name: str, files: Sequence[Path], base_dir: Path, retention_days: int = 1
    ) -> BlobHandle:
        self.attempts[name] = self.attempts.get(name, 0) + 1
        failing = name in self.fail_names and (
            self.failures is None or self.attempts[name] <= self.failures
        )
        if failing:
            if self.leave_partial:
                self.inner.upload(name, files, base_dir, retention_days)
            raise BlobStoreError(f"injected failure for {name}")
        return self.inner.upload(name, files, base_dir, retention_days)

    def get_metadata(self, name: str) -> BlobHandle:
        return self.inner.get_metadata(name)

    def download(self, handle: BlobHandle, dest_dir: Path) -> list[Path]:
        return self.inner.download(handle, dest_dir)

    def delete(self, name: str) -> bool:
        self.deletes.append(name)
        return self.inner.delete(name)


# ---------------------------------------------------------------------------
# Fixtures over the helpers above
# ---------------------------------------------------------------------------


@pytest.fixture
def small_tree(work_dir: Path, make_tree: Callable[[Path, dict[str, bytes]], None]) -> dict[str, bytes]:
    """Write SMALL_TREE into the work dir and return it."""
    make_tree(work_dir, SMALL_TREE)
    return dict(SMALL_TREE)


@pytest.fixture
def snapshot() -> Callable[..., dict[str, bytes]]:
    return snapshot_tree


@pytest.fixture
def flaky_store(store: FilesystemBlobStore) -> Callable[..., FlakyStore]:
    """Factory fixture: a FlakyStore around the test store."""

    def _factory(fail_names: set[str], failures: int | None = None, **kwargs) -> FlakyStore:
        return FlakyStore(store, fail_names, failures, **kwargs)

    return _factory
