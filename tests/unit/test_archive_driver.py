"""Tests for the sequential archive driver: chunk splitting and joining."""

from __future__ import annotations

from pathlib import Path

import pytest

from longhaul.core.archive_driver import (
    ArchiveAborted,
    ArchiveError,
    SequentialArchiveDriver,
    VolumeCountMismatch,
    VolumeLimitExceeded,
)


def _existing(driver: SequentialArchiveDriver):
    """Extraction hook that serves chunk files already on disk."""

    def _source(sequence: int) -> Path | None:
        path = driver.chunk_path(sequence)
        return path if path.exists() else None

    return _source


class TestChunkNaming:
    def test_first_chunk_has_plain_tar_name(self, tmp_path: Path):
        driver = SequentialArchiveDriver(tmp_path, "build-state")
        assert driver.chunk_path(1) == tmp_path / "build-state.tar"

    def test_later_chunks_are_suffixed(self, tmp_path: Path):
        driver = SequentialArchiveDriver(tmp_path, "build-state")
        assert driver.chunk_path(2) == tmp_path / "build-state.tar-2"
        assert driver.chunk_path(17) == tmp_path / "build-state.tar-17"

    def test_chunk_zero_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError):
            SequentialArchiveDriver(tmp_path, "x").chunk_path(0)


class TestCreateChunked:
    def test_small_tree_splits_into_three_chunks(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        boundaries: list[tuple[str, int, int]] = []

        def hook(completed: Path, following: int) -> Path:
            boundaries.append((completed.name, completed.stat().st_size, following))
            return driver.chunk_path(following)

        result = driver.create_chunked(work_dir, ["src"], 4096, hook)

        assert result.chunk_count == 3
        assert result.total_bytes == 10240
        assert boundaries == [("base.tar", 4096, 2), ("base.tar-2", 4096, 3)]
        assert result.final_chunk_path == driver.chunk_path(3)
        assert result.final_chunk_size == 2048
        assert result.final_chunk_path.stat().st_size == 2048

    def test_hook_is_not_called_for_final_chunk(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        calls: list[int] = []

        def hook(completed: Path, following: int) -> Path:
            calls.append(following)
            return driver.chunk_path(following)

        result = driver.create_chunked(work_dir, ["src"], 1024 * 1024, hook)
        assert calls == []
        assert result.chunk_count == 1
        assert result.final_chunk_path == driver.chunk_path(1)

    def test_sources_are_consumed(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n))
        assert not (work_dir / "src").exists()

    def test_sources_kept_when_asked(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(
            work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n), remove_source=False
        )
        assert (work_dir / "src" / "sub" / "c.txt").read_bytes() == b"c-0003"

    def test_members_listed_depth_first(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        result = driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n))
        assert result.members == ["src", "src/a.txt", "src/b.txt", "src/sub", "src/sub/c.txt"]

    def test_volume_limit(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base", max_volumes=2)
        with pytest.raises(VolumeLimitExceeded):
            driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n))

    def test_exactly_max_volumes(self, tmp_path, work_dir, small_tree, snapshot):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base", max_volumes=3)
        result = driver.create_chunked(
            work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n)
        )
        assert result.chunk_count == 3

        dest = tmp_path / "restored"
        driver.extract_chunked(driver.chunk_path(1), dest, _existing(driver))
        assert snapshot(dest) == small_tree

    @pytest.mark.parametrize(("chunk_size", "expected"), [(5120, 2), (10240, 1)])
    def test_final_chunk_exactly_full(
        self, tmp_path, work_dir, small_tree, snapshot, chunk_size, expected
    ):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        result = driver.create_chunked(
            work_dir, ["src"], chunk_size, lambda c, n: driver.chunk_path(n)
        )
        assert result.chunk_count == expected
        assert result.final_chunk_size == chunk_size
        assert result.final_chunk_path == driver.chunk_path(expected)
        assert not driver.chunk_path(expected + 1).exists()

        dest = tmp_path / "restored"
        restored = driver.extract_chunked(driver.chunk_path(1), dest, _existing(driver))
        assert restored.chunk_count == expected
        assert snapshot(dest) == small_tree

    def test_hook_returning_none_aborts(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        with pytest.raises(ArchiveAborted):
            driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: None)

    def test_hook_errors_propagate(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")

        def hook(completed: Path, following: int) -> Path:
            raise RuntimeError("upload exploded")

        with pytest.raises(RuntimeError, match="upload exploded"):
            driver.create_chunked(work_dir, ["src"], 4096, hook)


class TestExtractChunked:
    def test_round_trip(self, tmp_path, work_dir, small_tree, snapshot):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n))

        dest = tmp_path / "restored"
        result = driver.extract_chunked(driver.chunk_path(1), dest, _existing(driver))

        assert result.chunk_count == 3
        assert result.total_bytes == 10240
        assert snapshot(dest) == small_tree
        assert sum(len(v) for v in snapshot(dest).values()) == 26
        assert set(result.members) == {"src", "src/a.txt", "src/b.txt", "src/sub", "src/sub/c.txt"}

    def test_each_chunk_requested_once_in_order(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(work_dir, ["src"], 1024, lambda c, n: driver.chunk_path(n))
        requested: list[int] = []
        source = _existing(driver)

        def hook(sequence: int) -> Path | None:
            requested.append(sequence)
            return source(sequence)

        result = driver.extract_chunked(driver.chunk_path(1), tmp_path / "out", hook)
        assert result.chunk_count == 10
        assert requested == list(range(2, 12))  # 11 signals exhaustion

    def test_truncated_sequence_raises(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(work_dir, ["src"], 1024, lambda c, n: driver.chunk_path(n))
        source = _existing(driver)

        def hook(sequence: int) -> Path | None:
            return None if sequence >= 3 else source(sequence)

        with pytest.raises(VolumeCountMismatch):
            driver.extract_chunked(driver.chunk_path(1), tmp_path / "out", hook)

    def test_missing_first_chunk(self, tmp_path):
        driver = SequentialArchiveDriver(tmp_path, "base")
        with pytest.raises(ArchiveError):
            driver.extract_chunked(driver.chunk_path(1), tmp_path / "out", lambda n: None)

    def test_garbage_after_end_of_archive_rejected(self, tmp_path, work_dir, small_tree):
        driver = SequentialArchiveDriver(tmp_path / "scratch", "base")
        driver.create_chunked(work_dir, ["src"], 4096, lambda c, n: driver.chunk_path(n))
        with open(driver.chunk_path(3), "ab") as fh:
            fh.write(b"not padding")
        with pytest.raises(ArchiveError):
            driver.extract_chunked(driver.chunk_path(1), tmp_path / "out", _existing(driver))

    def test_member_escaping_destination_refused(self, tmp_path):
        import io
        import tarfile

        scratch = tmp_path / "scratch"
        scratch.mkdir()
        driver = SequentialArchiveDriver(scratch, "evil")
        with tarfile.open(driver.chunk_path(1), "w", format=tarfile.GNU_FORMAT) as tar:
            info = tarfile.TarInfo("../escape.txt")
            info.size = 3
            tar.addfile(info, io.BytesIO(b"bad"))

        with pytest.raises(ArchiveError):
            driver.extract_chunked(driver.chunk_path(1), tmp_path / "out", lambda n: None)
        assert not (tmp_path / "escape.txt").exists()
