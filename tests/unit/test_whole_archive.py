"""Tests for the single-blob checkpoint and the strategy selection."""

from __future__ import annotations

import pytest

from longhaul.core.checkpoint import CheckpointUploadError, ManifestNotFound
from longhaul.core.codec import WrongSecretOrCorrupt
from longhaul.core.strategy import (
    CheckpointStrategy,
    ChunkedStrategy,
    WholeStrategy,
    build_strategy,
    select_strategy_kind,
)
from longhaul.core.whole_archive import WholeArchiveCheckpoint
from longhaul.models.config import StrategyKind

NAME = "ckpt-windows-x64"


class TestWholeArchiveCheckpoint:
    def test_round_trip(self, store, settings, work_dir, small_tree, snapshot, no_sleep):
        whole = WholeArchiveCheckpoint(store, settings, sleep=no_sleep)
        stored = whole.write_whole(work_dir, ["src"], NAME)

        assert stored > 0
        assert not (work_dir / "src").exists()
        assert store.get_metadata(NAME).files == ["build-state.tar.zst"]

        members = whole.restore_whole(work_dir, NAME)
        assert "src/sub/c.txt" in members
        assert snapshot(work_dir) == small_tree
        assert not (work_dir / "extract-temp").exists()

    def test_encrypted_round_trip(
        self, store, secret_settings, work_dir, small_tree, snapshot, no_sleep
    ):
        whole = WholeArchiveCheckpoint(store, secret_settings, sleep=no_sleep)
        secret = secret_settings.secret_value
        whole.write_whole(work_dir, ["src"], NAME, secret=secret)
        assert store.get_metadata(NAME).files == ["build-state.tar.zst.enc"]

        with pytest.raises(WrongSecretOrCorrupt):
            whole.restore_whole(work_dir, NAME, secret="nope")
        whole.restore_whole(work_dir, NAME, secret=secret)
        assert snapshot(work_dir) == small_tree

    def test_replaces_previous_blob(self, store, settings, work_dir, make_tree, snapshot, no_sleep):
        whole = WholeArchiveCheckpoint(store, settings, sleep=no_sleep)
        make_tree(work_dir, {"src/old.txt": b"old"})
        whole.write_whole(work_dir, ["src"], NAME)
        make_tree(work_dir, {"src/new.txt": b"new"})
        whole.write_whole(work_dir, ["src"], NAME)

        whole.restore_whole(work_dir, NAME)
        assert snapshot(work_dir) == {"src/new.txt": b"new"}

    def test_sources_kept_when_upload_fails(
        self, flaky_store, settings, work_dir, small_tree, snapshot, no_sleep
    ):
        whole = WholeArchiveCheckpoint(flaky_store({NAME}), settings, sleep=no_sleep)
        with pytest.raises(CheckpointUploadError):
            whole.write_whole(work_dir, ["src"], NAME)
        assert snapshot(work_dir) == small_tree
        assert not (work_dir / "tar-temp").exists()

    def test_missing_blob(self, store, settings, work_dir, no_sleep):
        with pytest.raises(ManifestNotFound):
            WholeArchiveCheckpoint(store, settings, sleep=no_sleep).restore_whole(work_dir, NAME)

    def test_discard(self, store, settings, work_dir, small_tree, no_sleep):
        whole = WholeArchiveCheckpoint(store, settings, sleep=no_sleep)
        whole.write_whole(work_dir, ["src"], NAME)
        assert whole.discard(NAME) is True
        assert whole.discard(NAME) is False


class TestStrategySelection:
    @pytest.mark.parametrize(
        ("platform", "expected"),
        [
            ("linux", StrategyKind.CHUNKED),
            ("linux-wsl", StrategyKind.CHUNKED),
            ("macos", StrategyKind.CHUNKED),
            ("windows", StrategyKind.WHOLE),
            ("Windows", StrategyKind.WHOLE),
        ],
    )
    def test_platform_default(self, platform, expected):
        assert select_strategy_kind(platform) == expected

    def test_override_wins(self):
        assert select_strategy_kind("windows", StrategyKind.CHUNKED) == StrategyKind.CHUNKED
        assert select_strategy_kind("linux", StrategyKind.WHOLE) == StrategyKind.WHOLE

    def test_build_strategy(self, store, settings):
        chunked = build_strategy(StrategyKind.CHUNKED, store, settings)
        whole = build_strategy(StrategyKind.WHOLE, store, settings)
        assert isinstance(chunked, ChunkedStrategy)
        assert isinstance(whole, WholeStrategy)
        assert isinstance(chunked, CheckpointStrategy)
        assert isinstance(whole, CheckpointStrategy)


class TestStrategies:
    @pytest.mark.parametrize("kind", [StrategyKind.CHUNKED, StrategyKind.WHOLE])
    def test_write_restore_discard(
        self, kind, store, secret_settings, work_dir, small_tree, snapshot, no_sleep
    ):
        strategy = build_strategy(kind, store, secret_settings, sleep=no_sleep)
        assert strategy.write(work_dir, ["src"], NAME) >= 1
        assert strategy.restore(work_dir, NAME) >= 1
        assert snapshot(work_dir) == small_tree

        strategy.discard(NAME)
        assert store.list_blobs(NAME) == []

    def test_chunked_counts(self, store, settings, work_dir, small_tree, no_sleep):
        strategy = ChunkedStrategy(store, settings, sleep=no_sleep)
        assert strategy.write(work_dir, ["src"], NAME) == 3
        assert strategy.restore(work_dir, NAME) == 3
