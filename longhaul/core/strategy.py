"""Checkpoint strategies: the one place platform branching happens.

The orchestrator only sees ``CheckpointStrategy``. ``ChunkedStrategy``
wraps the chunked writer/reader; ``WholeStrategy`` wraps the single-blob
variant. ``build_strategy`` picks one from the resolved ``StrategyKind``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from longhaul.core.blob_store import BlobStore, purge_checkpoint_blobs
from longhaul.core.checkpoint import CheckpointReader, CheckpointWriter
from longhaul.core.whole_archive import WholeArchiveCheckpoint
from longhaul.models.config import CheckpointSettings, StrategyKind

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStrategy(Protocol):
    """Write/restore surface shared by both checkpoint layouts."""

    kind: StrategyKind

    def write(self, work_dir: Path, relative_paths: Sequence[str], checkpoint_name: str) -> int:
        """Persist and consume *relative_paths*. Returns the number of blobs written for data."""
        ...

    def restore(self, work_dir: Path, checkpoint_name: str) -> int:
        """Rebuild the tree in *work_dir*. Returns the number of data blobs read."""
        ...

    def discard(self, checkpoint_name: str) -> None:
        """Best-effort removal of the checkpoint's blobs."""
        ...


class ChunkedStrategy:
    """Split archive, one blob per chunk plus a manifest."""

    kind = StrategyKind.CHUNKED

    def __init__(
        self,
        store: BlobStore,
        settings: CheckpointSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._writer = CheckpointWriter(store, settings, sleep=sleep)
        self._reader = CheckpointReader(store)

    def write(self, work_dir: Path, relative_paths: Sequence[str], checkpoint_name: str) -> int:
        return self._writer.write(
            work_dir, relative_paths, checkpoint_name, secret=self._settings.secret_value
        )

    def restore(self, work_dir: Path, checkpoint_name: str) -> int:
        manifest = self._reader.restore(
            work_dir, checkpoint_name, secret=self._settings.secret_value
        )
        return manifest.volume_count

    def discard(self, checkpoint_name: str) -> None:
        purge_checkpoint_blobs(self._store, checkpoint_name, self._settings.max_volumes)


class WholeStrategy:
    """A single archive blob named after the checkpoint."""

    kind = StrategyKind.WHOLE

    def __init__(
        self,
        store: BlobStore,
        settings: CheckpointSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._archive = WholeArchiveCheckpoint(store, settings, sleep=sleep)

    def write(self, work_dir: Path, relative_paths: Sequence[str], checkpoint_name: str) -> int:
        self._archive.write_whole(
            work_dir, relative_paths, checkpoint_name, secret=self._settings.secret_value
        )
        return 1

    def restore(self, work_dir: Path, checkpoint_name: str) -> int:
        self._archive.restore_whole(
            work_dir, checkpoint_name, secret=self._settings.secret_value
        )
        return 1

    def discard(self, checkpoint_name: str) -> None:
        self._archive.discard(checkpoint_name)


def select_strategy_kind(platform: str, override: StrategyKind | None = None) -> StrategyKind:
    """Windows hosts archive in one piece; everything else is chunked."""
    if override is not None:
        return override
    if platform.lower() == "windows":
        return StrategyKind.WHOLE
    return StrategyKind.CHUNKED


def build_strategy(
    kind: StrategyKind,
    store: BlobStore,
    settings: CheckpointSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> CheckpointStrategy:
    logger.debug("Using %s checkpoint strategy", kind.value)
    if kind == StrategyKind.WHOLE:
        return WholeStrategy(store, settings, sleep=sleep)
    return ChunkedStrategy(store, settings, sleep=sleep)
