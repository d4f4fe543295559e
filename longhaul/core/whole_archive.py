"""Whole-archive checkpoint: one tar, one blob.

For hosts with enough local disk the tree is archived in a single pass,
compressed, optionally encrypted with the same secretstream contract as
chunks, and uploaded once under the checkpoint name. Source paths are
only removed after the upload succeeded.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from longhaul.core.archive_driver import add_tree
from longhaul.core.blob_store import (
    BlobNotFoundError,
    BlobStore,
    UploadFailedError,
    delete_blob_safely,
    upload_with_retry,
)
from longhaul.core.checkpoint import (
    RESTORE_SCRATCH,
    WRITE_SCRATCH,
    CheckpointError,
    CheckpointUploadError,
    ManifestNotFound,
    check_sources,
    remove_scratch,
)
from longhaul.core.codec import decode_chunk, encode_chunk
from longhaul.models.config import CheckpointSettings

logger = logging.getLogger(__name__)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class WholeArchiveCheckpoint:
    """Single-blob checkpoint writer/reader.

    Parameters
    ----------
    store:
        Blob store the archive is uploaded to.
    settings:
        Compression level, retention and retry knobs. ``chunk_size`` and
        ``max_volumes`` do not apply here.
    sleep:
        Used between upload attempts.
    """

    def __init__(
        self,
        store: BlobStore,
        settings: CheckpointSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sleep = sleep

    def write_whole(
        self,
        work_dir: Path,
        relative_paths: Sequence[str],
        name: str,
        secret: str | None = None,
    ) -> int:
        """Archive, encode and upload the tree as blob *name*. Returns stored bytes."""
        work_dir = Path(work_dir)
        settings = self._settings
        check_sources(work_dir, relative_paths, WRITE_SCRATCH)
        delete_blob_safely(self._store, name)

        scratch = work_dir / WRITE_SCRATCH
        remove_scratch(scratch)
        scratch.mkdir(parents=True)
        try:
            archive = scratch / f"{settings.base_name}.tar"
            members: list[str] = []
            with tarfile.open(archive, "w", format=tarfile.GNU_FORMAT) as tar:
                for relative in relative_paths:
                    add_tree(tar, work_dir, relative, remove_source=False, members=members)
            encoded = encode_chunk(
                archive, level=settings.compression_level, secret=secret
            )
            stored = encoded.stat().st_size
            try:
                upload_with_retry(
                    self._store,
                    name,
                    [encoded],
                    scratch,
                    retention_days=settings.retention_days,
                    attempts=settings.upload_attempts,
                    delay=settings.upload_retry_delay,
                    sleep=self._sleep,
                )
            except UploadFailedError as exc:
                raise CheckpointUploadError(f"Archive {name} was not uploaded: {exc}") from exc
        finally:
            remove_scratch(scratch)

        for relative in relative_paths:
            _remove_path(work_dir / relative)
        logger.info(
            "Checkpoint %s written as one archive: %d member(s), %d bytes stored",
            name, len(members), stored,
        )
        return stored

    def restore_whole(
        self,
        work_dir: Path,
        name: str,
        secret: str | None = None,
    ) -> list[str]:
        """Download blob *name* and extract it into *work_dir*. Returns member names."""
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            handle = self._store.get_metadata(name)
        except BlobNotFoundError as exc:
            raise ManifestNotFound(f"No checkpoint archive named {name}") from exc

        scratch = work_dir / RESTORE_SCRATCH
        remove_scratch(scratch)
        try:
            paths = self._store.download(handle, scratch)
            if len(paths) != 1:
                raise CheckpointError(f"Blob {name} holds {len(paths)} files, expected 1")
            archive = decode_chunk(paths[0], secret=secret)
            try:
                with tarfile.open(archive, "r") as tar:
                    tar.extractall(work_dir, filter="tar")
                    members = tar.getnames()
            except tarfile.TarError as exc:
                raise CheckpointError(f"Archive {name} is not a valid tar: {exc}") from exc
        finally:
            remove_scratch(scratch)

        logger.info("Checkpoint %s restored: %d member(s)", name, len(members))
        return members

    def discard(self, name: str) -> bool:
        return delete_blob_safely(self._store, name)
