"""Chunked checkpoint writer and reader.

The writer consumes a working tree into a chunked tar stream. Every time
the archive driver completes a chunk, the chunk is compressed, optionally
encrypted, uploaded as ``{name}-vol{n:03d}`` and deleted before the driver
moves on, so at most two chunk files exist locally at once. The trailing
chunk never crosses a boundary and is processed explicitly after the
driver returns. The manifest blob is published last; a checkpoint without
a manifest does not exist as far as ``restore`` is concerned.

The reader mirrors this: it fetches the manifest, then downloads,
verifies and decodes one chunk at a time as the extractor asks for it,
deleting the previous chunk once the next one is ready.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from pydantic import ValidationError

from longhaul.core.archive_driver import SequentialArchiveDriver, VolumeCountMismatch
from longhaul.core.blob_store import (
    BlobNotFoundError,
    BlobStore,
    UploadFailedError,
    purge_checkpoint_blobs,
    upload_with_retry,
)
from longhaul.core.codec import decode_chunk, encode_chunk, is_encrypted_name
from longhaul.core.errors import LonghaulError
from longhaul.core.hasher import sha256_file
from longhaul.models.chunks import (
    MANIFEST_FILENAME,
    Chunk,
    Manifest,
    manifest_blob_name,
    volume_blob_name,
)
from longhaul.models.config import CheckpointSettings

logger = logging.getLogger(__name__)

WRITE_SCRATCH = "tar-temp"
RESTORE_SCRATCH = "extract-temp"


class CheckpointError(LonghaulError):
    """A checkpoint could not be written or restored."""


class ManifestNotFound(CheckpointError):
    """No manifest blob exists for the requested checkpoint."""


class CheckpointUploadError(CheckpointError):
    """A chunk or manifest upload failed after every retry."""


class ChunkIntegrityError(CheckpointError):
    """A downloaded chunk does not match the digest recorded in the manifest."""


def _reset_dir(path: Path) -> Path:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
    return path


def remove_scratch(path: Path) -> None:
    """Best-effort removal of a scratch directory."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove scratch directory %s: %s", path, exc)


def check_sources(work_dir: Path, relative_paths: Sequence[str], scratch_name: str) -> None:
    """Raise ``CheckpointError`` unless every source path exists under *work_dir*."""
    if not work_dir.is_dir():
        raise CheckpointError(f"Working directory does not exist: {work_dir}")
    if not relative_paths:
        raise CheckpointError("No paths given to checkpoint")
    for relative in relative_paths:
        parts = Path(relative).parts
        if Path(relative).is_absolute() or ".." in parts or relative in ("", "."):
            raise CheckpointError(f"Checkpoint paths must be relative to the work dir: {relative!r}")
        if parts[0] == scratch_name:
            raise CheckpointError(f"Cannot checkpoint the scratch directory: {relative!r}")
        if not os.path.lexists(work_dir / relative):
            raise CheckpointError(f"Checkpoint path does not exist: {work_dir / relative}")


# ----------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------


class _UploadFeed:
    """Boundary hook: ship each completed chunk, then name the next one."""

    def __init__(
        self,
        writer: CheckpointWriter,
        driver: SequentialArchiveDriver,
        checkpoint_name: str,
        secret: str | None,
    ) -> None:
        self._writer = writer
        self._driver = driver
        self._checkpoint_name = checkpoint_name
        self._secret = secret
        self.chunks: list[Chunk] = []

    def __call__(self, completed: Path, following: int) -> Path:
        self.chunks.append(
            self._writer._ship_chunk(
                completed, len(self.chunks) + 1, self._checkpoint_name, self._secret
            )
        )
        return self._driver.chunk_path(following)


class CheckpointWriter:
    """Writes a working tree to the blob store as a chunked checkpoint.

    Parameters
    ----------
    store:
        Blob store the chunks and manifest are uploaded to.
    settings:
        Chunk size, volume limit, compression level and retry knobs.
    sleep:
        Used between upload attempts; tests pass a no-op.
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

    def write(
        self,
        work_dir: Path,
        relative_paths: Sequence[str],
        checkpoint_name: str,
        secret: str | None = None,
    ) -> int:
        """Archive and upload *relative_paths*, consuming them. Returns the chunk count."""
        work_dir = Path(work_dir)
        settings = self._settings

        purge_checkpoint_blobs(self._store, checkpoint_name, settings.max_volumes)
        check_sources(work_dir, relative_paths, WRITE_SCRATCH)
        scratch = _reset_dir(work_dir / WRITE_SCRATCH)

        try:
            driver = SequentialArchiveDriver(scratch, settings.base_name, settings.max_volumes)
            feed = _UploadFeed(self, driver, checkpoint_name, secret)
            result = driver.create_chunked(
                work_dir, relative_paths, settings.chunk_size, feed
            )
            chunks = feed.chunks
            chunks.append(
                self._process_final_chunk(
                    result.final_chunk_path, len(chunks) + 1, checkpoint_name, secret
                )
            )
            manifest = Manifest.from_chunks(
                base_name=settings.base_name,
                artifact_base=checkpoint_name,
                chunks=chunks,
                chunk_size=settings.chunk_size,
                total_bytes=result.total_bytes,
            )
            self._publish_manifest(manifest, scratch)
        finally:
            remove_scratch(scratch)

        logger.info(
            "Checkpoint %s written: %d chunk(s), %d bytes stored%s",
            checkpoint_name,
            manifest.volume_count,
            manifest.stored_bytes,
            " (encrypted)" if manifest.encrypted else "",
        )
        return manifest.volume_count

    # ------------------------------------------------------------------
    # Per-chunk pipeline
    # ------------------------------------------------------------------

    def _process_final_chunk(
        self,
        final_path: Path | None,
        sequence: int,
        checkpoint_name: str,
        secret: str | None,
    ) -> Chunk:
        """Ship the trailing chunk, which never reaches the boundary hook."""
        if final_path is None or not final_path.is_file():
            raise CheckpointError(f"Final chunk {sequence} is missing from the scratch directory")
        return self._ship_chunk(final_path, sequence, checkpoint_name, secret)

    def _ship_chunk(
        self, path: Path, sequence: int, checkpoint_name: str, secret: str | None
    ) -> Chunk:
        settings = self._settings
        size = path.stat().st_size
        encoded = encode_chunk(path, level=settings.compression_level, secret=secret)
        chunk = Chunk(
            sequence=sequence,
            blob_name=volume_blob_name(checkpoint_name, sequence),
            size=size,
            stored_size=encoded.stat().st_size,
            encrypted=is_encrypted_name(encoded),
            sha256=sha256_file(encoded),
            local_path=encoded,
        )
        blob_name = chunk.blob_name
        try:
            upload_with_retry(
                self._store,
                blob_name,
                [chunk.local_path],
                encoded.parent,
                retention_days=settings.retention_days,
                attempts=settings.upload_attempts,
                delay=settings.volume_retry_delay,
                sleep=self._sleep,
            )
        except UploadFailedError as exc:
            raise CheckpointUploadError(f"Chunk {sequence} ({blob_name}) was not uploaded: {exc}") from exc
        chunk.local_path.unlink()
        logger.info(
            "Uploaded chunk %d as %s (%d -> %d bytes)", sequence, blob_name, size, chunk.stored_size
        )
        return chunk.model_copy(update={"local_path": None})

    def _publish_manifest(self, manifest: Manifest, scratch: Path) -> None:
        manifest_dir = scratch / "manifest"
        manifest_dir.mkdir(exist_ok=True)
        path = manifest_dir / MANIFEST_FILENAME
        path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        blob_name = manifest_blob_name(manifest.artifact_base)
        try:
            upload_with_retry(
                self._store,
                blob_name,
                [path],
                manifest_dir,
                retention_days=self._settings.retention_days,
                attempts=self._settings.upload_attempts,
                delay=self._settings.upload_retry_delay,
                sleep=self._sleep,
            )
        except UploadFailedError as exc:
            raise CheckpointUploadError(f"Manifest {blob_name} was not uploaded: {exc}") from exc


# ----------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------


class _RestoreFeed:
    """Extraction hook: fetch chunk n on demand, then drop chunk n - 1."""

    def __init__(
        self,
        reader: CheckpointReader,
        manifest: Manifest,
        driver: SequentialArchiveDriver,
        scratch: Path,
        secret: str | None,
    ) -> None:
        self._reader = reader
        self._manifest = manifest
        self._driver = driver
        self._scratch = scratch
        self._secret = secret
        self.resident: Chunk | None = None

    def fetch(self, sequence: int) -> Path:
        path = self._reader._fetch_chunk(
            self._manifest, sequence, self._driver, self._scratch, self._secret
        )
        record = self._manifest.chunk(sequence) or Chunk(
            sequence=sequence,
            blob_name=self._manifest.volumes[sequence - 1],
            size=path.stat().st_size,
        )
        self.resident = record.model_copy(update={"local_path": path})
        return path

    def __call__(self, sequence: int) -> Path | None:
        if sequence > self._manifest.volume_count:
            return None
        previous = self.resident
        path = self.fetch(sequence)
        if previous is not None and previous.local_path is not None:
            previous.local_path.unlink(missing_ok=True)
        return path


class CheckpointReader:
    """Restores a chunked checkpoint into a working directory.

    Parameters
    ----------
    store:
        Blob store holding the chunks and manifest.
    """

    def __init__(self, store: BlobStore) -> None:
        self._store = store

    def fetch_manifest(self, checkpoint_name: str) -> Manifest:
        """Download and parse the manifest of *checkpoint_name*."""
        with tempfile.TemporaryDirectory(prefix="longhaul-manifest-") as tmp:
            return self._download_manifest(checkpoint_name, Path(tmp))

    def restore(
        self,
        work_dir: Path,
        checkpoint_name: str,
        secret: str | None = None,
    ) -> Manifest:
        """Rebuild the checkpointed tree inside *work_dir* and return its manifest."""
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        scratch = _reset_dir(work_dir / RESTORE_SCRATCH)
        try:
            manifest = self._download_manifest(checkpoint_name, scratch / "manifest")
            logger.info(
                "Restoring checkpoint %s: %d chunk(s)%s",
                checkpoint_name,
                manifest.volume_count,
                " (encrypted)" if manifest.encrypted else "",
            )
            driver = SequentialArchiveDriver(
                scratch / "volumes", manifest.base_name, manifest.volume_count
            )
            feed = _RestoreFeed(self, manifest, driver, scratch, secret)
            first = feed.fetch(1)
            result = driver.extract_chunked(first, work_dir, feed)
            if manifest.total_bytes and result.total_bytes != manifest.total_bytes:
                raise VolumeCountMismatch(
                    f"manifest records a {manifest.total_bytes}-byte archive but "
                    f"{result.chunk_count} chunk(s) held {result.total_bytes}"
                )
        finally:
            remove_scratch(scratch)

        logger.info(
            "Checkpoint %s restored: %d member(s)", checkpoint_name, len(result.members)
        )
        return manifest

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _download_manifest(self, checkpoint_name: str, dest_dir: Path) -> Manifest:
        blob_name = manifest_blob_name(checkpoint_name)
        try:
            handle = self._store.get_metadata(blob_name)
        except BlobNotFoundError as exc:
            raise ManifestNotFound(f"No checkpoint manifest named {blob_name}") from exc
        paths = self._store.download(handle, dest_dir)
        manifest_path = next((p for p in paths if p.name == MANIFEST_FILENAME), None)
        if manifest_path is None:
            raise CheckpointError(f"Blob {blob_name} does not contain {MANIFEST_FILENAME}")
        try:
            manifest = Manifest.model_validate(
                json.loads(manifest_path.read_text(encoding="utf-8"))
            )
        except (ValueError, ValidationError) as exc:
            raise CheckpointError(f"Manifest {blob_name} is unreadable: {exc}") from exc
        if manifest.artifact_base != checkpoint_name:
            raise CheckpointError(
                f"Manifest {blob_name} describes {manifest.artifact_base!r}, not {checkpoint_name!r}"
            )
        return manifest

    def _fetch_chunk(
        self,
        manifest: Manifest,
        sequence: int,
        driver: SequentialArchiveDriver,
        scratch: Path,
        secret: str | None,
    ) -> Path:
        blob_name = manifest.volumes[sequence - 1]
        try:
            handle = self._store.get_metadata(blob_name)
        except BlobNotFoundError as exc:
            raise VolumeCountMismatch(
                f"Chunk {sequence} ({blob_name}) is listed in the manifest but missing"
            ) from exc

        download_dir = scratch / f"dl-{sequence}"
        paths = self._store.download(handle, download_dir)
        if len(paths) != 1:
            raise ChunkIntegrityError(f"Blob {blob_name} holds {len(paths)} files, expected 1")
        downloaded = paths[0]

        record = manifest.chunk(sequence)
        if record is not None and record.sha256:
            actual = sha256_file(downloaded)
            if actual != record.sha256:
                raise ChunkIntegrityError(
                    f"Chunk {sequence} ({blob_name}) digest {actual[:12]} does not "
                    f"match manifest {record.sha256[:12]}"
                )

        decoded = decode_chunk(downloaded, secret=secret)
        target = driver.chunk_path(sequence)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(decoded, target)
        shutil.rmtree(download_dir, ignore_errors=True)
        logger.debug("Chunk %d ready at %s", sequence, target.name)
        return target
