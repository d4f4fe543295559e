"""Blob store client: named, retention-bounded bundles of files.

The checkpoint code only sees the ``BlobStore`` protocol. The bundled
``FilesystemBlobStore`` keeps each blob as a directory under ``base_path``:

    {base_path}/{name}/.blob.json      metadata (files, size, retention)
    {base_path}/{name}/<relative path>  the uploaded files

Uploads are staged under a hidden directory and renamed into place, so a
blob is either fully present or absent. ``retention_days`` is recorded but
advisory; expiry is left to whatever owns the directory.

Uploads go through ``upload_with_retry`` (tenacity, fixed wait). Each retry
first deletes whatever a half-finished attempt left behind under the same
name.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from longhaul.core.errors import LonghaulError
from longhaul.models.chunks import manifest_blob_name, volume_blob_name

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".blob.json"


class BlobStoreError(LonghaulError):
    """A blob store operation failed. Uploads treat this as transient."""


class BlobNotFoundError(BlobStoreError):
    """The named blob does not exist."""


class BlobConflictError(BlobStoreError):
    """A blob with this name already exists."""


class UploadFailedError(LonghaulError):
    """An upload still failed after every retry attempt."""


class BlobHandle(BaseModel):
    """Metadata describing one stored blob."""

    model_config = ConfigDict(frozen=True)

    name: str
    files: list[str] = Field(default_factory=list)  # paths relative to the blob root
    size: int = 0
    retention_days: int = 1
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@runtime_checkable
class BlobStore(Protocol):
    """Remote artifact storage for named file bundles."""

    def upload(
        self,
        name: str,
        files: Sequence[Path],
        base_dir: Path,
        retention_days: int = 1,
    ) -> BlobHandle: ...

    def get_metadata(self, name: str) -> BlobHandle: ...

    def download(self, handle: BlobHandle, dest_dir: Path) -> list[Path]: ...

    def delete(self, name: str) -> bool: ...


class FilesystemBlobStore:
    """Directory-backed ``BlobStore``, e.g. a CI cache path or mounted share.

    Parameters
    ----------
    base_path:
        Root directory holding one sub-directory per blob.
    max_blob_bytes:
        Optional size cap per blob; larger uploads are rejected the way a
        size-capped artifact service would reject them.
    """

    def __init__(self, base_path: Path, max_blob_bytes: int | None = None) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._max_blob_bytes = max_blob_bytes
        logger.debug("FilesystemBlobStore initialized at %s", self._base)

    @property
    def base_path(self) -> Path:
        return self._base

    def _blob_dir(self, name: str) -> Path:
        if not name or name.startswith(".") or "/" in name or "\\" in name:
            raise BlobStoreError(f"Invalid blob name: {name!r}")
        return self._base / name

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def upload(
        self,
        name: str,
        files: Sequence[Path],
        base_dir: Path,
        retention_days: int = 1,
    ) -> BlobHandle:
        """Store *files* (each inside *base_dir*) as blob *name*."""
        target = self._blob_dir(name)
        if target.exists():
            raise BlobConflictError(f"Blob already exists: {name}")

        base_dir = Path(base_dir)
        relative: list[str] = []
        total = 0
        for path in files:
            path = Path(path)
            try:
                rel = path.resolve().relative_to(base_dir.resolve())
            except ValueError as exc:
                raise BlobStoreError(f"{path} is not inside {base_dir}") from exc
            if not path.is_file():
                raise BlobStoreError(f"Upload source is not a file: {path}")
            relative.append(rel.as_posix())
            total += path.stat().st_size

        if self._max_blob_bytes is not None and total > self._max_blob_bytes:
            raise BlobStoreError(
                f"Blob {name} is {total} bytes, over the {self._max_blob_bytes} byte cap"
            )

        handle = BlobHandle(
            name=name, files=relative, size=total, retention_days=retention_days
        )
        staging = self._base / f".staging-{name}-{uuid.uuid4().hex[:8]}"
        try:
            staging.mkdir(parents=True)
            for path, rel in zip(files, relative):
                dest = staging / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(path, dest)
            (staging / METADATA_FILENAME).write_text(
                handle.model_dump_json(indent=2), encoding="utf-8"
            )
            os.rename(staging, target)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise BlobStoreError(f"Failed to upload blob {name}: {exc}") from exc

        logger.debug("Uploaded blob %s (%d files, %d bytes)", name, len(relative), total)
        return handle

    def delete(self, name: str) -> bool:
        """Remove blob *name*. Returns False when it did not exist."""
        target = self._blob_dir(name)
        if not target.exists():
            return False
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete blob {name}: {exc}") from exc
        logger.debug("Deleted blob %s", name)
        return True

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_metadata(self, name: str) -> BlobHandle:
        meta = self._blob_dir(name) / METADATA_FILENAME
        if not meta.is_file():
            raise BlobNotFoundError(f"Blob not found: {name}")
        try:
            return BlobHandle.model_validate(json.loads(meta.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            raise BlobStoreError(f"Unreadable metadata for blob {name}: {exc}") from exc

    def download(self, handle: BlobHandle, dest_dir: Path) -> list[Path]:
        """Copy the blob's files into *dest_dir*, keeping relative paths."""
        source = self._blob_dir(handle.name)
        if not source.is_dir():
            raise BlobNotFoundError(f"Blob not found: {handle.name}")
        dest_dir = Path(dest_dir)
        paths: list[Path] = []
        for rel in handle.files:
            dest = dest_dir / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copyfile(source / rel, dest)
            except OSError as exc:
                raise BlobStoreError(
                    f"Failed to download {rel} from blob {handle.name}: {exc}"
                ) from exc
            paths.append(dest)
        return paths

    def exists(self, name: str) -> bool:
        return (self._blob_dir(name) / METADATA_FILENAME).is_file()

    def list_blobs(self, prefix: str = "") -> list[str]:
        """Names of stored blobs, sorted, optionally filtered by prefix."""
        return sorted(
            p.name
            for p in self._base.iterdir()
            if p.is_dir()
            and not p.name.startswith(".")
            and p.name.startswith(prefix)
            and (p / METADATA_FILENAME).is_file()
        )


# ----------------------------------------------------------------------
# Store-agnostic helpers
# ----------------------------------------------------------------------


def delete_blob_safely(store: BlobStore, name: str) -> bool:
    """Delete *name*, logging instead of raising. Returns True if removed."""
    try:
        return store.delete(name)
    except BlobNotFoundError:
        return False
    except (BlobStoreError, OSError) as exc:
        logger.warning("Could not delete blob %s: %s", name, exc)
        return False


def purge_checkpoint_blobs(store: BlobStore, artifact_base: str, max_volumes: int) -> int:
    """Best-effort removal of a checkpoint's manifest and chunk blobs."""
    removed = 0
    if delete_blob_safely(store, manifest_blob_name(artifact_base)):
        removed += 1
    for sequence in range(1, max_volumes + 1):
        if delete_blob_safely(store, volume_blob_name(artifact_base, sequence)):
            removed += 1
    if removed:
        logger.info("Removed %d stale blob(s) for checkpoint %s", removed, artifact_base)
    return removed


def upload_with_retry(
    store: BlobStore,
    name: str,
    files: Sequence[Path],
    base_dir: Path,
    *,
    retention_days: int = 1,
    attempts: int = 5,
    delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> BlobHandle:
    """Upload with a bounded number of attempts and a fixed wait between them.

    Raises ``UploadFailedError`` once every attempt has failed.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Upload of %s failed (attempt %d/%d): %s; retrying in %.0fs",
            name, state.attempt_number, attempts, exc, delay,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type((BlobStoreError, OSError)),
        reraise=True,
        sleep=sleep,
        before_sleep=_log_retry,
    )
    handle: BlobHandle | None = None
    try:
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    delete_blob_safely(store, name)
                handle = store.upload(name, files, base_dir, retention_days)
    except (BlobStoreError, OSError) as exc:
        raise UploadFailedError(
            f"Upload of {name} failed after {attempts} attempt(s): {exc}"
        ) from exc
    assert handle is not None
    return handle
