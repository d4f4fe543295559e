"""Sequential archive driver: a tar stream split across numbered chunk files.

``tarfile`` runs in streaming mode (``w|`` / ``r|``) against two small
file-like adapters:

- ``VolumeWriter`` cuts the byte stream into chunk files of exactly
  ``chunk_size`` bytes. When a chunk is full and more data arrives it
  closes the chunk and asks ``on_chunk_boundary(completed, next_number)``
  where to continue. The last chunk is never handed to the hook; it is
  returned in ``ArchiveResult.final_chunk_path`` for the caller.
- ``VolumeReader`` concatenates chunk files on demand. At the end of a
  chunk it closes it and asks ``on_chunk_needed(next_number)`` for the
  next path; ``None`` while tar still needs data is a truncated stream.

Chunk numbers are 1-based. Locally chunk 1 is ``{base}.tar`` and chunk
``n`` is ``{base}.tar-{n}``.
"""

from __future__ import annotations

import logging
import os
import tarfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import BinaryIO

from pydantic import BaseModel, ConfigDict, Field

from longhaul.core.errors import LonghaulError

logger = logging.getLogger(__name__)

BoundaryHook = Callable[[Path, int], "Path | None"]
ChunkSource = Callable[[int], "Path | None"]

_DRAIN_READ_SIZE = 64 * 1024


class ArchiveError(LonghaulError):
    """The chunked archive could not be created or extracted."""


class VolumeLimitExceeded(ArchiveError):
    """The archive needs more chunks than ``max_volumes`` allows."""


class ArchiveAborted(ArchiveError):
    """The boundary hook declined to continue into the next chunk."""


class VolumeCountMismatch(ArchiveError):
    """The chunk sequence ended early, or its length disagrees with the manifest."""


class ArchiveResult(BaseModel):
    """What one create or extract pass saw."""

    model_config = ConfigDict(frozen=True)

    chunk_count: int = Field(ge=0)
    total_bytes: int = Field(ge=0)
    members: list[str] = Field(default_factory=list)
    final_chunk_path: Path | None = None  # create path only
    final_chunk_size: int = 0


# ----------------------------------------------------------------------
# Stream adapters
# ----------------------------------------------------------------------


class VolumeWriter:
    """Write-only file object that rolls over to a new chunk at ``chunk_size``."""

    def __init__(
        self,
        first_path: Path,
        chunk_size: int,
        max_volumes: int,
        on_chunk_boundary: BoundaryHook,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._chunk_size = chunk_size
        self._max_volumes = max_volumes
        self._on_chunk_boundary = on_chunk_boundary
        self.sequence = 1
        self.path = Path(first_path)
        self.written = 0  # bytes in the current chunk
        self.total = 0
        self._failed = False
        self._fh: BinaryIO | None = open(self.path, "wb")

    def write(self, data: bytes) -> int:
        # tarfile flushes its buffer again while unwinding a failure;
        # nothing written after that point belongs to a usable archive.
        if self._failed:
            return len(data)
        view = memoryview(data)
        try:
            while view:
                if self.written >= self._chunk_size:
                    self._roll()
                piece = view[: self._chunk_size - self.written]
                assert self._fh is not None
                self._fh.write(piece)
                self.written += len(piece)
                self.total += len(piece)
                view = view[len(piece) :]
        except BaseException:
            self._failed = True
            raise
        return len(data)

    def _roll(self) -> None:
        assert self._fh is not None
        self._fh.close()
        self._fh = None
        completed = self.path
        following = self.sequence + 1
        if following > self._max_volumes:
            raise VolumeLimitExceeded(
                f"archive needs more than {self._max_volumes} chunks of "
                f"{self._chunk_size} bytes"
            )
        logger.debug("Chunk %d complete (%d bytes)", self.sequence, self.written)
        target = self._on_chunk_boundary(completed, following)
        if target is None:
            raise ArchiveAborted(f"stopped before chunk {following}")
        self.sequence = following
        self.path = Path(target)
        self.written = 0
        self._fh = open(self.path, "wb")

    def flush(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class VolumeReader:
    """Read-only file object that walks the chunk sequence on demand."""

    def __init__(self, first_path: Path, on_chunk_needed: ChunkSource) -> None:
        first_path = Path(first_path)
        if not first_path.is_file():
            raise ArchiveError(f"First chunk not found: {first_path}")
        self._on_chunk_needed = on_chunk_needed
        self.sequence = 1
        self.total = 0
        self._draining = False
        self._exhausted = False
        self._fh: BinaryIO | None = open(first_path, "rb")

    def read(self, size: int = -1) -> bytes:
        while not self._exhausted:
            assert self._fh is not None
            data = self._fh.read(size)
            if data:
                self.total += len(data)
                return data
            self._advance()
        return b""

    def _advance(self) -> None:
        assert self._fh is not None
        self._fh.close()
        self._fh = None
        following = self.sequence + 1
        path = self._on_chunk_needed(following)
        if path is None:
            if not self._draining:
                raise VolumeCountMismatch(
                    f"archive stream ended after chunk {self.sequence} "
                    "while the archive still needed data"
                )
            self._exhausted = True
            return
        self.sequence = following
        self._fh = open(path, "rb")

    def drain(self) -> None:
        """Consume whatever follows the end-of-archive marker.

        Only zero padding may follow it; running out of chunks here is the
        normal way for the sequence to end.
        """
        self._draining = True
        while True:
            data = self.read(_DRAIN_READ_SIZE)
            if not data:
                return
            if data.strip(b"\0"):
                raise ArchiveError(
                    f"chunk {self.sequence} holds data after the end of the archive"
                )

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


# ----------------------------------------------------------------------
# Tree helpers
# ----------------------------------------------------------------------


def add_tree(
    tar: tarfile.TarFile,
    root: Path,
    relative: str,
    *,
    remove_source: bool,
    members: list[str],
) -> None:
    """Add ``root/relative`` to *tar*, depth first, in sorted order.

    With *remove_source* every file is unlinked right after it is archived
    and every directory is removed after its contents.
    """
    path = root / relative
    tar.add(path, arcname=relative, recursive=False)
    members.append(relative)
    if path.is_dir() and not path.is_symlink():
        for child in sorted(os.listdir(path)):
            add_tree(
                tar,
                root,
                f"{relative}/{child}",
                remove_source=remove_source,
                members=members,
            )
        if remove_source:
            path.rmdir()
    elif remove_source:
        path.unlink()


# ----------------------------------------------------------------------
# Driver
# ----------------------------------------------------------------------


class SequentialArchiveDriver:
    """Create and extract chunked tar archives inside a scratch directory.

    Parameters
    ----------
    scratch_dir:
        Directory the local chunk files live in.
    base_name:
        Local archive base name; chunk 1 is ``{base_name}.tar``.
    max_volumes:
        Upper bound on the number of chunks a create may produce.
    """

    def __init__(self, scratch_dir: Path, base_name: str, max_volumes: int = 40) -> None:
        self._scratch = Path(scratch_dir)
        self._base_name = base_name
        self._max_volumes = max_volumes

    def chunk_path(self, sequence: int) -> Path:
        """Local path of chunk *sequence*."""
        if sequence < 1:
            raise ValueError(f"chunk numbers start at 1, got {sequence}")
        if sequence == 1:
            return self._scratch / f"{self._base_name}.tar"
        return self._scratch / f"{self._base_name}.tar-{sequence}"

    def create_chunked(
        self,
        source_root: Path,
        relative_paths: Sequence[str],
        chunk_size: int,
        on_chunk_boundary: BoundaryHook,
        *,
        remove_source: bool = True,
    ) -> ArchiveResult:
        """Archive *relative_paths* under *source_root* into chunk files."""
        source_root = Path(source_root)
        self._scratch.mkdir(parents=True, exist_ok=True)
        writer = VolumeWriter(
            self.chunk_path(1), chunk_size, self._max_volumes, on_chunk_boundary
        )
        members: list[str] = []
        try:
            with tarfile.open(
                fileobj=writer, mode="w|", format=tarfile.GNU_FORMAT
            ) as tar:
                for relative in relative_paths:
                    add_tree(
                        tar,
                        source_root,
                        relative,
                        remove_source=remove_source,
                        members=members,
                    )
        finally:
            writer.close()

        logger.info(
            "Archived %d member(s) into %d chunk(s), %d bytes",
            len(members), writer.sequence, writer.total,
        )
        return ArchiveResult(
            chunk_count=writer.sequence,
            total_bytes=writer.total,
            members=members,
            final_chunk_path=writer.path,
            final_chunk_size=writer.written,
        )

    def extract_chunked(
        self,
        first_chunk_path: Path,
        dest_dir: Path,
        on_chunk_needed: ChunkSource,
    ) -> ArchiveResult:
        """Extract the chunk sequence starting at *first_chunk_path* into *dest_dir*."""
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        reader = VolumeReader(first_chunk_path, on_chunk_needed)
        try:
            try:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(dest_dir, filter="tar")
                    members = [m.name for m in tar.getmembers()]
            except tarfile.TarError as exc:
                raise ArchiveError(f"Archive stream is not a valid tar: {exc}") from exc
            reader.drain()
        finally:
            reader.close()

        logger.info(
            "Extracted %d member(s) from %d chunk(s), %d bytes",
            len(members), reader.sequence, reader.total,
        )
        return ArchiveResult(
            chunk_count=reader.sequence,
            total_bytes=reader.total,
            members=members,
        )
