"""Chunk and manifest models for chunked checkpoints.

A checkpoint named ``base`` is stored as the blobs ``base-vol001`` ..
``base-volNNN`` plus a ``base-manifest`` blob that is published only after
every chunk has been uploaded.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

MANIFEST_FILENAME = "archive-manifest.json"


def volume_blob_name(artifact_base: str, sequence: int) -> str:
    """Remote blob name of chunk *sequence* (1-based)."""
    return f"{artifact_base}-vol{sequence:03d}"


def manifest_blob_name(artifact_base: str) -> str:
    """Remote blob name of the manifest for *artifact_base*."""
    return f"{artifact_base}-manifest"


class Chunk(BaseModel):
    """One numbered segment of the archive stream.

    ``local_path`` is set only while the chunk file is on disk and is
    never serialized into the manifest.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1)
    blob_name: str
    size: int = Field(ge=0)  # archive-stream bytes before compression
    stored_size: int = Field(default=0, ge=0)  # bytes actually uploaded
    encrypted: bool = False
    sha256: str = ""  # digest of the uploaded bytes
    local_path: Path | None = Field(default=None, exclude=True)


class Manifest(BaseModel):
    """Description of a completed chunked checkpoint.

    Created once after the last chunk is uploaded and never mutated.
    ``volumes[i]`` is always ``volume_blob_name(artifact_base, i + 1)``.
    """

    model_config = ConfigDict(frozen=True)

    base_name: str  # local archive base, e.g. "build-state"
    artifact_base: str  # remote checkpoint name
    volume_count: int = Field(ge=1)
    volumes: list[str]
    chunks: list[Chunk] = []
    encrypted: bool = False
    chunk_size: int = 0
    total_bytes: int = Field(default=0, ge=0)  # archive-stream length, 0 if unknown
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _check_volume_names(self) -> Manifest:
        if len(self.volumes) != self.volume_count:
            raise ValueError(
                f"manifest lists {len(self.volumes)} volumes but volume_count is "
                f"{self.volume_count}"
            )
        for index, name in enumerate(self.volumes):
            expected = volume_blob_name(self.artifact_base, index + 1)
            if name != expected:
                raise ValueError(
                    f"volume {index + 1} is named {name!r}, expected {expected!r}"
                )
        if self.chunks:
            if [c.sequence for c in self.chunks] != list(range(1, self.volume_count + 1)):
                raise ValueError("chunk records are not numbered 1..volume_count")
        return self

    def chunk(self, sequence: int) -> Chunk | None:
        """Return the recorded chunk for *sequence*, if the manifest has one."""
        if self.chunks and 1 <= sequence <= len(self.chunks):
            return self.chunks[sequence - 1]
        return None

    @property
    def stored_bytes(self) -> int:
        return sum(c.stored_size for c in self.chunks)

    @classmethod
    def from_chunks(
        cls,
        *,
        base_name: str,
        artifact_base: str,
        chunks: list[Chunk],
        chunk_size: int,
        total_bytes: int = 0,
    ) -> Manifest:
        """Build the manifest for a fully uploaded chunk list."""
        return cls(
            base_name=base_name,
            artifact_base=artifact_base,
            volume_count=len(chunks),
            volumes=[c.blob_name for c in chunks],
            chunks=chunks,
            encrypted=any(c.encrypted for c in chunks),
            chunk_size=chunk_size,
            total_bytes=total_bytes,
        )
