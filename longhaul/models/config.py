"""Checkpoint, deadline and run configuration models.

These are the explicit values threaded through the checkpoint writer/reader,
the stage machine and the orchestrator. Nothing in the core reads the
process environment; ``longhaul.config.LonghaulConfig`` builds these.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from longhaul.models.stages import BuildMode, BuildStage

GIB = 1024 ** 3


class StrategyKind(str, Enum):
    """How a host persists its working tree between runs."""

    CHUNKED = "chunked"  # split archive, one blob per chunk + manifest
    WHOLE = "whole"  # single archive blob


class PlatformProfile(BaseModel):
    """Per-platform defaults. The timing values are empirical tuning."""

    model_config = ConfigDict(frozen=True)

    name: str
    chunk_size: int = 2 * GIB
    max_build_seconds: float = 4 * 60 * 60
    min_build_seconds: float = 5 * 60


class CheckpointSettings(BaseModel):
    """Knobs shared by the chunked and whole-archive checkpoint paths."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=2 * GIB, gt=0)
    max_volumes: int = Field(default=40, ge=1)
    compression_level: int = Field(default=3, ge=1, le=22)
    retention_days: int = Field(default=1, ge=1)
    upload_attempts: int = Field(default=5, ge=1)
    volume_retry_delay: float = Field(default=5.0, ge=0)
    upload_retry_delay: float = Field(default=10.0, ge=0)
    base_name: str = "build-state"
    secret: SecretStr | None = None

    @property
    def secret_value(self) -> str | None:
        """The archive secret, or None when encryption is off."""
        if self.secret is None:
            return None
        value = self.secret.get_secret_value()
        return value or None


class DeadlinePolicy(BaseModel):
    """Inputs for the soft stage deadline."""

    model_config = ConfigDict(frozen=True)

    job_start_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    max_build_seconds: float = Field(default=4 * 60 * 60, gt=0)
    min_build_seconds: float = Field(default=5 * 60, ge=0)
    safety_margin_seconds: float = Field(default=0.0, ge=0)


class RunOptions(BaseModel):
    """Per-invocation settings for the build orchestrator."""

    model_config = ConfigDict(frozen=True)

    work_dir: Path
    checkpoint_name: str = "build-artifact-linux-x64"
    checkpoint_paths: list[str] = Field(
        default_factory=lambda: ["src", "build-stage.txt"]
    )
    final_artifact_name: str = "build-output-linux"
    final_retention_days: int = Field(default=7, ge=1)
    build_mode: BuildMode = BuildMode.COMPONENT
    platform: str = "linux"
    arch: str = "x64"
    finished: bool = False  # the previous invocation already finished
    from_checkpoint: bool = False  # restore before running stages
    disk_poll_interval: float = Field(default=60.0, gt=0)


class RunResult(BaseModel):
    """Outcome of one orchestrator invocation.

    ``finished`` tells the caller whether another invocation is needed;
    ``exit_code`` is non-zero only for fatal, unrecoverable errors.
    """

    model_config = ConfigDict(frozen=True)

    finished: bool
    exit_code: int = 0
    stage: BuildStage | None = None
    chunk_count: int | None = None
    package_path: Path | None = None
    error: str | None = None

    @property
    def fatal(self) -> bool:
        return self.exit_code != 0
