"""Runtime configuration, env-driven via pydantic-settings.

Reads ``LONGHAUL_*`` environment variables and an optional ``.env`` file.
The archive secret is also accepted as plain ``ARCHIVE_PASSWORD`` so CI
workflows can pass an existing repository secret through unchanged.

Examples
--------
Resume a Linux build with 512 MiB chunks::

    export LONGHAUL_WORK_DIR=/home/runner/build
    export LONGHAUL_CHUNK_SIZE=512M
    export LONGHAUL_STAGE_COMMANDS='{"build": "npm run build"}'
    longhaul run --from-checkpoint

Everything the core needs is copied out of ``LonghaulConfig`` into the
frozen models in ``longhaul.models.config``; the core never reads the
environment itself.
"""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from longhaul.models.config import (
    GIB,
    CheckpointSettings,
    DeadlinePolicy,
    PlatformProfile,
    RunOptions,
    StrategyKind,
)
from longhaul.models.stages import BuildMode

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kmgt]?)(i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

# Timing values are empirical: they keep a run comfortably inside a
# 6-hour hosted-runner limit with room left for the checkpoint upload.
PLATFORM_PROFILES: dict[str, PlatformProfile] = {
    "linux": PlatformProfile(
        name="linux",
        chunk_size=2 * GIB,
        max_build_seconds=(5 * 60 + 20) * 60,
        min_build_seconds=5 * 60,
    ),
    "linux-wsl": PlatformProfile(
        name="linux-wsl",
        chunk_size=10 * GIB,
        max_build_seconds=10 * 60,
        min_build_seconds=5 * 60,
    ),
    "macos": PlatformProfile(
        name="macos",
        chunk_size=7 * GIB,
        max_build_seconds=(5 * 60 + 20) * 60,
        min_build_seconds=5 * 60,
    ),
    "windows": PlatformProfile(
        name="windows",
        max_build_seconds=(4 * 60 + 30) * 60,
        min_build_seconds=10 * 60,
    ),
}


def parse_size(value: int | str) -> int:
    """Parse a byte size such as ``4096``, ``"512M"`` or ``"2GiB"``."""
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"size must be positive, got {value}")
        return value
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"unrecognised size: {value!r}")
    number, unit, _ = match.groups()
    size = int(number) * _SIZE_UNITS[unit.lower()]
    if size <= 0:
        raise ValueError(f"size must be positive, got {value!r}")
    return size


def is_wsl() -> bool:
    """Whether we are running under Windows Subsystem for Linux."""
    if os.environ.get("WSL_DISTRO_NAME"):
        return True
    try:
        version = Path("/proc/version").read_text(encoding="utf-8").lower()
    except OSError:
        return False
    return "microsoft" in version or "wsl" in version


def resolve_platform(platform: str) -> str:
    """Map a requested platform onto a profile key, detecting WSL."""
    key = platform.lower()
    if key == "linux" and is_wsl():
        key = "linux-wsl"
    if key not in PLATFORM_PROFILES:
        supported = ", ".join(sorted(PLATFORM_PROFILES))
        raise ValueError(f"Unsupported platform: {platform}. Supported: {supported}")
    return key


class LonghaulConfig(BaseSettings):
    """Process configuration with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LONGHAUL_",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Runtime
    log_level: str = "INFO"

    # Host / build
    platform: str = "linux"
    arch: str = "x64"
    build_mode: BuildMode = BuildMode.COMPONENT
    work_dir: Path = Path("build")
    checkpoint_paths: list[str] = ["src", "build-stage.txt"]

    # Blob store
    blob_store_path: Path = Path(".longhaul/blobs")
    checkpoint_artifact: str = "build-artifact"
    final_artifact: str = "build-output"
    retention_days: int = 1
    final_retention_days: int = 7

    # Checkpoint
    strategy: StrategyKind | None = None  # None -> platform default
    chunk_size: int | str | None = None  # None -> platform default
    max_volumes: int = 40
    compression_level: int = 3
    upload_attempts: int = 5
    upload_retry_delay: float = 10.0
    volume_retry_delay: float = 5.0
    archive_password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "archive_password", "LONGHAUL_ARCHIVE_PASSWORD", "ARCHIVE_PASSWORD"
        ),
    )

    # Deadline
    job_start_time: datetime | None = None
    max_build_seconds: float | None = None
    min_build_seconds: float | None = None
    safety_margin_seconds: float = 0.0

    # Stage execution
    stage_commands: dict[str, str] = {}
    package_command: str | None = None
    package_path: Path | None = None
    kill_grace_seconds: float = 300.0

    # Observability / outputs
    disk_poll_interval: float = 60.0
    output_file: Path | None = None  # e.g. $GITHUB_OUTPUT

    @property
    def profile(self) -> PlatformProfile:
        return PLATFORM_PROFILES[resolve_platform(self.platform)]

    @property
    def checkpoint_name(self) -> str:
        """Platform-specific checkpoint name so parallel builds don't collide."""
        return f"{self.checkpoint_artifact}-{self.platform}-{self.arch}"

    @property
    def final_artifact_name(self) -> str:
        return f"{self.final_artifact}-{self.platform}-{self.arch}"

    @property
    def resolved_chunk_size(self) -> int:
        if self.chunk_size is None:
            return self.profile.chunk_size
        return parse_size(self.chunk_size)

    def checkpoint_settings(self) -> CheckpointSettings:
        return CheckpointSettings(
            chunk_size=self.resolved_chunk_size,
            max_volumes=self.max_volumes,
            compression_level=self.compression_level,
            retention_days=self.retention_days,
            upload_attempts=self.upload_attempts,
            volume_retry_delay=self.volume_retry_delay,
            upload_retry_delay=self.upload_retry_delay,
            secret=self.archive_password,
        )

    def deadline_policy(self) -> DeadlinePolicy:
        profile = self.profile
        return DeadlinePolicy(
            job_start_time=self.job_start_time or datetime.now(timezone.utc),
            max_build_seconds=self.max_build_seconds or profile.max_build_seconds,
            min_build_seconds=(
                self.min_build_seconds
                if self.min_build_seconds is not None
                else profile.min_build_seconds
            ),
            safety_margin_seconds=self.safety_margin_seconds,
        )

    def run_options(self, *, finished: bool = False, from_checkpoint: bool = False) -> RunOptions:
        return RunOptions(
            work_dir=self.work_dir,
            checkpoint_name=self.checkpoint_name,
            checkpoint_paths=list(self.checkpoint_paths),
            final_artifact_name=self.final_artifact_name,
            final_retention_days=self.final_retention_days,
            build_mode=self.build_mode,
            platform=self.platform,
            arch=self.arch,
            finished=finished,
            from_checkpoint=from_checkpoint,
            disk_poll_interval=self.disk_poll_interval,
        )
