"""longhaul data models (Pydantic v2, frozen)."""

from longhaul.models.chunks import (
    MANIFEST_FILENAME,
    Chunk,
    Manifest,
    manifest_blob_name,
    volume_blob_name,
)
from longhaul.models.config import (
    CheckpointSettings,
    DeadlinePolicy,
    PlatformProfile,
    RunOptions,
    RunResult,
    StrategyKind,
)
from longhaul.models.stages import (
    VALID_TRANSITIONS,
    BuildMode,
    BuildStage,
    StageOutcome,
    StageResult,
    stage_sequence,
)

__all__ = [
    # chunks
    "MANIFEST_FILENAME",
    "Chunk",
    "Manifest",
    "manifest_blob_name",
    "volume_blob_name",
    # config
    "CheckpointSettings",
    "DeadlinePolicy",
    "PlatformProfile",
    "RunOptions",
    "RunResult",
    "StrategyKind",
    # stages
    "VALID_TRANSITIONS",
    "BuildMode",
    "BuildStage",
    "StageOutcome",
    "StageResult",
    "stage_sequence",
]
