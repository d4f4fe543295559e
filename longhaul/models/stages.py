"""Build stage models for the resumable INIT -> BUILD -> [BUILD_DIST] -> PACKAGE chain."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class BuildStage(str, Enum):
    """Persisted build stage. The value is what the stage marker file holds."""

    INIT = "init"
    BUILD = "build"
    BUILD_DIST = "build_dist"
    PACKAGE = "package"


class BuildMode(str, Enum):
    """``full`` builds run the extra BUILD_DIST stage."""

    COMPONENT = "component"
    FULL = "full"


class StageOutcome(str, Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# PACKAGE is terminal. BUILD -> PACKAGE is the component path,
# BUILD -> BUILD_DIST -> PACKAGE the full path.
VALID_TRANSITIONS: dict[BuildStage, set[BuildStage]] = {
    BuildStage.INIT: {BuildStage.BUILD},
    BuildStage.BUILD: {BuildStage.BUILD_DIST, BuildStage.PACKAGE},
    BuildStage.BUILD_DIST: {BuildStage.PACKAGE},
    BuildStage.PACKAGE: set(),
}


def stage_sequence(mode: BuildMode) -> list[BuildStage]:
    """Ordered stages a build of *mode* passes through."""
    if mode == BuildMode.FULL:
        return [
            BuildStage.INIT,
            BuildStage.BUILD,
            BuildStage.BUILD_DIST,
            BuildStage.PACKAGE,
        ]
    return [BuildStage.INIT, BuildStage.BUILD, BuildStage.PACKAGE]


class StageResult(BaseModel):
    """What a single stage execution reported back."""

    model_config = ConfigDict(frozen=True)

    stage: BuildStage
    outcome: StageOutcome
    detail: str = ""
    exit_code: int | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == StageOutcome.SUCCESS
