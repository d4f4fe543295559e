"""Persistent build stage machine.

The current stage lives in a plain-text marker file under the working
directory, so it travels inside every checkpoint. Transitions happen only
on explicit success and follow ``VALID_TRANSITIONS``; ``BUILD_DIST`` is
only reachable in full builds. A missing marker means INIT.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from longhaul.core.errors import LonghaulError
from longhaul.models.stages import (
    VALID_TRANSITIONS,
    BuildMode,
    BuildStage,
    StageOutcome,
    StageResult,
    stage_sequence,
)

if TYPE_CHECKING:
    from longhaul.core.deadline import BuildTiming
    from longhaul.core.executor import StageExecutor

logger = logging.getLogger(__name__)

MARKER_FILENAME = "build-stage.txt"


class InvalidTransitionError(LonghaulError):
    """Raised when a requested stage transition is not valid."""


class CorruptStageMarker(LonghaulError):
    """The marker file holds something other than a known stage."""


class StageMachine:
    """Reads, advances and persists the build stage.

    Parameters
    ----------
    marker_path:
        The stage marker file, normally ``work_dir/build-stage.txt``.
    build_mode:
        ``full`` routes BUILD through BUILD_DIST before PACKAGE.
    """

    def __init__(self, marker_path: Path, build_mode: BuildMode = BuildMode.COMPONENT) -> None:
        self._marker = Path(marker_path)
        self._mode = build_mode
        self._sequence = stage_sequence(build_mode)

    @classmethod
    def for_work_dir(cls, work_dir: Path, build_mode: BuildMode = BuildMode.COMPONENT) -> StageMachine:
        return cls(Path(work_dir) / MARKER_FILENAME, build_mode)

    @property
    def marker_path(self) -> Path:
        return self._marker

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def initialize(self) -> BuildStage:
        """Write a fresh INIT marker, replacing any previous one."""
        self._write(BuildStage.INIT)
        logger.info("Stage marker initialized at %s", BuildStage.INIT.value)
        return BuildStage.INIT

    def current_stage(self) -> BuildStage:
        if not self._marker.exists():
            return BuildStage.INIT
        value = self._marker.read_text(encoding="utf-8").strip()
        try:
            stage = BuildStage(value)
        except ValueError as exc:
            raise CorruptStageMarker(
                f"{self._marker} holds {value!r}; expected one of "
                f"{[s.value for s in BuildStage]}"
            ) from exc
        if stage not in self._sequence:
            raise CorruptStageMarker(
                f"{self._marker} holds {stage.value!r}, which a {self._mode.value} build never reaches"
            )
        return stage

    def next_stage(self, stage: BuildStage | None = None) -> BuildStage | None:
        """The stage after *stage* (default: the current one), or None at PACKAGE."""
        stage = stage or self.current_stage()
        index = self._sequence.index(stage)
        if index + 1 >= len(self._sequence):
            return None
        return self._sequence[index + 1]

    def is_terminal(self, stage: BuildStage | None = None) -> bool:
        stage = stage or self.current_stage()
        return not VALID_TRANSITIONS[stage]

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(self, target: BuildStage) -> BuildStage:
        """Move from the current stage to *target* and persist it."""
        current = self.current_stage()
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed or target not in self._sequence:
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {target.value} "
                f"in a {self._mode.value} build. Allowed: "
                f"{sorted(s.value for s in allowed if s in self._sequence)}"
            )
        self._write(target)
        logger.info("Stage %s -> %s", current.value, target.value)
        return target

    def advance(self) -> BuildStage:
        """Transition to the next stage of this build mode."""
        following = self.next_stage()
        if following is None:
            raise InvalidTransitionError(
                f"{self.current_stage().value} is terminal; nothing to advance to"
            )
        return self.transition(following)

    def _write(self, stage: BuildStage) -> None:
        self._marker.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._marker.with_name(self._marker.name + ".tmp")
        tmp.write_text(stage.value, encoding="utf-8")
        os.replace(tmp, self._marker)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        stage: BuildStage,
        executor: StageExecutor,
        timing: BuildTiming,
    ) -> StageResult:
        """Run *stage* through *executor* under the deadline in *timing*.

        Does not transition; the caller advances on success. Executor
        exceptions are logged and re-raised.
        """
        logger.info("Running stage %s (%s)", stage.value, timing.describe())
        started = time.monotonic()
        try:
            result = executor.run_stage(stage, timing)
        except Exception as exc:
            logger.error(
                "Stage %s raised after %.0fs: %s", stage.value, time.monotonic() - started, exc
            )
            raise

        if result.outcome == StageOutcome.SUCCESS:
            logger.info("Stage %s succeeded in %.0fs", stage.value, result.duration_seconds)
        elif result.outcome == StageOutcome.TIMED_OUT:
            logger.warning(
                "Stage %s timed out after %.0fs; progress will be checkpointed",
                stage.value, result.duration_seconds,
            )
        else:
            logger.error(
                "Stage %s failed (exit code %s): %s",
                stage.value, result.exit_code, result.detail or "no detail",
            )
        return result
