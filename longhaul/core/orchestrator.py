"""Build orchestrator: one time-boxed invocation of a long build.

Each invocation either restores the previous checkpoint or starts a
fresh stage marker, then runs stages until the build reaches PACKAGE or
a stage stops short (timeout or failure). A finished build is packaged,
uploaded and its checkpoint discarded; an unfinished one is checkpointed
so the next invocation can pick it up. Only failures that leave nothing
to resume from are fatal.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from longhaul.core.blob_store import (
    BlobStore,
    FilesystemBlobStore,
    UploadFailedError,
    delete_blob_safely,
    upload_with_retry,
)
from longhaul.core.checkpoint import CheckpointError
from longhaul.core.deadline import calculate_build_timeout
from longhaul.core.disk_monitor import DiskMonitor
from longhaul.core.errors import LonghaulError
from longhaul.core.executor import CommandStageExecutor, StageExecutor
from longhaul.core.stage_machine import StageMachine
from longhaul.core.strategy import CheckpointStrategy, build_strategy, select_strategy_kind
from longhaul.models.config import CheckpointSettings, DeadlinePolicy, RunOptions, RunResult
from longhaul.models.stages import BuildStage

if TYPE_CHECKING:
    from longhaul.config import LonghaulConfig

logger = logging.getLogger(__name__)


class ArtifactUploadError(LonghaulError):
    """The final build artifact could not be uploaded."""


class BuildOrchestrator:
    """Drives the stage machine and checkpoint strategy for one invocation.

    Parameters
    ----------
    options:
        Work directory, checkpoint naming and per-run flags.
    strategy:
        How the working tree is persisted between invocations.
    store:
        Blob store for the final artifact.
    executor:
        Runs the individual stages and builds the final package.
    deadline_policy:
        Job start time and build-time budget.
    settings:
        Retry knobs for the final artifact upload.
    sleep:
        Used between upload attempts.
    """

    def __init__(
        self,
        options: RunOptions,
        *,
        strategy: CheckpointStrategy,
        store: BlobStore,
        executor: StageExecutor,
        deadline_policy: DeadlinePolicy,
        settings: CheckpointSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._options = options
        self._strategy = strategy
        self._store = store
        self._executor = executor
        self._deadline_policy = deadline_policy
        self._settings = settings or CheckpointSettings()
        self._sleep = sleep
        self._machine = StageMachine.for_work_dir(options.work_dir, options.build_mode)

    @classmethod
    def from_config(
        cls,
        config: LonghaulConfig,
        *,
        finished: bool = False,
        from_checkpoint: bool = False,
        executor: StageExecutor | None = None,
    ) -> BuildOrchestrator:
        """Wire an orchestrator from process configuration."""
        settings = config.checkpoint_settings()
        store = FilesystemBlobStore(config.blob_store_path)
        kind = select_strategy_kind(config.platform, config.strategy)
        return cls(
            config.run_options(finished=finished, from_checkpoint=from_checkpoint),
            strategy=build_strategy(kind, store, settings),
            store=store,
            executor=executor
            or CommandStageExecutor(
                config.work_dir,
                config.stage_commands,
                package_command=config.package_command,
                package_path=config.package_path,
                grace_seconds=config.kill_grace_seconds,
            ),
            deadline_policy=config.deadline_policy(),
            settings=settings,
        )

    @property
    def stage_machine(self) -> StageMachine:
        return self._machine

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        options = self._options
        if options.finished:
            logger.info("Build already finished; nothing to do")
            return RunResult(finished=True)

        work_dir = Path(options.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)

        with DiskMonitor(work_dir, options.disk_poll_interval):
            try:
                self._setup()
            except (LonghaulError, OSError) as exc:
                # Checkpointing now would replace the good remote copy with
                # a partial tree.
                logger.error("Could not prepare the working directory: %s", exc)
                return RunResult(finished=False, exit_code=1, error=str(exc))

            error: str | None = None
            try:
                if self._run_stages():
                    package_path = self._finish()
                    return RunResult(
                        finished=True, stage=BuildStage.PACKAGE, package_path=package_path
                    )
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.error("Build step failed (%s); checkpointing progress", error)

            stage = self._stage_or_none()
            try:
                chunk_count = self._checkpoint()
            except Exception as exc:
                logger.error("Checkpoint failed: %s", exc)
                detail = f"checkpoint failed: {exc}"
                if error:
                    detail = f"{error}; {detail}"
                return RunResult(finished=False, exit_code=1, stage=stage, error=detail)

        return RunResult(finished=False, stage=stage, chunk_count=chunk_count, error=error)

    def _setup(self) -> None:
        options = self._options
        if options.from_checkpoint:
            logger.info("Restoring checkpoint %s", options.checkpoint_name)
            count = self._strategy.restore(options.work_dir, options.checkpoint_name)
            logger.info(
                "Restored %d blob(s); resuming at stage %s",
                count, self._machine.current_stage().value,
            )
        else:
            self._machine.initialize()

    def _run_stages(self) -> bool:
        """Run stages until PACKAGE (True) or one stops short (False)."""
        machine = self._machine
        while True:
            stage = machine.current_stage()
            if machine.is_terminal(stage):
                return True
            timing = calculate_build_timeout(self._deadline_policy)
            result = machine.execute(stage, self._executor, timing)
            if not result.succeeded:
                return False
            machine.advance()

    def _stage_or_none(self) -> BuildStage | None:
        try:
            return self._machine.current_stage()
        except LonghaulError:
            return None

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    def _finish(self) -> Path:
        options = self._options
        timing = calculate_build_timeout(self._deadline_policy)
        package = self._executor.package(timing)
        if package.is_dir():
            files = sorted(p for p in package.rglob("*") if p.is_file())
            base_dir = package
        else:
            files = [package]
            base_dir = package.parent

        delete_blob_safely(self._store, options.final_artifact_name)
        try:
            upload_with_retry(
                self._store,
                options.final_artifact_name,
                files,
                base_dir,
                retention_days=options.final_retention_days,
                attempts=self._settings.upload_attempts,
                delay=self._settings.upload_retry_delay,
                sleep=self._sleep,
            )
        except UploadFailedError as exc:
            raise ArtifactUploadError(
                f"Final artifact {options.final_artifact_name} was not uploaded: {exc}"
            ) from exc
        logger.info("Uploaded final artifact %s", options.final_artifact_name)

        self._strategy.discard(options.checkpoint_name)
        return package

    def _checkpoint(self) -> int:
        options = self._options
        work_dir = Path(options.work_dir)
        if hasattr(os, "sync"):
            os.sync()
        present = [p for p in options.checkpoint_paths if os.path.lexists(work_dir / p)]
        missing = sorted(set(options.checkpoint_paths) - set(present))
        if missing:
            logger.warning("Not checkpointing missing path(s): %s", ", ".join(missing))
        if not present:
            raise CheckpointError(f"Nothing to checkpoint under {work_dir}")
        count = self._strategy.write(work_dir, present, options.checkpoint_name)
        logger.info("Checkpoint %s saved (%d blob(s))", options.checkpoint_name, count)
        return count
