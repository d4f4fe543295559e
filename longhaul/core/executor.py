"""Stage executors: what actually runs during a stage.

Defines the ``StageExecutor`` protocol the orchestrator drives, and
``CommandStageExecutor``, which runs one configured shell command per
stage. A command that outlives its deadline receives SIGINT, then
SIGKILL once the grace period is over, and the stage reports
``timed_out`` rather than ``failed``.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from longhaul.core.deadline import BuildTiming
from longhaul.core.errors import LonghaulError
from longhaul.models.stages import BuildStage, StageOutcome, StageResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class PackagingError(LonghaulError):
    """The final package could not be produced."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StageExecutor(Protocol):
    """Backend that performs the work of each build stage."""

    def run_stage(self, stage: BuildStage, timing: BuildTiming) -> StageResult:
        """Run *stage*, stopping by ``timing.deadline``.

        Returns
        -------
        StageResult
            ``success``, ``timed_out`` or ``failed``.
        """
        ...

    def package(self, timing: BuildTiming) -> Path:
        """Produce the final deliverable and return its path."""
        ...


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------


class CommandOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    exit_code: int
    timed_out: bool = False
    duration_seconds: float = 0.0


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        _signal_group(proc, signal.SIGKILL)
    else:
        proc.kill()
    proc.wait()


def run_with_timeout(
    command: str | Sequence[str],
    *,
    cwd: Path,
    timeout: float,
    grace_seconds: float = 300.0,
    env: Mapping[str, str] | None = None,
) -> CommandOutcome:
    """Run *command*, interrupting it once *timeout* seconds have passed."""
    args = shlex.split(command) if isinstance(command, str) else list(command)
    started = time.monotonic()
    proc = subprocess.Popen(
        args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        start_new_session=(os.name == "posix"),
    )
    try:
        exit_code = proc.wait(timeout=max(timeout, 0.0))
    except subprocess.TimeoutExpired:
        logger.warning("%s exceeded %.0fs; sending SIGINT", args[0], timeout)
        _signal_group(proc, signal.SIGINT)
        try:
            proc.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("%s ignored SIGINT for %.0fs; killing", args[0], grace_seconds)
            _kill(proc)
        return CommandOutcome(
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    except BaseException:
        _kill(proc)
        raise
    return CommandOutcome(exit_code=exit_code, duration_seconds=time.monotonic() - started)


# ---------------------------------------------------------------------------
# Default implementation
# ---------------------------------------------------------------------------


class CommandStageExecutor:
    """Runs one shell command per stage inside the working directory.

    Stages without a configured command succeed immediately. Each command
    sees ``LONGHAUL_STAGE`` and ``LONGHAUL_DEADLINE`` in its environment.

    Parameters
    ----------
    work_dir:
        Directory commands run in.
    commands:
        Stage value (``"build"``, ``"build_dist"``, ...) to command line.
    package_command:
        Optional command run by ``package()`` before the package is collected.
    package_path:
        The deliverable, relative to *work_dir* unless absolute.
    grace_seconds:
        Time between SIGINT and SIGKILL for a command past its deadline.
    """

    def __init__(
        self,
        work_dir: Path,
        commands: Mapping[str, str] | None = None,
        *,
        package_command: str | None = None,
        package_path: Path | None = None,
        grace_seconds: float = 300.0,
    ) -> None:
        self._work_dir = Path(work_dir)
        self._commands = dict(commands or {})
        self._package_command = package_command
        self._package_path = package_path
        self._grace = grace_seconds

    def _env(self, stage: str, timing: BuildTiming) -> dict[str, str]:
        env = dict(os.environ)
        env["LONGHAUL_STAGE"] = stage
        env["LONGHAUL_DEADLINE"] = timing.deadline.isoformat()
        return env

    def run_stage(self, stage: BuildStage, timing: BuildTiming) -> StageResult:
        command = self._commands.get(stage.value)
        if not command:
            return StageResult(
                stage=stage, outcome=StageOutcome.SUCCESS, detail="no command configured"
            )
        try:
            outcome = run_with_timeout(
                command,
                cwd=self._work_dir,
                timeout=timing.timeout_seconds,
                grace_seconds=self._grace,
                env=self._env(stage.value, timing),
            )
        except OSError as exc:
            return StageResult(
                stage=stage,
                outcome=StageOutcome.FAILED,
                detail=f"could not start {command!r}: {exc}",
            )

        if outcome.timed_out:
            status = StageOutcome.TIMED_OUT
            detail = f"interrupted after {timing.timeout_seconds:.0f}s"
        elif outcome.exit_code == 0:
            status = StageOutcome.SUCCESS
            detail = ""
        else:
            status = StageOutcome.FAILED
            detail = f"{command!r} exited with code {outcome.exit_code}"
        return StageResult(
            stage=stage,
            outcome=status,
            detail=detail,
            exit_code=outcome.exit_code,
            duration_seconds=outcome.duration_seconds,
        )

    def package(self, timing: BuildTiming) -> Path:
        if self._package_command:
            try:
                outcome = run_with_timeout(
                    self._package_command,
                    cwd=self._work_dir,
                    timeout=timing.timeout_seconds,
                    grace_seconds=self._grace,
                    env=self._env(BuildStage.PACKAGE.value, timing),
                )
            except OSError as exc:
                raise PackagingError(f"could not start package command: {exc}") from exc
            if outcome.timed_out or outcome.exit_code != 0:
                raise PackagingError(
                    f"package command {'timed out' if outcome.timed_out else 'failed'} "
                    f"(exit code {outcome.exit_code})"
                )
        if self._package_path is None:
            raise PackagingError("No package path configured")
        path = self._package_path
        if not path.is_absolute():
            path = self._work_dir / path
        if not path.exists():
            raise PackagingError(f"Package not found at {path}")
        return path
