"""Soft stage deadline.

A run may keep building until ``job_start_time + max_build_seconds -
safety_margin_seconds``, but a stage is always given at least
``min_build_seconds`` so a late resume still makes progress.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict

from longhaul.models.config import DeadlinePolicy


class BuildTiming(BaseModel):
    model_config = ConfigDict(frozen=True)

    deadline: datetime
    timeout_seconds: float
    elapsed_seconds: float
    remaining_seconds: float  # before the floor is applied
    floored: bool

    def describe(self) -> str:
        text = (
            f"elapsed {_fmt(self.elapsed_seconds)}, "
            f"remaining {_fmt(max(self.remaining_seconds, 0))}, "
            f"timeout {_fmt(self.timeout_seconds)}"
        )
        if self.floored:
            text += " (minimum build time applied)"
        return text


def _fmt(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m{secs:02d}s"


def calculate_build_timeout(policy: DeadlinePolicy, now: datetime | None = None) -> BuildTiming:
    """Turn a deadline policy into a concrete deadline for the next stage."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = policy.job_start_time
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    elapsed = max((now - start).total_seconds(), 0.0)
    remaining = policy.max_build_seconds - policy.safety_margin_seconds - elapsed
    floored = remaining < policy.min_build_seconds
    timeout = policy.min_build_seconds if floored else remaining
    return BuildTiming(
        deadline=now + timedelta(seconds=timeout),
        timeout_seconds=timeout,
        elapsed_seconds=elapsed,
        remaining_seconds=remaining,
        floored=floored,
    )
