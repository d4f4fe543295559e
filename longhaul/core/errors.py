"""Shared exception base for longhaul.

Concrete errors live next to the code that raises them; they all derive
from ``LonghaulError`` so the orchestrator and CLI can tell a checkpoint
or restore failure apart from a programming error.
"""

from __future__ import annotations


class LonghaulError(RuntimeError):
    """Base class for every error raised by the checkpoint/resume core."""
