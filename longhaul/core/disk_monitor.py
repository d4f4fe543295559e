"""Background free-space logger for the working directory's filesystem.

Logging only: the monitor never influences control flow. It runs as a
daemon thread that wakes every ``interval`` seconds on a
``threading.Event`` and is stopped deterministically by ``stop()`` or by
leaving its context manager.
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)

_GIB = 1024 ** 3


class DiskMonitor:
    """Periodically log disk usage for *path*.

    Parameters
    ----------
    path:
        Any path on the filesystem to watch; the nearest existing parent
        is used if it does not exist yet.
    interval:
        Seconds between samples.
    """

    def __init__(self, path: Path, interval: float = 60.0) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._path = Path(path)
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.samples = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _existing_path(self) -> Path:
        path = self._path
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def sample(self) -> None:
        """Log one usage reading."""
        try:
            usage = shutil.disk_usage(self._existing_path())
        except OSError as exc:
            logger.warning("Disk usage unavailable for %s: %s", self._path, exc)
            return
        self.samples += 1
        logger.info(
            "Disk %s: %.1f GiB free of %.1f GiB (%.0f%% used)",
            self._path,
            usage.free / _GIB,
            usage.total / _GIB,
            100.0 * usage.used / usage.total if usage.total else 0.0,
        )

    def _run(self) -> None:
        self.sample()
        while not self._stop.wait(self._interval):
            self.sample()

    def start(self) -> DiskMonitor:
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="longhaul-disk-monitor", daemon=True
        )
        self._thread.start()
        return self

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the thread. Safe to call more than once."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def __enter__(self) -> DiskMonitor:
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
