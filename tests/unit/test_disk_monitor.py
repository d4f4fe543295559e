"""Tests for the background disk usage logger."""

from __future__ import annotations

import logging

import pytest

from longhaul.core.disk_monitor import DiskMonitor


class TestDiskMonitor:
    def test_sample_logs_usage(self, work_dir, caplog):
        monitor = DiskMonitor(work_dir)
        with caplog.at_level(logging.INFO, logger="longhaul.core.disk_monitor"):
            monitor.sample()
        assert monitor.samples == 1
        assert "GiB free" in caplog.text

    def test_missing_path_uses_parent(self, work_dir):
        monitor = DiskMonitor(work_dir / "not" / "yet")
        monitor.sample()
        assert monitor.samples == 1

    def test_context_manager_starts_and_stops(self, work_dir):
        with DiskMonitor(work_dir, interval=3600) as monitor:
            assert monitor.running
        assert not monitor.running
        assert monitor.samples >= 1

    def test_stop_is_idempotent(self, work_dir):
        monitor = DiskMonitor(work_dir, interval=3600).start()
        monitor.stop()
        monitor.stop()
        assert not monitor.running

    def test_stop_without_start(self, work_dir):
        DiskMonitor(work_dir).stop()

    def test_invalid_interval(self, work_dir):
        with pytest.raises(ValueError):
            DiskMonitor(work_dir, interval=0)
