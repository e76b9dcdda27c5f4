from __future__ import annotations

import os

import psutil

from healthwatch.e2e.resource_monitor import ResourceMonitor


def test_sample_current_process() -> None:
    sample = ResourceMonitor().sample(os.getpid())
    assert sample is not None
    assert sample.pid == os.getpid()
    assert sample.memory_bytes > 0
    assert sample.cpu_time_ms >= 0
    assert sample.memory_mb == sample.memory_bytes / 1024 / 1024


def test_sample_missing_process_returns_none() -> None:
    pid = 4_000_000
    while psutil.pid_exists(pid):
        pid += 1
    assert ResourceMonitor().sample(pid) is None
