from __future__ import annotations

import sys
import time

import pytest

from healthwatch.e2e.process_registry import ProcessRegistry
from healthwatch.e2e.resource_monitor import ResourceSample
from healthwatch.e2e.result import RunResult


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class FakeMonitor:
    """Returns a fixed memory figure and a CPU clock that advances per call."""

    def __init__(self, memory_mb: float = 100.0, cpu_ms_per_sample: float = 0.0) -> None:
        self.memory_mb = memory_mb
        self.cpu_ms_per_sample = cpu_ms_per_sample
        self.calls = 0

    def sample(self, pid: int) -> ResourceSample | None:
        self.calls += 1
        return ResourceSample(
            pid=pid,
            memory_bytes=int(self.memory_mb * 1024 * 1024),
            cpu_time_ms=self.calls * self.cpu_ms_per_sample,
            timestamp=time.time(),
        )


def python_command(source: str) -> list[str]:
    return [sys.executable, "-c", source]


class FakeRunner:
    """Stands in for E2ERunner; results are keyed by target id."""

    def __init__(self, results: dict[str | None, RunResult | Exception]) -> None:
        self.results = results
        self.calls: list[tuple[str | None, int | None]] = []
        self.registry = ProcessRegistry()

    async def run_tests(self, target_id: str | None = None, timeout_ms: int | None = None) -> RunResult:
        self.calls.append((target_id, timeout_ms))
        outcome = self.results.get(target_id, RunResult(success=True))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
