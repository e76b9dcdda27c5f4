"""Per-process resource sampling."""

from __future__ import annotations

import time
from dataclasses import dataclass

import psutil
import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceSample:
    pid: int
    memory_bytes: int
    cpu_time_ms: float
    timestamp: float

    @property
    def memory_mb(self) -> float:
        return self.memory_bytes / 1024 / 1024


class ResourceMonitor:
    """Measures resident memory and accumulated CPU time of a process tree.

    The runner is usually a wrapper (``npx``) around the real browser
    process, so children are included in both figures. Processes that exit
    between listing and measuring are skipped.
    """

    def __init__(self, include_children: bool = True):
        self.include_children = include_children

    def sample(self, pid: int) -> ResourceSample | None:
        try:
            root = psutil.Process(pid)
            procs = [root]
            if self.include_children:
                procs.extend(root.children(recursive=True))

            memory = 0
            cpu_seconds = 0.0
            for proc in procs:
                try:
                    with proc.oneshot():
                        memory += int(proc.memory_info().rss)
                        times = proc.cpu_times()
                        cpu_seconds += float(times.user) + float(times.system)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    if proc is root:
                        raise
                    continue
        except (psutil.Error, OSError) as e:
            logger.debug("Resource sample failed", pid=pid, error=str(e))
            return None

        return ResourceSample(
            pid=pid,
            memory_bytes=memory,
            cpu_time_ms=cpu_seconds * 1000.0,
            timestamp=time.time(),
        )
