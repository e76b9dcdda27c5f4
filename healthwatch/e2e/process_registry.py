"""Registry of supervised child processes.

Each entry owns a sampling task and an exit watcher. An entry is removed when
its process exits, when it is killed, or by the orphan sweep; removing it
cancels both tasks, and a sampling tick that wakes up after removal does
nothing.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import psutil
import structlog

from .resource_monitor import ResourceMonitor, ResourceSample


logger = structlog.get_logger(__name__)

DEFAULT_CHECK_INTERVAL_MS = 5000
DEFAULT_KILL_GRACE_SECONDS = 5.0


@dataclass
class SupervisedProcess:
    pid: int
    process: asyncio.subprocess.Process
    start_time: float
    check_interval_ms: int
    max_memory_mb: float | None = None
    max_cpu_percent: float | None = None
    samples: list[ResourceSample] = field(default_factory=list)
    monitor_task: asyncio.Task | None = None
    exit_task: asyncio.Task | None = None

    def has_exited(self) -> bool:
        return self.process.returncode is not None


class ProcessRegistry:
    """Tracks supervised processes by pid and enforces their resource limits."""

    def __init__(
        self,
        monitor: ResourceMonitor | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        self.monitor = monitor or ResourceMonitor()
        self.kill_grace_seconds = float(kill_grace_seconds)
        self._entries: dict[int, SupervisedProcess] = {}
        self._pending_kills: set[asyncio.Task] = set()

    def start_monitoring(
        self,
        process: asyncio.subprocess.Process,
        *,
        max_memory_mb: float | None = None,
        max_cpu_percent: float | None = None,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
    ) -> SupervisedProcess | None:
        """Start sampling ``process`` every ``check_interval_ms``.

        Returns the registry entry, or None if the process has no pid.
        """
        pid = process.pid
        if not pid:
            return None
        if check_interval_ms <= 0:
            raise ValueError("check_interval_ms must be positive")

        if pid in self._entries:
            logger.warning("Pid already monitored, replacing entry", pid=pid)
            self.stop_monitoring(pid)

        entry = SupervisedProcess(
            pid=pid,
            process=process,
            start_time=time.time(),
            check_interval_ms=int(check_interval_ms),
            max_memory_mb=max_memory_mb,
            max_cpu_percent=max_cpu_percent,
        )
        self._entries[pid] = entry

        loop = asyncio.get_running_loop()
        entry.monitor_task = loop.create_task(self._sample_loop(entry))
        entry.exit_task = loop.create_task(self._watch_exit(entry))

        logger.info(
            "Started process monitoring",
            pid=pid,
            max_memory_mb=max_memory_mb,
            max_cpu_percent=max_cpu_percent,
            check_interval_ms=check_interval_ms,
        )
        return entry

    def stop_monitoring(self, pid: int) -> None:
        """Cancel sampling for ``pid`` and forget it. Safe to call repeatedly."""
        entry = self._entries.pop(pid, None)
        if entry is None:
            return

        current = asyncio.current_task()
        for task in (entry.monitor_task, entry.exit_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        logger.debug("Stopped process monitoring", pid=pid, samples=len(entry.samples))

    def kill_process(self, pid: int, reason: str) -> bool:
        """SIGTERM now, SIGKILL after the grace period if still running.

        Returns False if ``pid`` is not supervised by this registry.
        """
        entry = self._entries.get(pid)
        if entry is None:
            return False

        logger.warning("Killing process", pid=pid, reason=reason)

        try:
            # Children first: they outlive a wrapper that has already exited.
            children = _child_processes(pid)
            for child in children:
                try:
                    child.terminate()
                except psutil.Error:
                    continue
            try:
                entry.process.terminate()
            except ProcessLookupError:
                logger.debug("Process already gone", pid=pid)
            task = asyncio.get_running_loop().create_task(self._escalate(entry, children))
            self._pending_kills.add(task)
            task.add_done_callback(self._pending_kills.discard)
        except OSError as e:
            logger.error("Error killing process", pid=pid, error=str(e))
        finally:
            self.stop_monitoring(pid)

        return True

    def cleanup_orphaned_processes(self) -> int:
        """Drop entries whose process exited without the exit watcher firing."""
        count = 0
        for pid, entry in list(self._entries.items()):
            if entry.has_exited():
                self.stop_monitoring(pid)
                count += 1

        if count > 0:
            logger.info("Cleaned up orphaned processes", count=count)
        return count

    def monitored_pids(self) -> list[int]:
        return list(self._entries.keys())

    def get(self, pid: int) -> SupervisedProcess | None:
        return self._entries.get(pid)

    async def drain(self) -> None:
        """Wait until every pending forced-kill escalation has finished."""
        if self._pending_kills:
            await asyncio.gather(*list(self._pending_kills), return_exceptions=True)

    async def _sample_loop(self, entry: SupervisedProcess) -> None:
        interval = entry.check_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            if self._entries.get(entry.pid) is not entry:
                return
            self._check(entry)

    def _check(self, entry: SupervisedProcess) -> None:
        usage = self.monitor.sample(entry.pid)
        if usage is None or self._entries.get(entry.pid) is not entry:
            return

        previous = entry.samples[-1] if entry.samples else None
        entry.samples.append(usage)

        cpu_percent = None
        if previous is not None and usage.timestamp > previous.timestamp:
            wall_ms = (usage.timestamp - previous.timestamp) * 1000.0
            cpu_percent = max(0.0, usage.cpu_time_ms - previous.cpu_time_ms) / wall_ms * 100.0

        logger.debug(
            "Process resource usage",
            pid=entry.pid,
            memory_mb=round(usage.memory_mb, 2),
            cpu_ms=round(usage.cpu_time_ms, 2),
            cpu_percent=round(cpu_percent, 2) if cpu_percent is not None else None,
            uptime_ms=int((usage.timestamp - entry.start_time) * 1000),
        )

        if entry.max_memory_mb and usage.memory_mb > entry.max_memory_mb:
            logger.warning(
                "Process exceeded memory limit",
                pid=entry.pid,
                memory_mb=round(usage.memory_mb, 2),
                limit_mb=entry.max_memory_mb,
            )
            self.kill_process(entry.pid, "Memory limit exceeded")
            return

        # CPU spikes only warn.
        if entry.max_cpu_percent and cpu_percent is not None and cpu_percent > entry.max_cpu_percent:
            logger.warning(
                "Process exceeded CPU limit",
                pid=entry.pid,
                cpu_percent=round(cpu_percent, 2),
                limit_percent=entry.max_cpu_percent,
            )

    async def _watch_exit(self, entry: SupervisedProcess) -> None:
        await entry.process.wait()
        if self._entries.get(entry.pid) is entry:
            self.stop_monitoring(entry.pid)

    async def _escalate(self, entry: SupervisedProcess, children: list[psutil.Process]) -> None:
        started = time.monotonic()
        try:
            await asyncio.wait_for(entry.process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            try:
                entry.process.kill()
                logger.warning("Force killed process", pid=entry.pid)
            except ProcessLookupError:
                pass

        if not children:
            return
        remaining = max(0.0, self.kill_grace_seconds - (time.monotonic() - started))
        _, alive = await asyncio.to_thread(psutil.wait_procs, children, timeout=remaining)
        for child in alive:
            try:
                child.kill()
                logger.warning("Force killed child process", pid=entry.pid, child_pid=child.pid)
            except psutil.Error:
                continue


def _child_processes(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []
