from __future__ import annotations

import asyncio
import signal

import pytest

from healthwatch.e2e import process_registry
from healthwatch.e2e.process_registry import ProcessRegistry

from support import FakeMonitor, posix_only, python_command


class _FakeProcess:
    def __init__(self, pid: int | None) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode or 0


async def _spawn(source: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *python_command(source),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_process_without_pid_is_not_monitored() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor())
    assert registry.start_monitoring(_FakeProcess(None)) is None
    assert registry.monitored_pids() == []


@pytest.mark.asyncio
async def test_exit_removes_entry() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor())
    proc = await _spawn("print('bye')")
    entry = registry.start_monitoring(proc, check_interval_ms=1000)
    assert entry is not None
    assert registry.monitored_pids() == [proc.pid]

    await proc.communicate()
    await _until(lambda: not registry.monitored_pids())
    assert entry.monitor_task is not None
    await _until(lambda: entry.monitor_task.done())


@pytest.mark.asyncio
async def test_stop_monitoring_is_idempotent_and_stops_sampling() -> None:
    monitor = FakeMonitor()
    registry = ProcessRegistry(monitor=monitor)
    proc = _FakeProcess(424242)
    registry.start_monitoring(proc, check_interval_ms=10)

    await _until(lambda: monitor.calls >= 2)
    registry.stop_monitoring(proc.pid)
    registry.stop_monitoring(proc.pid)
    calls = monitor.calls

    await asyncio.sleep(0.1)
    assert monitor.calls == calls
    assert registry.get(proc.pid) is None


@pytest.mark.asyncio
async def test_cleanup_orphaned_processes() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor())
    alive = _FakeProcess(1001)
    orphan = _FakeProcess(1002)
    registry.start_monitoring(alive, check_interval_ms=1000)
    registry.start_monitoring(orphan, check_interval_ms=1000)

    # Exited, but the exit watcher never heard about it.
    orphan.returncode = 0

    assert registry.cleanup_orphaned_processes() == 1
    assert registry.monitored_pids() == [1001]
    registry.stop_monitoring(1001)


@pytest.mark.asyncio
async def test_kill_unknown_pid_returns_false() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor())
    assert registry.kill_process(31337, "test") is False


class _UnkillableProcess(_FakeProcess):
    def terminate(self) -> None:
        raise PermissionError("operation not permitted")


class _GoneProcess(_FakeProcess):
    def terminate(self) -> None:
        raise ProcessLookupError()

    def kill(self) -> None:
        raise ProcessLookupError()


class _FakeChild:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.terminated = False

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        pass


@pytest.mark.asyncio
async def test_kill_stops_monitoring_when_signal_fails(monkeypatch) -> None:
    monkeypatch.setattr(process_registry, "_child_processes", lambda pid: [])
    registry = ProcessRegistry(monitor=FakeMonitor())
    proc = _UnkillableProcess(515151)
    registry.start_monitoring(proc, check_interval_ms=1000)

    assert registry.kill_process(proc.pid, "test") is True
    assert registry.get(proc.pid) is None
    assert registry.monitored_pids() == []
    await registry.drain()


@pytest.mark.asyncio
async def test_kill_signals_children_when_root_already_gone(monkeypatch) -> None:
    children = [_FakeChild(61), _FakeChild(62)]
    monkeypatch.setattr(process_registry, "_child_processes", lambda pid: list(children))
    monkeypatch.setattr(process_registry.psutil, "wait_procs", lambda procs, timeout: (list(procs), []))
    registry = ProcessRegistry(monitor=FakeMonitor(), kill_grace_seconds=0.1)
    proc = _GoneProcess(525252)
    registry.start_monitoring(proc, check_interval_ms=1000)

    assert registry.kill_process(proc.pid, "test") is True
    assert all(child.terminated for child in children)
    assert registry.get(proc.pid) is None
    await registry.drain()


@posix_only
@pytest.mark.asyncio
async def test_kill_process_terminates_gracefully() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor(), kill_grace_seconds=5)
    proc = await _spawn("import time; time.sleep(60)")
    registry.start_monitoring(proc, check_interval_ms=1000)

    assert registry.kill_process(proc.pid, "test") is True
    assert registry.get(proc.pid) is None

    assert await asyncio.wait_for(proc.wait(), 5) == -signal.SIGTERM
    await registry.drain()


@posix_only
@pytest.mark.asyncio
async def test_kill_process_escalates_to_sigkill() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor(), kill_grace_seconds=0.3)
    proc = await _spawn(
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    assert proc.stdout is not None
    assert (await asyncio.wait_for(proc.stdout.readline(), 10)).strip() == b"ready"
    registry.start_monitoring(proc, check_interval_ms=1000)

    assert registry.kill_process(proc.pid, "test") is True
    await registry.drain()
    assert await asyncio.wait_for(proc.wait(), 5) == -signal.SIGKILL


@posix_only
@pytest.mark.asyncio
async def test_memory_limit_kills_process() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor(memory_mb=4096), kill_grace_seconds=1)
    proc = await _spawn("import time; time.sleep(60)")
    entry = registry.start_monitoring(proc, max_memory_mb=1024, check_interval_ms=20)
    assert entry is not None

    assert await asyncio.wait_for(proc.wait(), 5) != 0
    assert registry.get(proc.pid) is None
    assert len(entry.samples) == 1
    await registry.drain()


@pytest.mark.asyncio
async def test_cpu_limit_only_warns() -> None:
    # 1000ms of CPU per 10ms tick is far above any percentage limit.
    monitor = FakeMonitor(cpu_ms_per_sample=1000)
    registry = ProcessRegistry(monitor=monitor)
    proc = _FakeProcess(2002)
    entry = registry.start_monitoring(proc, max_cpu_percent=90, check_interval_ms=10)
    assert entry is not None

    await _until(lambda: monitor.calls >= 3)
    assert registry.get(2002) is entry
    registry.stop_monitoring(2002)


@pytest.mark.asyncio
async def test_same_pid_replaces_previous_entry() -> None:
    registry = ProcessRegistry(monitor=FakeMonitor())
    first = registry.start_monitoring(_FakeProcess(3003), check_interval_ms=1000)
    second = registry.start_monitoring(_FakeProcess(3003), check_interval_ms=1000)
    assert first is not second
    assert registry.get(3003) is second
    await asyncio.sleep(0)
    assert first is not None and first.monitor_task is not None
    assert first.monitor_task.cancelled() or first.monitor_task.done()
    registry.stop_monitoring(3003)
