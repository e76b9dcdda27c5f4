"""Execution coordinator for the external end-to-end test runner."""

from __future__ import annotations

import asyncio
import codecs
import os
import shlex
import time
from typing import Awaitable, Callable, Sequence

import structlog

from ..config import E2EConfig
from .output_parser import CypressOutputParser, OutputParser
from .process_registry import ProcessRegistry
from .resource_monitor import ResourceSample
from .result import ResourceUsage, RunResult


logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_MS = 10 * 60 * 1000
OUTPUT_DRAIN_SECONDS = 5.0
_READ_CHUNK = 64 * 1024

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]

__all__ = ["DEFAULT_TIMEOUT_MS", "E2ERunner", "ResourceUsage", "RunResult", "spawn_process", "summarize_usage"]


async def spawn_process(
    command: Sequence[str],
    *,
    cwd: str | None,
    env: dict[str, str],
    shell: bool,
) -> asyncio.subprocess.Process:
    """Start ``command`` with stdout and stderr piped."""
    if shell:
        return await asyncio.create_subprocess_shell(
            shlex.join(command),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    return await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )


def summarize_usage(samples: Sequence[ResourceSample]) -> ResourceUsage | None:
    if not samples:
        return None
    return ResourceUsage(
        max_memory_mb=max(s.memory_mb for s in samples),
        avg_cpu_ms=sum(s.cpu_time_ms for s in samples) / len(samples),
    )


class E2ERunner:
    """Runs the end-to-end suite as a supervised child process.

    Every call to ``run_tests`` returns exactly one ``RunResult``: a spawn
    failure, a timeout, or the parsed output of a finished run. Expected
    failures never raise.
    """

    def __init__(
        self,
        config: E2EConfig | None = None,
        registry: ProcessRegistry | None = None,
        parser: OutputParser | None = None,
        spawn: Spawner | None = None,
    ):
        self.config = config or E2EConfig()
        self.registry = registry or ProcessRegistry(kill_grace_seconds=self.config.kill_grace_seconds)
        self.parser = parser or CypressOutputParser()
        self._spawn = spawn or spawn_process

    def build_command(self, target_id: str | None = None) -> list[str]:
        command = list(self.config.command)
        if target_id:
            command.append(self.config.project_config_flag)
            command.append(self.config.project_config_template.format(project_id=target_id))
        return command

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in self.config.extra_env.items()})
        return env

    async def run_tests(self, target_id: str | None = None, timeout_ms: int | None = None) -> RunResult:
        timeout_ms = self.config.timeout_ms if timeout_ms is None else int(timeout_ms)
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        self.registry.cleanup_orphaned_processes()

        command = self.build_command(target_id)
        started = time.monotonic()

        try:
            process = await self._spawn(
                command,
                cwd=self.config.working_dir,
                env=self.build_env(),
                shell=self.config.shell,
            )
        except (OSError, ValueError, TypeError) as e:
            # ValueError covers null bytes in argv or env and bad env names.
            logger.error("Failed to start test runner", command=command, error=str(e))
            return RunResult.failure(
                error=f"Failed to start test runner: {e}",
                duration_ms=_elapsed_ms(started),
            )

        pid = process.pid
        logger.info("Test runner started", pid=pid, target_id=target_id, timeout_ms=timeout_ms)

        chunks: list[str] = []
        readers = [
            asyncio.create_task(_pump(stream, chunks))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]
        entry = self.registry.start_monitoring(
            process,
            max_memory_mb=self.config.max_memory_mb,
            max_cpu_percent=self.config.max_cpu_percent,
            check_interval_ms=self.config.check_interval_ms,
        )

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._terminate(process, "Test execution timeout")
            await _cancel(readers)
            logger.warning("Test execution timed out", pid=pid, timeout_ms=timeout_ms)
            return RunResult.failure(
                error=f"Test execution timed out after {timeout_ms}ms",
                duration_ms=_elapsed_ms(started),
                output="".join(chunks),
            )
        except asyncio.CancelledError:
            self._terminate(process, "Test execution cancelled")
            await _cancel(readers)
            raise

        self.registry.stop_monitoring(pid)
        await _drain(readers)
        duration_ms = _elapsed_ms(started)

        usage = summarize_usage(entry.samples if entry is not None else [])
        result = self.parser.parse("".join(chunks), process.returncode == 0, duration_ms, usage)

        logger.info(
            "Test runner finished",
            pid=pid,
            exit_code=process.returncode,
            success=result.success,
            total=result.total_tests,
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
            duration_ms=duration_ms,
        )
        return result

    def _terminate(self, process: asyncio.subprocess.Process, reason: str) -> None:
        if self.registry.kill_process(process.pid, reason):
            return
        # Not (or no longer) supervised: signal it directly.
        try:
            process.terminate()
        except ProcessLookupError:
            pass


async def _pump(stream: asyncio.StreamReader, chunks: list[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_CHUNK)
        if not data:
            break
        chunks.append(decoder.decode(data))
    tail = decoder.decode(b"", final=True)
    if tail:
        chunks.append(tail)


async def _drain(readers: list[asyncio.Task]) -> None:
    """Let readers reach EOF; a grandchild holding the pipe open is cut off."""
    if not readers:
        return
    _, pending = await asyncio.wait(readers, timeout=OUTPUT_DRAIN_SECONDS)
    if pending:
        logger.warning("Runner output still open after exit, truncating", pending=len(pending))
        await _cancel(list(pending))


async def _cancel(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
