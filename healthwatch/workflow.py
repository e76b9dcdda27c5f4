"""Scheduled and on-demand e2e workflows.

Both workflows hold the single-flight lock for the whole run and release it
on every path, including errors.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog

from healthwatch import projects as projects_store
from healthwatch import results as results_store
from healthwatch.config import HealthwatchConfig
from healthwatch.e2e.runner import E2ERunner, RunResult
from healthwatch.locks import SingleFlightLock
from healthwatch.notifications import (
    build_e2e_failure_message,
    build_status_change_message,
    send_message_chunked,
)


logger = structlog.get_logger(__name__)

SCHEDULED_LOCK_ID = "e2e-execution"
E2E_MONITORING_TYPE = "e2e"


class ExecutionInProgress(Exception):
    """The single-flight lock is held by another run."""

    def __init__(self, lock_id: str):
        super().__init__("E2E execution is already in progress")
        self.lock_id = lock_id


class E2EWorkflows:
    def __init__(
        self,
        config: HealthwatchConfig,
        lock: SingleFlightLock,
        runner: E2ERunner,
        http_client: httpx.AsyncClient,
    ):
        self.config = config
        self.lock = lock
        self.runner = runner
        self.http_client = http_client

    async def run_scheduled_e2e(self) -> dict[str, Any]:
        """Run the suite for every active project with e2e monitoring enabled."""
        if not await self.lock.acquire_lock(SCHEDULED_LOCK_ID):
            raise ExecutionInProgress(SCHEDULED_LOCK_ID)

        try:
            projects = await asyncio.to_thread(
                projects_store.list_active_projects,
                self.config.db_path,
                monitoring_type=E2E_MONITORING_TYPE,
            )
            summaries: list[dict[str, Any]] = []
            for project in projects:
                try:
                    logger.info("Running e2e tests for project", project=project.name, project_id=project.id)
                    result = await self.runner.run_tests(project.id)
                    await asyncio.to_thread(
                        results_store.save_run_result,
                        self.config.db_path,
                        project_id=project.id,
                        project_name=project.name,
                        result=result,
                    )
                    await self._record_status(project, result)
                    summaries.append(
                        {
                            "project_id": project.id,
                            "project_name": project.name,
                            "success": result.success,
                            "total_tests": result.total_tests,
                            "passed": result.passed,
                            "failed": result.failed,
                        }
                    )
                    logger.info("Completed e2e tests for project", project=project.name, success=result.success)
                except Exception as e:
                    logger.error("Error running e2e tests for project", project=project.name, error=str(e))
                    summaries.append(
                        {
                            "project_id": project.id,
                            "project_name": project.name,
                            "success": False,
                            "error": str(e),
                        }
                    )

            return {"total_projects": len(projects), "results": summaries}
        finally:
            await self.lock.release_lock(SCHEDULED_LOCK_ID)

    async def run_on_demand(self, project_id: str | None = None, timeout_ms: int | None = None) -> RunResult:
        """Run the suite once, optionally for a single project."""
        lock_id = f"e2e-run-{int(time.time() * 1000)}"
        if not await self.lock.acquire_lock(lock_id):
            raise ExecutionInProgress(lock_id)

        try:
            result = await self.runner.run_tests(project_id, timeout_ms)
            if project_id:
                try:
                    project = await asyncio.to_thread(projects_store.get_project, self.config.db_path, project_id)
                    if project is not None:
                        await asyncio.to_thread(
                            results_store.save_run_result,
                            self.config.db_path,
                            project_id=project.id,
                            project_name=project.name,
                            result=result,
                        )
                except Exception as e:
                    logger.error("Error saving e2e result", project_id=project_id, error=str(e))
            return result
        finally:
            await self.lock.release_lock(lock_id)

    async def _record_status(self, project: projects_store.Project, result: RunResult) -> None:
        new_status = "healthy" if result.success else "failing"
        await asyncio.to_thread(
            projects_store.update_project_status, self.config.db_path, project.id, status=new_status
        )

        if not result.success:
            msg = build_e2e_failure_message(
                project_name=project.name,
                failed=result.failed,
                total_tests=result.total_tests,
                dashboard_url=f"{self.config.app_url.rstrip('/')}/projects",
                error=result.error,
            )
        elif project.status == "failing":
            msg = build_status_change_message(
                project_name=project.name,
                check_type="E2E Tests",
                healthy=True,
            )
        else:
            return
        await self._notify(msg, project_name=project.name)

    async def _notify(self, msg: str, *, project_name: str) -> None:
        if not self.config.telegram.configured:
            logger.warning("Telegram not configured; skipping notification", project=project_name)
            return
        try:
            ok, _results = await send_message_chunked(self.http_client, self.config.telegram, msg)
            logger.info("Telegram notification sent", project=project_name, ok=ok)
        except Exception as e:
            logger.error("Error sending Telegram notification", project=project_name, error=str(e))
