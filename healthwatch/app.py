from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from healthwatch import db as dbm
from healthwatch import projects as projects_store
from healthwatch import results as results_store
from healthwatch.auth import require_cron_secret
from healthwatch.config import HealthwatchConfig, load_config
from healthwatch.e2e.runner import E2ERunner
from healthwatch.locks import SingleFlightLock, SqliteLockStore
from healthwatch.scheduler import JobScheduler
from healthwatch.schema import CreateProjectRequest, RunE2ERequest
from healthwatch.workflow import E2EWorkflows, ExecutionInProgress


logger = structlog.get_logger(__name__)

E2E_SWEEP_JOB_ID = "e2e_sweep"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(
    config: HealthwatchConfig | None = None,
    *,
    runner: E2ERunner | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = FastAPI(title="Healthwatch", version="0.1.0")
    cfg = config or load_config()
    app.state.config = cfg

    dbm.ensure_schema(cfg.db_path)
    lock = SingleFlightLock(SqliteLockStore(cfg.db_path), timeout_seconds=cfg.lock_timeout_seconds)
    app.state.lock = lock
    app.state.runner = runner or E2ERunner(cfg.e2e)
    app.state.http_client = http_client or httpx.AsyncClient(headers={"User-Agent": "Healthwatch"})
    app.state.workflows = E2EWorkflows(cfg, lock, app.state.runner, app.state.http_client)
    app.state.scheduler = JobScheduler()

    async def _scheduled_sweep() -> None:
        try:
            summary = await app.state.workflows.run_scheduled_e2e()
            logger.info("Scheduled e2e sweep finished", total_projects=summary["total_projects"])
        except ExecutionInProgress:
            logger.warning("Scheduled e2e sweep skipped; execution in progress")
        except Exception as e:
            logger.error("Scheduled e2e sweep failed", error=str(e))

    @app.on_event("startup")
    async def _startup() -> None:
        await lock.cleanup_expired_locks()
        if cfg.scheduler_enabled:
            app.state.scheduler.add_cron_job(
                job_id=E2E_SWEEP_JOB_ID,
                func=_scheduled_sweep,
                cron_expression=cfg.e2e_schedule_cron,
                description="Scheduled e2e sweep",
            )
            app.state.scheduler.start()
        logger.info("Healthwatch started", scheduler_enabled=cfg.scheduler_enabled)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        app.state.scheduler.stop()
        # Let pending SIGKILL escalations finish so no runner outlives the service.
        await app.state.runner.registry.drain()
        await app.state.http_client.aclose()
        logger.info("Healthwatch stopped")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.post("/api/e2e/run")
    async def run_e2e(req: RunE2ERequest | None = None) -> Any:
        body = req or RunE2ERequest()
        try:
            result = await app.state.workflows.run_on_demand(body.project_id, body.timeout_ms)
        except ExecutionInProgress as e:
            return _error(409, str(e))
        except Exception as e:
            logger.error("Error running e2e tests", error=str(e))
            return _error(500, str(e))
        return {"success": result.success, "data": result.to_dict()}

    @app.get("/api/cron/e2e", dependencies=[Depends(require_cron_secret)])
    async def cron_e2e() -> Any:
        try:
            summary = await app.state.workflows.run_scheduled_e2e()
        except ExecutionInProgress as e:
            return _error(409, str(e))
        except Exception as e:
            logger.error("Error in cron e2e execution", error=str(e))
            return _error(500, str(e))
        return {"success": True, "data": summary}

    @app.get("/api/e2e/results")
    async def e2e_results(
        project_id: str | None = Query(None, max_length=80),
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        items, total = await asyncio.to_thread(
            results_store.list_run_results,
            cfg.db_path,
            project_id=project_id,
            limit=limit,
            offset=offset,
        )
        return {
            "success": True,
            "data": {
                "items": [item.to_dict(include_output=False) for item in items],
                "total": total,
                "limit": limit,
                "offset": offset,
            },
        }

    @app.post("/api/projects", status_code=201)
    async def create_project(req: CreateProjectRequest) -> dict[str, Any]:
        try:
            project = await asyncio.to_thread(
                projects_store.create_project,
                cfg.db_path,
                name=req.name,
                base_url=req.base_url,
                monitoring_types=req.monitoring_types,
                is_active=req.is_active,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"success": True, "data": project.to_dict()}

    @app.get("/api/projects")
    async def list_projects(active: bool = Query(False)) -> dict[str, Any]:
        items = await asyncio.to_thread(projects_store.list_projects, cfg.db_path, active_only=active)
        return {"success": True, "data": [p.to_dict() for p in items]}

    return app
