from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from healthwatch import db as dbm
from healthwatch.e2e.result import ResourceUsage, RunResult


@dataclass(frozen=True)
class StoredRunResult:
    id: str
    project_id: str
    project_name: str
    created_at_ts: float
    result: RunResult

    def to_dict(self, *, include_output: bool = True) -> dict[str, Any]:
        data = self.result.to_dict()
        if not include_output:
            data.pop("output", None)
        data.update(
            {
                "id": self.id,
                "project_id": self.project_id,
                "project_name": self.project_name,
                "created_at_ts": self.created_at_ts,
            }
        )
        return data


def save_run_result(db_path: str, *, project_id: str, project_name: str, result: RunResult) -> StoredRunResult:
    if not project_id or not isinstance(project_id, str):
        raise ValueError("Project ID is required")
    if not project_name or not isinstance(project_name, str):
        raise ValueError("Project name is required")
    if not isinstance(result, RunResult):
        raise ValueError("Run result is required")

    usage = result.resource_usage.to_dict() if result.resource_usage else None
    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        rid = dbm.new_id()
        now = dbm.utc_ts()
        conn.execute(
            """
            INSERT INTO run_results (
              id, project_id, project_name, success, total_tests, passed, failed, skipped,
              duration_ms, spec_files_json, output, error, resource_usage_json, created_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rid,
                project_id,
                project_name,
                int(result.success),
                result.total_tests,
                result.passed,
                result.failed,
                result.skipped,
                result.duration_ms,
                dbm.json_dumps(list(result.spec_files)),
                result.output,
                result.error,
                dbm.json_dumps(usage) if usage else None,
                now,
            ),
        )
        return StoredRunResult(id=rid, project_id=project_id, project_name=project_name, created_at_ts=now, result=result)
    finally:
        conn.close()


def _row_to_stored(row: Any) -> StoredRunResult:
    spec_files = dbm.json_loads(row["spec_files_json"])
    usage_raw = dbm.json_loads(row["resource_usage_json"])
    usage = None
    if isinstance(usage_raw, dict):
        usage = ResourceUsage(
            max_memory_mb=float(usage_raw.get("max_memory_mb") or 0.0),
            avg_cpu_ms=float(usage_raw.get("avg_cpu_ms") or 0.0),
        )
    result = RunResult(
        success=bool(row["success"]),
        total_tests=int(row["total_tests"]),
        passed=int(row["passed"]),
        failed=int(row["failed"]),
        skipped=int(row["skipped"]),
        duration_ms=int(row["duration_ms"]),
        spec_files=tuple(str(s) for s in spec_files) if isinstance(spec_files, list) else (),
        output=str(row["output"] or ""),
        error=row["error"],
        resource_usage=usage,
    )
    return StoredRunResult(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        project_name=str(row["project_name"]),
        created_at_ts=float(row["created_at_ts"]),
        result=result,
    )


def list_run_results(
    db_path: str,
    *,
    project_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[StoredRunResult], int]:
    """Newest-first page of run history plus the total row count."""
    limit = max(1, min(int(limit), 100))
    offset = max(0, int(offset))
    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        if project_id:
            total = conn.execute("SELECT COUNT(*) AS n FROM run_results WHERE project_id=?", (project_id,)).fetchone()["n"]
            rows = conn.execute(
                "SELECT * FROM run_results WHERE project_id=? ORDER BY created_at_ts DESC, rowid DESC LIMIT ? OFFSET ?",
                (project_id, limit, offset),
            ).fetchall()
        else:
            total = conn.execute("SELECT COUNT(*) AS n FROM run_results").fetchone()["n"]
            rows = conn.execute(
                "SELECT * FROM run_results ORDER BY created_at_ts DESC, rowid DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_stored(r) for r in rows], int(total)
    finally:
        conn.close()
