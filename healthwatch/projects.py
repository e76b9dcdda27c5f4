from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from healthwatch import db as dbm


MONITORING_TYPES = {"web", "rest", "wordpress", "e2e"}


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    base_url: str
    monitoring_types: tuple[str, ...] = field(default_factory=tuple)
    status: str = "unknown"
    is_active: bool = True
    last_check_at_ts: float | None = None
    created_at_ts: float = 0.0
    updated_at_ts: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
            "monitoring_types": list(self.monitoring_types),
            "status": self.status,
            "is_active": self.is_active,
            "last_check_at_ts": self.last_check_at_ts,
            "created_at_ts": self.created_at_ts,
            "updated_at_ts": self.updated_at_ts,
        }


def _row_to_project(row: Any) -> Project:
    types = dbm.json_loads(row["monitoring_types_json"])
    return Project(
        id=str(row["id"]),
        name=str(row["name"]),
        base_url=str(row["base_url"]),
        monitoring_types=tuple(str(t) for t in types) if isinstance(types, list) else (),
        status=str(row["status"]),
        is_active=bool(row["is_active"]),
        last_check_at_ts=row["last_check_at_ts"],
        created_at_ts=float(row["created_at_ts"]),
        updated_at_ts=float(row["updated_at_ts"]),
    )


def create_project(
    db_path: str,
    *,
    name: str,
    base_url: str,
    monitoring_types: list[str],
    is_active: bool = True,
) -> Project:
    if not name.strip():
        raise ValueError("Project name is required")
    unknown = [t for t in monitoring_types if t not in MONITORING_TYPES]
    if unknown:
        raise ValueError(f"Unknown monitoring types: {', '.join(unknown)}")

    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        pid = dbm.new_id()
        now = dbm.utc_ts()
        conn.execute(
            """
            INSERT INTO projects (id, name, base_url, monitoring_types_json, is_active, created_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (pid, name.strip(), base_url.strip(), dbm.json_dumps(list(monitoring_types)), int(is_active), now, now),
        )
        row = conn.execute("SELECT * FROM projects WHERE id=?", (pid,)).fetchone()
        return _row_to_project(row)
    finally:
        conn.close()


def get_project(db_path: str, project_id: str) -> Project | None:
    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM projects WHERE id=?", (project_id,)).fetchone()
        return _row_to_project(row) if row else None
    finally:
        conn.close()


def list_projects(db_path: str, *, active_only: bool = False) -> list[Project]:
    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        if active_only:
            rows = conn.execute("SELECT * FROM projects WHERE is_active=1 ORDER BY created_at_ts, rowid").fetchall()
        else:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at_ts, rowid").fetchall()
        return [_row_to_project(r) for r in rows]
    finally:
        conn.close()


def list_active_projects(db_path: str, *, monitoring_type: str | None = None) -> list[Project]:
    projects = list_projects(db_path, active_only=True)
    if monitoring_type is None:
        return projects
    return [p for p in projects if monitoring_type in p.monitoring_types]


def update_project_status(db_path: str, project_id: str, *, status: str) -> None:
    conn = dbm.connect(db_path)
    try:
        dbm.ensure_schema_conn(conn)
        now = dbm.utc_ts()
        conn.execute(
            "UPDATE projects SET status=?, last_check_at_ts=?, updated_at_ts=? WHERE id=?",
            (status, now, now, project_id),
        )
    finally:
        conn.close()
