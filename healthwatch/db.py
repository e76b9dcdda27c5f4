from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any


SCHEMA_VERSION = 2


def utc_ts() -> float:
    return float(time.time())


def new_id() -> str:
    return str(uuid.uuid4())


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def ensure_schema(db_path: str) -> None:
    conn = connect(db_path)
    try:
        ensure_schema_conn(conn)
    finally:
        conn.close()


def ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return any(str(r["name"]) == str(column) for r in rows)


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS locks (
          lock_id TEXT PRIMARY KEY,
          created_at_ts REAL NOT NULL,
          expires_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          base_url TEXT NOT NULL,
          monitoring_types_json TEXT NOT NULL DEFAULT '[]',
          status TEXT NOT NULL DEFAULT 'unknown',
          is_active INTEGER NOT NULL DEFAULT 1,
          last_check_at_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_results (
          id TEXT PRIMARY KEY,
          project_id TEXT NOT NULL,
          project_name TEXT NOT NULL,
          success INTEGER NOT NULL,
          total_tests INTEGER NOT NULL DEFAULT 0,
          passed INTEGER NOT NULL DEFAULT 0,
          failed INTEGER NOT NULL DEFAULT 0,
          skipped INTEGER NOT NULL DEFAULT 0,
          duration_ms INTEGER NOT NULL DEFAULT 0,
          spec_files_json TEXT NOT NULL DEFAULT '[]',
          output TEXT NOT NULL DEFAULT '',
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_locks_expires ON locks(expires_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_projects_active ON projects(is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_run_results_project_created ON run_results(project_id, created_at_ts DESC);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 keeps the runner's diagnostic error and resource usage alongside each run.
    """
    if not _column_exists(conn, "run_results", "error"):
        conn.execute("ALTER TABLE run_results ADD COLUMN error TEXT;")
    if not _column_exists(conn, "run_results", "resource_usage_json"):
        conn.execute("ALTER TABLE run_results ADD COLUMN resource_usage_json TEXT;")
