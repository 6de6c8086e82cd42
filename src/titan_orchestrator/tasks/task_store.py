# src/titan_orchestrator/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .task_models import Task, TaskStatus, TaskType, freeze_parameters, parse_timestamp

logger = logging.getLogger(__name__)


class TaskStore:
    """
    SQLite task store: durable mirror of the registry, keyed by task id.

    Pure CRUD, no lifecycle rules. The schema is migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_tasks (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL DEFAULT 'custom',
                    description TEXT NOT NULL,
                    parameters TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending',
                    progress REAL NOT NULL DEFAULT 0,
                    result TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    updated_at REAL NOT NULL
                )
                """
            )

            cur.execute("PRAGMA table_info(ai_tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE ai_tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("progress", "REAL NOT NULL DEFAULT 0")
            add_col("result", "TEXT")
            add_col("error", "TEXT")
            add_col("completed_at", "TEXT")
            add_col("updated_at", "REAL NOT NULL DEFAULT 0")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_tasks_status ON ai_tasks(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_tasks_created ON ai_tasks(created_at)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _params_to_str(params: Mapping[str, Any] | None) -> str:
        if not params:
            return "{}"
        # Parameters are caller data; a value json can't encode is a caller bug.
        return json.dumps(dict(params), ensure_ascii=False, default=str)

    @staticmethod
    def _str_to_params(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("TaskStore: unreadable parameters JSON, using {}")
            return {}
        return val if isinstance(val, dict) else {}

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        created = parse_timestamp(row["created_at"])
        if created is None:
            raise ValueError(f"task {row['id']} has no created_at")
        return Task(
            id=str(row["id"]),
            type=TaskType.from_db(row["type"]),
            description=str(row["description"] or ""),
            parameters=freeze_parameters(self._str_to_params(row["parameters"])),
            status=TaskStatus.from_db(row["status"]),
            progress=float(row["progress"] or 0.0),
            result=row["result"],
            error=row["error"],
            created_at=created,
            completed_at=parse_timestamp(row["completed_at"]),
        )

    # ---- public API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM ai_tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def put(self, task: Task) -> None:
        """Insert or replace the full record for task.id."""
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO ai_tasks(
                    id, type, description, parameters,
                    status, progress, result, error,
                    created_at, completed_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    description = excluded.description,
                    parameters = excluded.parameters,
                    status = excluded.status,
                    progress = excluded.progress,
                    result = excluded.result,
                    error = excluded.error,
                    created_at = excluded.created_at,
                    completed_at = excluded.completed_at,
                    updated_at = excluded.updated_at
                """,
                (
                    task.id,
                    task.type.value,
                    task.description,
                    self._params_to_str(task.parameters),
                    task.status.value,
                    float(max(0.0, min(1.0, task.progress))),
                    task.result,
                    task.error,
                    task.created_at.isoformat(),
                    task.completed_at.isoformat() if task.completed_at else None,
                    time.time(),
                ),
            )
            conn.commit()
            logger.debug("Task stored id=%s status=%s", task.id, task.status.value)
        finally:
            conn.close()

    def get(self, task_id: str) -> Task | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM ai_tasks WHERE id = ?", (task_id,))
            row = cur.fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def delete(self, task_id: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM ai_tasks WHERE id = ?", (task_id,))
            conn.commit()
            logger.debug("Task deleted id=%s", task_id)
        finally:
            conn.close()

    def list_all(self) -> list[Task]:
        """All stored tasks, newest first (the registry's order)."""
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM ai_tasks ORDER BY created_at DESC, rowid DESC")
            out: list[Task] = []
            for row in cur.fetchall():
                try:
                    out.append(self._row_to_task(row))
                except ValueError:
                    logger.warning("TaskStore: skipping unreadable row id=%s", row["id"])
            return out
        finally:
            conn.close()
