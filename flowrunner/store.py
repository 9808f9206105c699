from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

from .errors import ClaimConflict, ExecutionNotFound
from .models import (
    Execution,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStep,
    LogEntry,
    LogLevel,
    LogStats,
    StepStatus,
    Workflow,
    utc_now,
)

TERMINAL_STEP = (StepStatus.COMPLETED.value, StepStatus.FAILED.value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteStore:
    def __init__(self, db_path: str | Path = "data/flowrunner.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    error TEXT,
                    variables TEXT,
                    FOREIGN KEY(workflow_id) REFERENCES workflows(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_steps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    result TEXT,
                    error TEXT,
                    UNIQUE(execution_id, node_id),
                    FOREIGN KEY(execution_id) REFERENCES executions(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    level TEXT NOT NULL,
                    context TEXT NOT NULL,
                    message TEXT NOT NULL,
                    workflow_id TEXT,
                    execution_id TEXT,
                    node_id TEXT,
                    metadata TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs(timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_execution ON logs(execution_id)")

    # --- workflows ---

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO workflows (id, name, definition, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (
                    workflow.id,
                    workflow.name,
                    workflow.model_dump_json(),
                    workflow.created_at.isoformat(),
                    workflow.updated_at.isoformat(),
                ),
            )
        return workflow

    def update_workflow(self, workflow_id: str, workflow: Workflow) -> Workflow | None:
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT created_at FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()
            if not existing:
                return None
            updated = workflow.model_copy(
                update={"created_at": datetime.fromisoformat(existing["created_at"]), "updated_at": utc_now()}
            )
            conn.execute(
                "UPDATE workflows SET name = ?, definition = ?, updated_at = ? WHERE id = ?",
                (
                    updated.name,
                    updated.model_dump_json(),
                    updated.updated_at.isoformat(),
                    workflow_id,
                ),
            )
        return updated

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()

        if not row:
            return None
        return Workflow.model_validate_json(row["definition"])

    def list_workflows(self) -> list[Workflow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY updated_at DESC").fetchall()

        return [Workflow.model_validate_json(row["definition"]) for row in rows]

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
        return cursor.rowcount > 0

    # --- executions ---

    def create_execution(self, workflow_id: str) -> Execution:
        execution = Execution(id=str(uuid.uuid4()), workflow_id=workflow_id)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (id, workflow_id, status, created_at, started_at, finished_at, error, variables)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.workflow_id,
                    execution.status.value,
                    execution.created_at.isoformat(),
                    None,
                    None,
                    None,
                    None,
                ),
            )
        return execution

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_parse(row["started_at"]),
            finished_at=_parse(row["finished_at"]),
            error=row["error"],
            variables=json.loads(row["variables"]) if row["variables"] else {},
        )

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE id = ?",
                (execution_id,),
            ).fetchone()

        if not row:
            return None
        return self._row_to_execution(row)

    def latest_execution(self, workflow_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE workflow_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (workflow_id,),
            ).fetchone()

        if not row:
            return None
        return self._row_to_execution(row)

    def list_executions(self, workflow_id: str, limit: int = 50) -> list[Execution]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM executions WHERE workflow_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (workflow_id, limit),
            ).fetchall()

        return [self._row_to_execution(row) for row in rows]

    def next_pending(self) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                (ExecutionStatus.PENDING.value,),
            ).fetchone()

        if not row:
            return None
        return self._row_to_execution(row)

    def claim_execution(self, execution_id: str) -> Execution:
        """Move a pending execution to running; exactly one caller wins."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "UPDATE executions SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                (
                    ExecutionStatus.RUNNING.value,
                    utc_now().isoformat(),
                    execution_id,
                    ExecutionStatus.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM executions WHERE id = ?", (execution_id,)).fetchone()
                if not exists:
                    raise ExecutionNotFound(execution_id)
                raise ClaimConflict(execution_id)
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        return self._row_to_execution(row)

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
        variables: dict[str, Any] | None = None,
    ) -> bool:
        if status not in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            raise ValueError(f"Not a terminal status: {status}")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE executions
                SET status = ?, finished_at = ?, error = ?, variables = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    utc_now().isoformat(),
                    error,
                    _dumps(variables) if variables is not None else None,
                    execution_id,
                    ExecutionStatus.RUNNING.value,
                ),
            )
        return cursor.rowcount > 0

    def fail_stale_executions(self, older_than: timedelta) -> list[str]:
        cutoff = (utc_now() - older_than).isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                "SELECT id FROM executions WHERE status = ? AND started_at < ?",
                (ExecutionStatus.RUNNING.value, cutoff),
            ).fetchall()
            stale = [row["id"] for row in rows]
            now = utc_now().isoformat()
            for execution_id in stale:
                conn.execute(
                    "UPDATE executions SET status = ?, finished_at = ?, error = ? WHERE id = ? AND status = ?",
                    (
                        ExecutionStatus.FAILED.value,
                        now,
                        "Execution went stale while running",
                        execution_id,
                        ExecutionStatus.RUNNING.value,
                    ),
                )
                self._fail_pending_steps(conn, execution_id, "Execution went stale while running")
        return stale

    # --- steps ---

    def record_step(self, step: ExecutionStep) -> bool:
        """Insert or advance a step; a finished step is never overwritten."""
        result = _dumps(step.result.model_dump(mode="python")) if step.result is not None else None
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO execution_steps (execution_id, node_id, status, started_at, completed_at, result, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id, node_id) DO UPDATE SET
                    status = excluded.status,
                    started_at = COALESCE(execution_steps.started_at, excluded.started_at),
                    completed_at = excluded.completed_at,
                    result = excluded.result,
                    error = excluded.error
                WHERE execution_steps.status NOT IN (?, ?)
                """,
                (
                    step.execution_id,
                    step.node_id,
                    step.status.value,
                    _iso(step.started_at),
                    _iso(step.completed_at),
                    result,
                    step.error,
                    *TERMINAL_STEP,
                ),
            )
        return cursor.rowcount > 0

    def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_steps WHERE execution_id = ? ORDER BY id ASC",
                (execution_id,),
            ).fetchall()

        return [
            ExecutionStep(
                execution_id=row["execution_id"],
                node_id=row["node_id"],
                status=StepStatus(row["status"]),
                started_at=_parse(row["started_at"]),
                completed_at=_parse(row["completed_at"]),
                result=ExecutionResult.model_validate(json.loads(row["result"])) if row["result"] else None,
                error=row["error"],
            )
            for row in rows
        ]

    def abandon_execution(self, execution_id: str, reason: str) -> None:
        with self._connect() as conn:
            self._fail_pending_steps(conn, execution_id, reason)
            conn.execute(
                "UPDATE executions SET status = ?, finished_at = ?, error = ? WHERE id = ? AND status = ?",
                (
                    ExecutionStatus.FAILED.value,
                    utc_now().isoformat(),
                    reason,
                    execution_id,
                    ExecutionStatus.RUNNING.value,
                ),
            )

    def _fail_pending_steps(self, conn: sqlite3.Connection, execution_id: str, reason: str) -> None:
        conn.execute(
            "UPDATE execution_steps SET status = ?, completed_at = ?, error = ? WHERE execution_id = ? AND status = ?",
            (
                StepStatus.FAILED.value,
                utc_now().isoformat(),
                reason,
                execution_id,
                StepStatus.PENDING.value,
            ),
        )

    # --- logs ---

    def add_log(self, entry: LogEntry) -> LogEntry:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO logs (timestamp, level, context, message, workflow_id, execution_id, node_id, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _utc(entry.timestamp),
                    entry.level.value,
                    entry.context,
                    entry.message,
                    entry.workflow_id,
                    entry.execution_id,
                    entry.node_id,
                    _dumps(entry.metadata),
                ),
            )
        return entry.model_copy(update={"id": cursor.lastrowid})

    def get_logs(
        self,
        level: LogLevel | None = None,
        context: str | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LogEntry]:
        """Newest entries first, narrowed by every filter that is given."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("level", level.value if level is not None else None),
            ("context", context),
            ("workflow_id", workflow_id),
            ("execution_id", execution_id),
            ("node_id", node_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_utc(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_utc(until))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM logs {where} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()

        return [
            LogEntry(
                id=row["id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                level=LogLevel(row["level"]),
                context=row["context"],
                message=row["message"],
                workflow_id=row["workflow_id"],
                execution_id=row["execution_id"],
                node_id=row["node_id"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            )
            for row in rows
        ]

    def log_stats(self) -> LogStats:
        cutoff = _utc(utc_now() - timedelta(hours=24))
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
            by_level = conn.execute("SELECT level, COUNT(*) AS count FROM logs GROUP BY level").fetchall()
            by_context = conn.execute("SELECT context, COUNT(*) AS count FROM logs GROUP BY context").fetchall()
            recent = conn.execute("SELECT COUNT(*) FROM logs WHERE timestamp >= ?", (cutoff,)).fetchone()[0]

        return LogStats(
            total=total,
            byLevel={row["level"]: row["count"] for row in by_level},
            byContext={row["context"]: row["count"] for row in by_context},
            last24Hours=recent,
        )

    def clear_logs(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM logs")
        return cursor.rowcount
