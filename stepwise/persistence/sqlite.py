"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStatus, Workflow
from .models import StepExecution, Trigger, WorkflowExecution, utcnow
from .repository import WorkflowRepository


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                definition TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                triggered_by TEXT,
                trigger_data TEXT,
                step_results TEXT,
                error TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                max_attempts INTEGER NOT NULL,
                attempt_number INTEGER NOT NULL,
                output TEXT,
                logs TEXT,
                error TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS triggers (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                type TEXT NOT NULL,
                config TEXT NOT NULL,
                name TEXT,
                is_active INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        query = f"UPDATE {table} SET {assignments} WHERE id = ?"
        params = [*fields.values(), record_id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        rowcount = await asyncio.to_thread(self._execute, query, *params)
        return rowcount > 0

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            triggered_by=row["triggered_by"],
            trigger_data=_loads(row["trigger_data"]) or {},
            step_results=_loads(row["step_results"]) or {},
            error=row["error"],
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepExecution:
        return StepExecution(
            id=row["id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            status=ExecutionStatus(row["status"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            max_attempts=row["max_attempts"],
            attempt_number=row["attempt_number"],
            output=_loads(row["output"]),
            logs=row["logs"],
            error=row["error"],
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _trigger_from_row(row: sqlite3.Row) -> Trigger:
        return Trigger(
            id=row["id"],
            workflow_id=row["workflow_id"],
            type=row["type"],
            config=json.loads(row["config"]),
            name=row["name"],
            is_active=bool(row["is_active"]),
            created_at=_dt(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, name, is_active, definition) VALUES (?, ?, ?, ?)",
            workflow.id,
            workflow.name,
            int(workflow.is_active),
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        workflow = Workflow.model_validate_json(row["definition"])
        workflow.steps = workflow.ordered_steps()
        return workflow

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT definition FROM workflows ORDER BY rowid"
        )
        return [Workflow.model_validate_json(r["definition"]) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_execution(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        triggered_by: Optional[str] = None,
        trigger_data: Optional[dict] = None,
    ) -> str:
        execution_id = str(uuid.uuid4())
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_executions
                (id, workflow_id, status, started_at, triggered_by, trigger_data, step_results)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            execution_id,
            workflow_id,
            ExecutionStatus(status).value,
            _iso(started_at),
            triggered_by,
            json.dumps(trigger_data or {}),
            json.dumps({}),
        )
        return execution_id

    async def update_execution(
        self,
        execution_id: str,
        status: Optional[ExecutionStatus] = None,
        finished_at: Optional[datetime] = None,
        error: Optional[str] = None,
        step_results: Optional[dict] = None,
        only_if_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        return await self._update(
            "workflow_executions",
            execution_id,
            {
                "status": ExecutionStatus(status).value if status else None,
                "finished_at": _iso(finished_at),
                "error": error,
                "step_results": json.dumps(step_results) if step_results is not None else None,
            },
            ExecutionStatus(only_if_status).value if only_if_status else None,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return self._execution_from_row(row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM workflow_executions{where} ORDER BY rowid",
            *params,
        )
        return [self._execution_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Step attempt series
    async def create_step_execution(
        self,
        execution_id: str,
        step_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        max_attempts: int,
        attempt_number: int = 1,
    ) -> str:
        step_execution_id = str(uuid.uuid4())
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_executions
                (id, execution_id, step_id, status, started_at, max_attempts, attempt_number, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            step_execution_id,
            execution_id,
            step_id,
            ExecutionStatus(status).value,
            _iso(started_at),
            max_attempts,
            attempt_number,
            utcnow().isoformat(),
        )
        return step_execution_id

    async def update_step_execution(
        self,
        step_execution_id: str,
        attempt_number: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
        finished_at: Optional[datetime] = None,
        output: Any = None,
        logs: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        await self._update(
            "step_executions",
            step_execution_id,
            {
                "attempt_number": attempt_number,
                "status": ExecutionStatus(status).value if status else None,
                "finished_at": _iso(finished_at),
                "output": json.dumps(output) if output is not None else None,
                "logs": logs,
                "error": error,
            },
        )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_executions WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )
        return [self._step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Triggers
    async def create_trigger(self, trigger: Trigger) -> str:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO triggers (id, workflow_id, type, config, name, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            trigger.id,
            trigger.workflow_id,
            trigger.type.value,
            json.dumps(trigger.config),
            trigger.name,
            int(trigger.is_active),
            trigger.created_at.isoformat(),
        )
        return trigger.id

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM triggers WHERE id = ?", trigger_id
        )
        return self._trigger_from_row(row) if row else None

    async def list_triggers(self, active_only: bool = False) -> list[Trigger]:
        query = "SELECT * FROM triggers"
        if active_only:
            query += " WHERE is_active = 1"
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY rowid")
        return [self._trigger_from_row(r) for r in rows]

    async def delete_trigger(self, trigger_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM triggers WHERE id = ?", trigger_id
        )
