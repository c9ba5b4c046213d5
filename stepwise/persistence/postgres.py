"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionStatus, Workflow
from .models import StepExecution, Trigger, WorkflowExecution, utcnow
from .repository import WorkflowRepository


def _loads(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                definition JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                triggered_by TEXT,
                trigger_data JSONB,
                step_results JSONB,
                error TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                max_attempts INTEGER NOT NULL,
                attempt_number INTEGER NOT NULL,
                output JSONB,
                logs TEXT,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS triggers (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                type TEXT NOT NULL,
                config JSONB NOT NULL,
                name TEXT,
                is_active BOOLEAN NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, tuple[Any, str]],
        expected_status: Optional[str] = None,
    ) -> bool:
        # fields maps column -> (value, cast suffix)
        present = {k: v for k, v in fields.items() if v[0] is not None}
        if not present:
            return False
        assignments = ", ".join(
            f"{column} = ${i}{cast}" for i, (column, (_, cast)) in enumerate(present.items(), 1)
        )
        values = [value for value, _ in present.values()]
        query = f"UPDATE {table} SET {assignments} WHERE id = ${len(values) + 1}"
        params = [*values, record_id]
        if expected_status is not None:
            query += f" AND status = ${len(params) + 1}"
            params.append(expected_status)
        # asyncpg reports the command tag, e.g. "UPDATE 1"
        tag = await self._execute(query, *params)
        return tag.rsplit(" ", 1)[-1] != "0"

    @staticmethod
    def _execution_from_row(row: asyncpg.Record) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            triggered_by=row["triggered_by"],
            trigger_data=_loads(row["trigger_data"]) or {},
            step_results=_loads(row["step_results"]) or {},
            error=row["error"],
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepExecution:
        return StepExecution(
            id=row["id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            status=ExecutionStatus(row["status"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            max_attempts=row["max_attempts"],
            attempt_number=row["attempt_number"],
            output=_loads(row["output"]),
            logs=row["logs"],
            error=row["error"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _trigger_from_row(row: asyncpg.Record) -> Trigger:
        return Trigger(
            id=row["id"],
            workflow_id=row["workflow_id"],
            type=row["type"],
            config=_loads(row["config"]),
            name=row["name"],
            is_active=row["is_active"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, name, is_active, definition)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name, is_active = EXCLUDED.is_active,
                definition = EXCLUDED.definition
            """,
            workflow.id,
            workflow.name,
            workflow.is_active,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow(
            "SELECT definition FROM workflows WHERE id = $1", workflow_id
        )
        if not row:
            return None
        workflow = Workflow.model_validate(_loads(row["definition"]))
        workflow.steps = workflow.ordered_steps()
        return workflow

    async def list_workflows(self) -> list[Workflow]:
        rows = await self._fetch("SELECT definition FROM workflows ORDER BY id")
        return [Workflow.model_validate(_loads(r["definition"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_execution(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        triggered_by: Optional[str] = None,
        trigger_data: Optional[dict] = None,
    ) -> str:
        execution_id = str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO workflow_executions
                (id, workflow_id, status, started_at, triggered_by, trigger_data, step_results)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb)
            """,
            execution_id,
            workflow_id,
            ExecutionStatus(status).value,
            started_at,
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
                "status": (ExecutionStatus(status).value if status else None, ""),
                "finished_at": (finished_at, ""),
                "error": (error, ""),
                "step_results": (
                    json.dumps(step_results) if step_results is not None else None,
                    "::jsonb",
                ),
            },
            ExecutionStatus(only_if_status).value if only_if_status else None,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._fetchrow(
            "SELECT * FROM workflow_executions WHERE id = $1", execution_id
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
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(
            f"SELECT * FROM workflow_executions{where} ORDER BY seq", *params
        )
        return [self._execution_from_row(r) for r in rows]

    # ------------------------------------------------------------------
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
        await self._execute(
            """
            INSERT INTO step_executions
                (id, execution_id, step_id, status, started_at, max_attempts, attempt_number, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            step_execution_id,
            execution_id,
            step_id,
            ExecutionStatus(status).value,
            started_at,
            max_attempts,
            attempt_number,
            utcnow(),
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
                "attempt_number": (attempt_number, ""),
                "status": (ExecutionStatus(status).value if status else None, ""),
                "finished_at": (finished_at, ""),
                "output": (json.dumps(output) if output is not None else None, "::jsonb"),
                "logs": (logs, ""),
                "error": (error, ""),
            },
        )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        rows = await self._fetch(
            "SELECT * FROM step_executions WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )
        return [self._step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: Trigger) -> str:
        await self._execute(
            """
            INSERT INTO triggers (id, workflow_id, type, config, name, is_active, created_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7)
            """,
            trigger.id,
            trigger.workflow_id,
            trigger.type.value,
            json.dumps(trigger.config),
            trigger.name,
            trigger.is_active,
            trigger.created_at,
        )
        return trigger.id

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        row = await self._fetchrow("SELECT * FROM triggers WHERE id = $1", trigger_id)
        return self._trigger_from_row(row) if row else None

    async def list_triggers(self, active_only: bool = False) -> list[Trigger]:
        query = "SELECT * FROM triggers"
        if active_only:
            query += " WHERE is_active"
        rows = await self._fetch(query + " ORDER BY seq")
        return [self._trigger_from_row(r) for r in rows]

    async def delete_trigger(self, trigger_id: str) -> None:
        await self._execute("DELETE FROM triggers WHERE id = $1", trigger_id)
