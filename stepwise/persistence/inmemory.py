"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..contracts import ExecutionStatus, Workflow
from .models import StepExecution, Trigger, WorkflowExecution, utcnow
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._step_executions: Dict[str, StepExecution] = {}
        self._triggers: Dict[str, Trigger] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        copy = wf.model_copy(deep=True)
        copy.steps = copy.ordered_steps()
        return copy

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

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
        self._executions[execution_id] = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow_id,
            status=status,
            started_at=started_at,
            triggered_by=triggered_by,
            trigger_data=dict(trigger_data or {}),
            step_results={},
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
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        if only_if_status is not None and execution.status != only_if_status:
            return False
        if status is not None:
            execution.status = status
        if finished_at is not None:
            execution.finished_at = finished_at
        if error is not None:
            execution.error = error
        if step_results is not None:
            execution.step_results = dict(step_results)
        return True

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]

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
        self._step_executions[step_execution_id] = StepExecution(
            id=step_execution_id,
            execution_id=execution_id,
            step_id=step_id,
            status=status,
            started_at=started_at,
            max_attempts=max_attempts,
            attempt_number=attempt_number,
            created_at=utcnow(),
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
        step = self._step_executions.get(step_execution_id)
        if step is None:
            return
        if attempt_number is not None:
            step.attempt_number = attempt_number
        if status is not None:
            step.status = status
        if finished_at is not None:
            step.finished_at = finished_at
        if output is not None:
            step.output = output
        if logs is not None:
            step.logs = logs
        if error is not None:
            step.error = error

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        # dicts keep insertion order, which is creation order here
        return [
            s.model_copy(deep=True)
            for s in self._step_executions.values()
            if s.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: Trigger) -> str:
        self._triggers[trigger.id] = trigger.model_copy(deep=True)
        return trigger.id

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        trigger = self._triggers.get(trigger_id)
        return trigger.model_copy(deep=True) if trigger else None

    async def list_triggers(self, active_only: bool = False) -> list[Trigger]:
        triggers: List[Trigger] = [
            t.model_copy(deep=True) for t in self._triggers.values()
        ]
        if active_only:
            triggers = [t for t in triggers if t.is_active]
        return triggers

    async def delete_trigger(self, trigger_id: str) -> None:
        self._triggers.pop(trigger_id, None)
