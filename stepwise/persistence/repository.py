"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..contracts import ExecutionStatus, Workflow
from .models import StepExecution, Trigger, WorkflowExecution


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every method is a single independent write or read; callers must not
    assume that two updates are applied atomically together. ``None``
    arguments to the ``update_*`` methods leave the stored value unchanged.
    """

    # Workflow definitions
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition with its steps."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow with its steps in ascending order."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflows."""

    # Runs
    async def create_execution(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        triggered_by: Optional[str] = None,
        trigger_data: Optional[dict] = None,
    ) -> str:
        """Persist a new run with empty step results and return its id."""

    async def update_execution(
        self,
        execution_id: str,
        status: Optional[ExecutionStatus] = None,
        finished_at: Optional[datetime] = None,
        error: Optional[str] = None,
        step_results: Optional[dict] = None,
        only_if_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        """Update fields of a run; returns whether a record was written.

        With ``only_if_status`` the write is a single compare-and-set: it
        applies only while the stored status still equals that value.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Find a run by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        """Return runs, optionally filtered, oldest first."""

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
        """Persist a step execution record and return its id."""

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
        """Update fields of a step execution."""

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        """Return the step executions of a run in creation order."""

    # Triggers
    async def create_trigger(self, trigger: Trigger) -> str:
        """Persist a trigger and return its id."""

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        """Find a trigger by id."""

    async def list_triggers(self, active_only: bool = False) -> list[Trigger]:
        """Return stored triggers."""

    async def delete_trigger(self, trigger_id: str) -> None:
        """Remove a trigger."""
