"""Data models for persisted execution and trigger state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import ExecutionStatus, TriggerType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowExecution(BaseModel):
    """One run of a workflow."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    triggered_by: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class StepExecution(BaseModel):
    """Attempt series of one step within one run."""

    id: str
    execution_id: str
    step_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    max_attempts: int = 3
    attempt_number: int = 1
    output: Optional[Any] = None
    logs: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Trigger(BaseModel):
    """Rule that starts a run on a schedule, webhook call, or named event."""

    id: str
    workflow_id: str
    type: TriggerType
    config: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
