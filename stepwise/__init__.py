"""stepwise: durable, retryable, step-based workflow execution."""

from .contracts import (
    Condition,
    ExecutionResult,
    ExecutionStatus,
    Step,
    StepType,
    TriggerType,
    WebhookPayload,
    WebhookResult,
    Workflow,
    WorkflowContext,
)
from .engine import WorkflowEngine
from .persistence import get_repository
from .processors import ProcessorRegistry
from .triggers import TriggerManager

__version__ = "0.1.0"
__all__ = [
    "Condition",
    "ExecutionResult",
    "ExecutionStatus",
    "ProcessorRegistry",
    "Step",
    "StepType",
    "TriggerManager",
    "TriggerType",
    "WebhookPayload",
    "WebhookResult",
    "Workflow",
    "WorkflowContext",
    "WorkflowEngine",
    "get_repository",
]
