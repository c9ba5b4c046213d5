"""Exception hierarchy for stepwise."""

from __future__ import annotations


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class SetupError(StepwiseError):
    """Raised synchronously before any run record is created."""


class WorkflowNotFound(SetupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowInactive(SetupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow is not active: {workflow_id}")
        self.workflow_id = workflow_id


class UnsupportedStepType(SetupError):
    def __init__(self, step_type: str) -> None:
        super().__init__(f"Unsupported step type: {step_type}")
        self.step_type = step_type


class InvalidStepConfig(SetupError):
    """A step's ``config`` payload does not match the schema for its type."""


class InvalidWorkflow(SetupError):
    """Workflow definition violates step ordering or identity rules."""


class InvalidTriggerConfig(SetupError):
    """Trigger configuration rejected at registration time."""


class StepProcessorError(StepwiseError):
    """Failure inside a step processor; retried by the engine."""


class StepTimeoutError(StepProcessorError):
    def __init__(self, step_id: str, timeout_ms: int) -> None:
        super().__init__(f"Step {step_id} timed out after {timeout_ms}ms")
        self.step_id = step_id
        self.timeout_ms = timeout_ms


class ExecutionNotFound(StepwiseError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class TriggerNotFound(StepwiseError):
    def __init__(self, trigger_id: str) -> None:
        super().__init__(f"Trigger not found: {trigger_id}")
        self.trigger_id = trigger_id
