"""Core contracts for the stepwise workflow engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    model_validator,
)

from .constants import (
    DEFAULT_DELAY_MS,
    DEFAULT_HTTP_METHOD,
    DEFAULT_TIMEZONE,
    DEFAULT_WEBHOOK_METHOD,
)
from .errors import InvalidStepConfig, InvalidWorkflow


class StepType(str, Enum):
    API_CALL = "API_CALL"
    DELAY = "DELAY"
    TRANSFORM = "TRANSFORM"
    WEBHOOK = "WEBHOOK"
    EMAIL = "EMAIL"
    CONDITIONAL = "CONDITIONAL"
    CUSTOM = "CUSTOM"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCESS,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class TriggerType(str, Enum):
    SCHEDULE = "SCHEDULE"
    WEBHOOK = "WEBHOOK"
    EVENT = "EVENT"


class Condition(BaseModel):
    """A ``{field, operator, value}`` triple."""

    field: str
    operator: str
    value: Any = None


# ----------------------------------------------------------------------
# Step configuration payloads, one per step type


class HttpRequestConfig(BaseModel):
    """Settings shared by ``API_CALL`` and ``WEBHOOK`` steps."""

    url: str
    method: str = DEFAULT_HTTP_METHOD
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None


class DelayConfig(BaseModel):
    duration: Union[int, float] = Field(default=DEFAULT_DELAY_MS, ge=0)


class MapTransform(BaseModel):
    """Reshape data by copying values from dotted source paths to new keys."""

    type: Literal["map"]
    mapping: Optional[Dict[str, str]] = None


class TransformConfig(BaseModel):
    source: str
    transformations: List[MapTransform] = Field(default_factory=list)


class EmailConfig(BaseModel):
    to: str
    subject: Optional[str] = None
    body: Optional[str] = None


class ConditionalConfig(BaseModel):
    condition: Optional[Condition] = None


class CustomConfig(BaseModel):
    inputs: Optional[Dict[str, Any]] = None


StepSettings = Union[
    HttpRequestConfig,
    DelayConfig,
    TransformConfig,
    EmailConfig,
    ConditionalConfig,
    CustomConfig,
]

STEP_CONFIG_MODELS: Dict[StepType, Type[BaseModel]] = {
    StepType.API_CALL: HttpRequestConfig,
    StepType.WEBHOOK: HttpRequestConfig,
    StepType.DELAY: DelayConfig,
    StepType.TRANSFORM: TransformConfig,
    StepType.EMAIL: EmailConfig,
    StepType.CONDITIONAL: ConditionalConfig,
    StepType.CUSTOM: CustomConfig,
}


def parse_step_config(step_type: StepType, config: Dict[str, Any]) -> StepSettings:
    """Decode a raw ``config`` map into the typed settings for ``step_type``."""
    model = STEP_CONFIG_MODELS[step_type]
    try:
        return model.model_validate(config)
    except ValidationError as e:
        raise InvalidStepConfig(f"Invalid {step_type.value} step config: {e}") from e


# ----------------------------------------------------------------------
# Workflow definitions


class Step(BaseModel):
    """One unit of work within a workflow."""

    id: str
    name: str
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    order: int
    retries: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[int] = Field(default=None, ge=1, description="Milliseconds")
    conditions: Optional[Condition] = None

    _settings: Optional[StepSettings] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _decode_settings(self) -> "Step":
        self._settings = parse_step_config(self.type, self.config)
        return self

    @property
    def settings(self) -> StepSettings:
        """Typed configuration decoded from ``config``."""
        return self._settings


class Workflow(BaseModel):
    """A named, ordered list of steps."""

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    steps: List[Step] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_steps(self) -> "Workflow":
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise InvalidWorkflow(f"Duplicate step ids in workflow {self.id}")
        orders = sorted(s.order for s in self.steps)
        if orders and orders != list(range(orders[0], orders[0] + len(orders))):
            raise InvalidWorkflow(
                f"Step order values must be unique and contiguous in workflow {self.id}"
            )
        return self

    def ordered_steps(self) -> List[Step]:
        return sorted(self.steps, key=lambda s: s.order)


# ----------------------------------------------------------------------
# Runtime values


class WorkflowContext(BaseModel):
    """Run-scoped state shared by every step of one execution."""

    execution_id: str
    workflow_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Outcome returned by a step processor."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Trigger configuration


class ScheduleTriggerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cron_expression: str = Field(alias="cronExpression")
    timezone: str = DEFAULT_TIMEZONE


class WebhookAuth(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["bearer", "api_key", "signature", "none"] = "none"
    secret: Optional[str] = None
    header_name: Optional[str] = Field(default=None, alias="headerName")


class WebhookTriggerConfig(BaseModel):
    endpoint: str
    method: str = DEFAULT_WEBHOOK_METHOD
    authentication: Optional[WebhookAuth] = None


class EventTriggerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="eventType")
    conditions: List[Condition] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Request data handed over by the HTTP layer."""

    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    query: Dict[str, str] = Field(default_factory=dict)
    method: str = DEFAULT_WEBHOOK_METHOD
    # exact request bytes, used for signature checks when the caller has them
    raw_body: Optional[bytes] = None


class WebhookResult(BaseModel):
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None
