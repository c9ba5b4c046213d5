"""Step processors: the effect of each step type."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .conditions import evaluate_conditions, get_value_by_path
from .contracts import (
    ConditionalConfig,
    CustomConfig,
    DelayConfig,
    EmailConfig,
    ExecutionResult,
    HttpRequestConfig,
    StepSettings,
    StepType,
    TransformConfig,
    WorkflowContext,
)
from .errors import StepProcessorError, UnsupportedStepType
from .utils.retry import Sleep

logger = logging.getLogger(__name__)

StepProcessor = Callable[[StepSettings, WorkflowContext], Awaitable[ExecutionResult]]
Mailer = Callable[[EmailConfig], Awaitable[None]]


class HttpRequestProcessor:
    """Issue an HTTP request and report status plus parsed JSON body.

    HTTP error statuses are not failures: the result carries ``status`` and
    ``data`` and ``success`` mirrors ``response.is_success``. Transport
    errors and non-JSON bodies raise ``StepProcessorError``.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def __call__(
        self, config: HttpRequestConfig, context: WorkflowContext
    ) -> ExecutionResult:
        headers = {"Content-Type": "application/json", **config.headers}
        content = json.dumps(config.body) if config.body is not None else None

        try:
            if self._client is not None:
                response = await self._client.request(
                    config.method, config.url, headers=headers, content=content
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(
                        config.method, config.url, headers=headers, content=content
                    )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StepProcessorError(f"API call failed: {e}") from e

        return ExecutionResult(
            success=response.is_success,
            result={"status": response.status_code, "data": data},
            logs=[
                f"API call to {config.url} completed with status {response.status_code}"
            ],
        )


class DelayProcessor:
    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep

    async def __call__(
        self, config: DelayConfig, context: WorkflowContext
    ) -> ExecutionResult:
        await self._sleep(config.duration / 1000)
        return ExecutionResult(
            success=True,
            result={"delayed": config.duration},
            logs=[f"Delayed execution for {config.duration}ms"],
        )


def apply_mapping(data: Any, mapping: Dict[str, str]) -> Dict[str, Any]:
    return {key: get_value_by_path(data, path) for key, path in mapping.items()}


async def transform_processor(
    config: TransformConfig, context: WorkflowContext
) -> ExecutionResult:
    data = context.step_results.get(config.source) or {}

    for transform in config.transformations:
        if transform.type == "map" and transform.mapping:
            data = apply_mapping(data, transform.mapping)

    return ExecutionResult(
        success=True,
        result=data,
        logs=[f"Transformed data from step {config.source}"],
    )


class EmailProcessor:
    """Hand the message to ``mailer`` when one is configured, then acknowledge."""

    def __init__(self, mailer: Optional[Mailer] = None) -> None:
        self._mailer = mailer

    async def __call__(
        self, config: EmailConfig, context: WorkflowContext
    ) -> ExecutionResult:
        if self._mailer is not None:
            await self._mailer(config)
        logger.info(f"Email step executed to={config.to} subject={config.subject}")
        return ExecutionResult(
            success=True,
            result={"sent": True, "to": config.to, "subject": config.subject},
            logs=[f"Email sent to {config.to}"],
        )


async def conditional_processor(
    config: ConditionalConfig, context: WorkflowContext
) -> ExecutionResult:
    outcome = evaluate_conditions(config.condition, context)
    return ExecutionResult(
        success=True,
        result={"condition": outcome, "executed": "true" if outcome else "false"},
        logs=[f"Condition evaluated to {str(outcome).lower()}"],
    )


async def custom_processor(
    config: CustomConfig, context: WorkflowContext
) -> ExecutionResult:
    logger.info(f"Custom step executed for execution_id={context.execution_id}")
    return ExecutionResult(
        success=True,
        result={"executed": True, "inputs": config.inputs},
        logs=["Custom step executed"],
    )


class ProcessorRegistry:
    """Lookup table from step type to processor."""

    def __init__(self, processors: Optional[Dict[StepType, StepProcessor]] = None) -> None:
        self._processors: Dict[StepType, StepProcessor] = dict(processors or {})

    @classmethod
    def default(
        cls,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        mailer: Optional[Mailer] = None,
    ) -> "ProcessorRegistry":
        """Registry populated with the built-in processors."""
        http = HttpRequestProcessor(http_client)
        return cls(
            {
                StepType.API_CALL: http,
                StepType.WEBHOOK: http,
                StepType.DELAY: DelayProcessor(sleep),
                StepType.TRANSFORM: transform_processor,
                StepType.EMAIL: EmailProcessor(mailer),
                StepType.CONDITIONAL: conditional_processor,
                StepType.CUSTOM: custom_processor,
            }
        )

    def register(self, step_type: StepType, processor: StepProcessor) -> None:
        self._processors[StepType(step_type)] = processor

    def supports(self, step_type: StepType) -> bool:
        return step_type in self._processors

    def get(self, step_type: StepType) -> StepProcessor:
        try:
            return self._processors[step_type]
        except KeyError:
            raise UnsupportedStepType(getattr(step_type, "value", str(step_type)))

    async def run(
        self, step_type: StepType, settings: StepSettings, context: WorkflowContext
    ) -> ExecutionResult:
        return await self.get(step_type)(settings, context)
