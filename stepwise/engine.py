"""Workflow execution engine: runs steps with retries, backoff and cancellation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .conditions import evaluate_conditions
from .config import StepwiseConfig, load_config
from .constants import (
    CANCELLED_REASON,
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    INTERRUPTED_REASON,
    SKIPPED_LOG,
)
from .contracts import ExecutionResult, ExecutionStatus, Step, Workflow, WorkflowContext
from .errors import (
    ExecutionNotFound,
    StepTimeoutError,
    UnsupportedStepType,
    WorkflowInactive,
    WorkflowNotFound,
)
from .persistence import WorkflowRepository, get_repository
from .persistence.models import WorkflowExecution, utcnow
from .processors import ProcessorRegistry
from .utils.retry import Sleep, schedule_retry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class WorkflowEngine:
    """Executes workflows step by step against a repository.

    ``execute_workflow`` validates the workflow, records a RUNNING execution
    and returns its id straight away; the steps run in a background task.
    Steps of one execution run strictly in order. Separate executions run
    concurrently, optionally capped by ``max_concurrent_runs``.

    Cancellation is cooperative: the engine checks the stored status before
    the first step and after every step, never in the middle of one.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        processors: ProcessorRegistry | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utcnow,
        max_concurrent_runs: Optional[int] = None,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._repository = repository or get_repository()
        self._processors = processors or ProcessorRegistry.default(sleep=sleep)
        self._sleep = sleep
        self._clock = clock
        self._backoff_base_ms = backoff_base_ms
        self._default_max_attempts = default_max_attempts
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_runs) if max_concurrent_runs else None
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        config: Optional[StepwiseConfig] = None,
        repository: WorkflowRepository | None = None,
        processors: ProcessorRegistry | None = None,
    ) -> "WorkflowEngine":
        config = config or load_config()
        return cls(
            repository or get_repository(config=config),
            processors,
            max_concurrent_runs=config.engine.max_concurrent_runs,
            backoff_base_ms=config.engine.backoff_base_ms,
            default_max_attempts=config.engine.default_max_attempts,
        )

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    @property
    def processors(self) -> ProcessorRegistry:
        return self._processors

    @property
    def running_executions(self) -> List[str]:
        return list(self._tasks)

    # ------------------------------------------------------------------
    # Run lifecycle

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> str:
        """Start a run of ``workflow_id`` and return its execution id.

        Raises:
            WorkflowNotFound: No workflow with that id exists.
            WorkflowInactive: The workflow is switched off.
            UnsupportedStepType: A step has no registered processor.
        """
        logger.info(
            f"Starting workflow execution workflow_id={workflow_id} triggered_by={triggered_by}"
        )

        try:
            workflow = await self._repository.get_workflow(workflow_id)
            if workflow is None:
                raise WorkflowNotFound(workflow_id)
            if not workflow.is_active:
                raise WorkflowInactive(workflow_id)
            for step in workflow.steps:
                if not self._processors.supports(step.type):
                    raise UnsupportedStepType(step.type.value)

            execution_id = await self._repository.create_execution(
                workflow_id,
                ExecutionStatus.RUNNING,
                self._clock(),
                triggered_by=triggered_by,
                trigger_data=trigger_data or {},
            )
        except Exception as e:
            logger.error(
                f"Failed to start workflow execution workflow_id={workflow_id}: {e}"
            )
            raise

        task = asyncio.create_task(
            self._run_workflow_execution(execution_id, workflow, trigger_data or {}),
            name=f"workflow-execution-{execution_id}",
        )
        self._tasks[execution_id] = task
        task.add_done_callback(partial(self._forget_task, execution_id))
        return execution_id

    def _forget_task(self, execution_id: str, _task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)

    async def _run_workflow_execution(
        self, execution_id: str, workflow: Workflow, trigger_data: Dict[str, Any]
    ) -> None:
        try:
            if self._semaphore is None:
                await self._run_steps(execution_id, workflow, trigger_data)
            else:
                async with self._semaphore:
                    await self._run_steps(execution_id, workflow, trigger_data)
        except Exception:
            logger.exception(f"Workflow execution failed execution_id={execution_id}")

    async def _run_steps(
        self, execution_id: str, workflow: Workflow, trigger_data: Dict[str, Any]
    ) -> None:
        context = WorkflowContext(
            execution_id=execution_id,
            workflow_id=workflow.id,
            variables=dict(trigger_data),
        )
        steps = workflow.ordered_steps()
        logger.info(
            f"Running workflow execution execution_id={execution_id} step_count={len(steps)}"
        )

        try:
            if await self._is_cancelled(execution_id):
                logger.info(f"Workflow execution cancelled execution_id={execution_id}")
                return

            for step in steps:
                await self._execute_step(context, step)

                if await self._is_cancelled(execution_id):
                    logger.info(
                        f"Workflow execution cancelled execution_id={execution_id}"
                    )
                    return

            completed = await self._repository.update_execution(
                execution_id,
                status=ExecutionStatus.SUCCESS,
                finished_at=self._clock(),
                step_results=context.step_results,
                only_if_status=ExecutionStatus.RUNNING,
            )
            if not completed:
                logger.info(
                    f"Workflow execution finished after it was cancelled; "
                    f"execution_id={execution_id} stays CANCELLED"
                )
                return
            logger.info(
                f"Workflow execution completed successfully execution_id={execution_id}"
            )
        except Exception as e:
            failed = await self._repository.update_execution(
                execution_id,
                status=ExecutionStatus.FAILED,
                finished_at=self._clock(),
                error=str(e),
                step_results=context.step_results,
                only_if_status=ExecutionStatus.RUNNING,
            )
            if not failed:
                logger.info(
                    f"Step failed after cancellation was requested; "
                    f"execution_id={execution_id} stays CANCELLED: {e}"
                )
                return
            logger.error(f"Workflow execution failed execution_id={execution_id}: {e}")

    async def _is_cancelled(self, execution_id: str) -> bool:
        execution = await self._repository.get_execution(execution_id)
        return execution is not None and execution.status == ExecutionStatus.CANCELLED

    # ------------------------------------------------------------------
    # Steps

    async def _execute_step(
        self, context: WorkflowContext, step: Step
    ) -> ExecutionResult:
        """Run one step with retries; raises once attempts are exhausted."""
        step_id = step.id
        max_attempts = step.retries or self._default_max_attempts

        logger.info(
            f"Executing step step_id={step_id} type={step.type.value} "
            f"execution_id={context.execution_id}"
        )

        step_execution_id = await self._repository.create_step_execution(
            context.execution_id,
            step_id,
            ExecutionStatus.RUNNING,
            self._clock(),
            max_attempts,
            attempt_number=1,
        )

        for attempt in range(1, max_attempts + 1):
            try:
                await self._repository.update_step_execution(
                    step_execution_id, attempt_number=attempt
                )

                if step.conditions and not evaluate_conditions(step.conditions, context):
                    logger.info(f"Step skipped due to conditions step_id={step_id}")
                    await self._repository.update_step_execution(
                        step_execution_id,
                        status=ExecutionStatus.SUCCESS,
                        finished_at=self._clock(),
                        logs=SKIPPED_LOG,
                    )
                    return ExecutionResult(success=True, logs=[SKIPPED_LOG])

                result = await self._run_step_processor(step, context)

                await self._repository.update_step_execution(
                    step_execution_id,
                    status=ExecutionStatus.SUCCESS,
                    finished_at=self._clock(),
                    output=result.result if result.result is not None else {},
                    logs="\n".join(result.logs) or None,
                )
                context.step_results[step_id] = result.result

                logger.info(f"Step executed successfully step_id={step_id} attempt={attempt}")
                return result
            except Exception as e:
                logger.warning(
                    f"Step execution failed step_id={step_id} attempt={attempt}: {e}"
                )

                if attempt == max_attempts:
                    await self._repository.update_step_execution(
                        step_execution_id,
                        status=ExecutionStatus.FAILED,
                        finished_at=self._clock(),
                        error=str(e),
                        logs=f"Failed after {max_attempts} attempts",
                    )
                    raise

                await schedule_retry(attempt, self._backoff_base_ms, self._sleep)

        # only reachable when max_attempts < 1
        raise RuntimeError(f"Step {step_id} was not attempted")

    async def _run_step_processor(
        self, step: Step, context: WorkflowContext
    ) -> ExecutionResult:
        call = self._processors.run(step.type, step.settings, context)
        if step.timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, step.timeout / 1000)
        except asyncio.TimeoutError:
            raise StepTimeoutError(step.id, step.timeout)

    # ------------------------------------------------------------------
    # Control and inspection

    async def cancel_execution(
        self, execution_id: str, reason: Optional[str] = None
    ) -> bool:
        """Mark a run CANCELLED; the step in flight is allowed to finish.

        Returns ``False`` when the run had already reached a terminal state.
        """
        logger.info(f"Cancelling workflow execution execution_id={execution_id} reason={reason}")

        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        if execution.status.is_terminal:
            logger.info(
                f"Execution already finished execution_id={execution_id} "
                f"status={execution.status.value}"
            )
            return False

        cancelled = await self._repository.update_execution(
            execution_id,
            status=ExecutionStatus.CANCELLED,
            finished_at=self._clock(),
            error=reason or CANCELLED_REASON,
            only_if_status=execution.status,
        )
        if not cancelled:
            logger.info(
                f"Execution finished before it could be cancelled execution_id={execution_id}"
            )
        return cancelled

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def get_execution_logs(
        self, execution_id: str, step_id: Optional[str] = None
    ) -> List[Any]:
        """Return per-step logs of a run, or the log lines of one step."""
        step_executions = await self._repository.list_step_executions(execution_id)

        if step_id is not None:
            match = next((s for s in step_executions if s.step_id == step_id), None)
            return [match.logs] if match and match.logs else []

        return [
            {
                "step_id": s.step_id,
                "logs": s.logs,
                "status": s.status.value,
                "error": s.error,
            }
            for s in step_executions
        ]

    async def wait_for_execution(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> None:
        """Wait until the background task of ``execution_id`` finishes."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every run started by this engine."""
        tasks = set(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def reconcile_stale_executions(
        self, stale_after: Optional[float] = None
    ) -> List[str]:
        """Fail RUNNING runs that no live task owns.

        A crash between two independent writes can leave runs and steps in
        RUNNING forever; this sweep is meant to run at startup. With
        ``stale_after`` (seconds) only runs started before that age qualify.
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=stale_after) if stale_after else None
        reconciled: List[str] = []

        for execution in await self._repository.list_executions(
            status=ExecutionStatus.RUNNING
        ):
            if execution.id in self._tasks:
                continue
            if cutoff and execution.started_at and execution.started_at > cutoff:
                continue

            if not await self._repository.update_execution(
                execution.id,
                status=ExecutionStatus.FAILED,
                finished_at=now,
                error=INTERRUPTED_REASON,
                only_if_status=ExecutionStatus.RUNNING,
            ):
                continue
            for step in await self._repository.list_step_executions(execution.id):
                if not step.status.is_terminal:
                    await self._repository.update_step_execution(
                        step.id,
                        status=ExecutionStatus.FAILED,
                        finished_at=now,
                        error=INTERRUPTED_REASON,
                    )
            reconciled.append(execution.id)

        if reconciled:
            logger.warning(f"Marked {len(reconciled)} stale executions as FAILED")
        return reconciled
