"""Trigger manager: starts workflow runs from schedules, webhooks and events."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, Field, ValidationError

from .conditions import evaluate_event_conditions
from .config import StepwiseConfig, load_config
from .constants import DEFAULT_SIGNATURE_HEADER
from .contracts import (
    Condition,
    EventTriggerConfig,
    ScheduleTriggerConfig,
    TriggerType,
    WebhookAuth,
    WebhookPayload,
    WebhookResult,
    WebhookTriggerConfig,
)
from .engine import Clock, WorkflowEngine
from .errors import InvalidTriggerConfig, TriggerNotFound, WorkflowNotFound
from .persistence import WorkflowRepository
from .persistence.models import Trigger, utcnow
from .utils.retry import Sleep

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseModel)


class ScheduledJob(BaseModel):
    trigger_id: str
    workflow_id: str
    cron_expression: str
    timezone: str
    next_run: datetime


class WebhookRegistration(BaseModel):
    trigger_id: str
    workflow_id: str
    endpoint: str
    method: str
    authentication: Optional[WebhookAuth] = None


class EventRegistration(BaseModel):
    trigger_id: str
    workflow_id: str
    event_type: str
    conditions: List[Condition] = Field(default_factory=list)


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTriggerConfig(f"Unknown timezone: {name}") from e


def _body_bytes(body: Any) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode()
    return json.dumps(body, separators=(",", ":")).encode()


def _secure_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


class TriggerManager:
    """Translates external signals into ``execute_workflow`` calls.

    Registrations live in memory; the repository keeps the durable copy so
    ``initialize`` can restore them after a restart. Failures while firing a
    trigger are logged and never propagate to the caller.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        repository: WorkflowRepository | None = None,
        *,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = 1.0,
        signature_header: str = DEFAULT_SIGNATURE_HEADER,
    ) -> None:
        self._engine = engine
        self._repository = repository or engine.repository
        self._clock = clock
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._signature_header = signature_header.lower()
        self._scheduled_jobs: Dict[str, ScheduledJob] = {}
        self._webhook_endpoints: Dict[str, WebhookRegistration] = {}
        self._event_listeners: Dict[str, EventRegistration] = {}
        self._scheduler_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, engine: WorkflowEngine, config: Optional[StepwiseConfig] = None
    ) -> "TriggerManager":
        config = config or load_config()
        return cls(
            engine,
            poll_interval=config.triggers.poll_interval,
            signature_header=config.triggers.signature_header,
        )

    # ------------------------------------------------------------------
    # Startup / shutdown

    async def initialize(self, start_scheduler: bool = True) -> int:
        """Register every active stored trigger; returns how many succeeded."""
        logger.info("Initializing trigger system")
        initialized = 0
        for trigger in await self._repository.list_triggers(active_only=True):
            try:
                await self.initialize_trigger(trigger)
                initialized += 1
            except InvalidTriggerConfig as e:
                logger.error(f"Skipping invalid stored trigger trigger_id={trigger.id}: {e}")
        logger.info(f"Initialized {initialized} triggers")
        if start_scheduler:
            self.start()
        return initialized

    def start(self) -> None:
        """Launch the background loop that fires due schedules."""
        if self._scheduler_task is None or self._scheduler_task.done():
            self._scheduler_task = asyncio.create_task(
                self._scheduler_loop(), name="stepwise-scheduler"
            )

    async def _scheduler_loop(self) -> None:
        while True:
            try:
                await self.run_due_schedules()
            except Exception:
                logger.exception("Schedule tick failed")
            await self._sleep(self._poll_interval)

    async def shutdown(self) -> None:
        logger.info("Shutting down trigger system")
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None

        for trigger_id in list(self._scheduled_jobs):
            await self.stop_scheduled_trigger(trigger_id)
        self._webhook_endpoints.clear()
        self._event_listeners.clear()
        logger.info("Trigger system shut down")

    # ------------------------------------------------------------------
    # Registration

    async def create_trigger(
        self,
        workflow_id: str,
        type: Union[TriggerType, str],
        config: Dict[str, Any],
        name: Optional[str] = None,
    ) -> str:
        """Validate, persist and activate a new trigger."""
        trigger_type = TriggerType(type)
        logger.info(f"Creating trigger workflow_id={workflow_id} type={trigger_type.value}")

        if await self._repository.get_workflow(workflow_id) is None:
            raise WorkflowNotFound(workflow_id)

        trigger = Trigger(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            type=trigger_type,
            config=dict(config),
            name=name or f"{trigger_type.value} trigger",
            is_active=True,
            created_at=self._clock(),
        )
        await self.initialize_trigger(trigger)
        try:
            await self._repository.create_trigger(trigger)
        except Exception:
            await self._unregister(trigger)
            raise

        logger.info(f"Trigger created and initialized trigger_id={trigger.id}")
        return trigger.id

    async def delete_trigger(self, trigger_id: str) -> None:
        trigger = await self._repository.get_trigger(trigger_id)
        if trigger is None:
            raise TriggerNotFound(trigger_id)
        await self._unregister(trigger)
        await self._repository.delete_trigger(trigger_id)
        logger.info(f"Trigger deleted trigger_id={trigger_id}")

    async def initialize_trigger(self, trigger: Trigger) -> None:
        """Activate ``trigger``; invalid configuration raises immediately."""
        logger.info(
            f"Initializing trigger trigger_id={trigger.id} type={trigger.type.value} "
            f"workflow_id={trigger.workflow_id}"
        )
        if trigger.type == TriggerType.SCHEDULE:
            self._initialize_scheduled_trigger(trigger)
        elif trigger.type == TriggerType.WEBHOOK:
            self._initialize_webhook_trigger(trigger)
        elif trigger.type == TriggerType.EVENT:
            self._initialize_event_trigger(trigger)

    @staticmethod
    def _parse(model: Type[ConfigT], trigger: Trigger) -> ConfigT:
        try:
            return model.model_validate(trigger.config)
        except ValidationError as e:
            raise InvalidTriggerConfig(
                f"Invalid {trigger.type.value} trigger config: {e}"
            ) from e

    def _initialize_scheduled_trigger(self, trigger: Trigger) -> None:
        config = self._parse(ScheduleTriggerConfig, trigger)
        if not croniter.is_valid(config.cron_expression):
            raise InvalidTriggerConfig(f"Invalid cron expression: {config.cron_expression}")
        tz = resolve_timezone(config.timezone)

        self._scheduled_jobs[trigger.id] = ScheduledJob(
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            cron_expression=config.cron_expression,
            timezone=config.timezone,
            next_run=croniter(config.cron_expression, self._clock().astimezone(tz)).get_next(
                datetime
            ),
        )
        logger.info(
            f"Scheduled trigger initialized trigger_id={trigger.id} "
            f"cron={config.cron_expression} timezone={config.timezone}"
        )

    def _initialize_webhook_trigger(self, trigger: Trigger) -> None:
        config = self._parse(WebhookTriggerConfig, trigger)
        if not config.endpoint:
            raise InvalidTriggerConfig("Endpoint is required for webhook trigger")
        auth = config.authentication
        if auth and auth.type != "none" and not auth.secret:
            raise InvalidTriggerConfig(f"Webhook {auth.type} authentication requires a secret")

        existing = self._webhook_endpoints.get(config.endpoint)
        if existing and existing.trigger_id != trigger.id:
            raise InvalidTriggerConfig(f"Endpoint already registered: {config.endpoint}")

        self._webhook_endpoints[config.endpoint] = WebhookRegistration(
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            endpoint=config.endpoint,
            method=config.method.upper(),
            authentication=auth,
        )
        logger.info(
            f"Webhook trigger initialized trigger_id={trigger.id} "
            f"endpoint={config.endpoint} method={config.method}"
        )

    def _initialize_event_trigger(self, trigger: Trigger) -> None:
        config = self._parse(EventTriggerConfig, trigger)
        if not config.event_type:
            raise InvalidTriggerConfig("Event type is required for event trigger")

        self._event_listeners[trigger.id] = EventRegistration(
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            event_type=config.event_type,
            conditions=config.conditions,
        )
        logger.info(
            f"Event trigger initialized trigger_id={trigger.id} event_type={config.event_type}"
        )

    async def _unregister(self, trigger: Trigger) -> None:
        if trigger.type == TriggerType.SCHEDULE:
            await self.stop_scheduled_trigger(trigger.id)
        elif trigger.type == TriggerType.WEBHOOK:
            await self.remove_webhook_trigger(trigger.id, trigger.config.get("endpoint", ""))
        elif trigger.type == TriggerType.EVENT:
            self._event_listeners.pop(trigger.id, None)

    async def stop_scheduled_trigger(self, trigger_id: str) -> None:
        if self._scheduled_jobs.pop(trigger_id, None) is not None:
            logger.info(f"Stopped scheduled trigger trigger_id={trigger_id}")

    async def remove_webhook_trigger(self, trigger_id: str, endpoint: str) -> None:
        registration = self._webhook_endpoints.get(endpoint)
        if registration is not None and registration.trigger_id == trigger_id:
            del self._webhook_endpoints[endpoint]
            logger.info(f"Removed webhook trigger trigger_id={trigger_id} endpoint={endpoint}")

    def get_webhook_endpoints(self) -> Dict[str, str]:
        """Endpoint path to workflow id, for routing in the HTTP layer."""
        return {e: r.workflow_id for e, r in self._webhook_endpoints.items()}

    def get_scheduled_jobs(self) -> List[ScheduledJob]:
        return [job.model_copy() for job in self._scheduled_jobs.values()]

    # ------------------------------------------------------------------
    # Schedules

    async def run_due_schedules(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every schedule whose next run time has passed.

        Each due schedule fires once per call even if several ticks were
        missed; the next run time is then moved past ``now``.
        """
        now = now or self._clock()
        execution_ids: List[str] = []
        for job in list(self._scheduled_jobs.values()):
            if job.next_run > now:
                continue
            tz = resolve_timezone(job.timezone)
            job.next_run = croniter(job.cron_expression, now.astimezone(tz)).get_next(datetime)
            execution_id = await self._fire_schedule(job, now)
            if execution_id is not None:
                execution_ids.append(execution_id)
        return execution_ids

    async def _fire_schedule(self, job: ScheduledJob, now: datetime) -> Optional[str]:
        logger.info(
            f"Executing scheduled trigger trigger_id={job.trigger_id} workflow_id={job.workflow_id}"
        )
        try:
            return await self._engine.execute_workflow(
                job.workflow_id,
                {
                    "trigger": "schedule",
                    "trigger_id": job.trigger_id,
                    "timestamp": now.isoformat(),
                },
                "schedule",
            )
        except Exception as e:
            logger.error(f"Scheduled trigger execution failed trigger_id={job.trigger_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Webhooks

    async def handle_webhook_trigger(
        self, endpoint: str, payload: Union[WebhookPayload, Dict[str, Any]]
    ) -> WebhookResult:
        """Run the workflow bound to ``endpoint``; errors come back in the result."""
        try:
            if not isinstance(payload, WebhookPayload):
                payload = WebhookPayload.model_validate(payload)
            logger.info(f"Webhook trigger received endpoint={endpoint} method={payload.method}")

            registration = self._webhook_endpoints.get(endpoint)
            if registration is None:
                return WebhookResult(success=False, error="Webhook endpoint not found")

            if registration.authentication and not self._validate_webhook_auth(
                payload, registration.authentication
            ):
                logger.warning(f"Webhook authentication failed endpoint={endpoint}")
                return WebhookResult(success=False, error="Webhook authentication failed")

            execution_id = await self._engine.execute_workflow(
                registration.workflow_id,
                {
                    "trigger": "webhook",
                    "trigger_id": registration.trigger_id,
                    "endpoint": endpoint,
                    "payload": payload.body,
                    "headers": payload.headers,
                    "query": payload.query,
                    "method": payload.method,
                },
                "webhook",
            )
            logger.info(
                f"Webhook trigger executed workflow endpoint={endpoint} "
                f"workflow_id={registration.workflow_id} execution_id={execution_id}"
            )
            return WebhookResult(success=True, execution_id=execution_id)
        except Exception as e:
            logger.error(f"Webhook trigger failed endpoint={endpoint}: {e}")
            return WebhookResult(success=False, error=str(e) or "Unknown error")

    def _validate_webhook_auth(self, payload: WebhookPayload, auth: WebhookAuth) -> bool:
        headers = {k.lower(): v for k, v in payload.headers.items()}

        if auth.type == "bearer":
            header = (auth.header_name or "Authorization").lower()
            return _secure_equals(headers.get(header, ""), f"Bearer {auth.secret}")

        if auth.type == "api_key":
            header = (auth.header_name or "Authorization").lower()
            return _secure_equals(headers.get(header, ""), auth.secret or "")

        if auth.type == "signature":
            header = (auth.header_name or self._signature_header).lower()
            provided = headers.get(header, "")
            if provided.startswith("sha256="):
                provided = provided[len("sha256="):]
            signed = (
                payload.raw_body
                if payload.raw_body is not None
                else _body_bytes(payload.body)
            )
            expected = hmac.new(
                (auth.secret or "").encode(), signed, hashlib.sha256
            ).hexdigest()
            return _secure_equals(provided, expected)

        return True

    # ------------------------------------------------------------------
    # Events

    async def handle_event_trigger(
        self,
        event_type: str,
        event_data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> List[str]:
        """Start a run for every event trigger matching ``event_type``."""
        logger.info(f"Event trigger received event_type={event_type} source={source}")
        execution_ids: List[str] = []

        for registration in list(self._event_listeners.values()):
            if registration.event_type != event_type:
                continue
            try:
                if not evaluate_event_conditions(registration.conditions, event_data):
                    continue
                execution_id = await self._engine.execute_workflow(
                    registration.workflow_id,
                    {
                        "trigger": "event",
                        "event_type": event_type,
                        "event_data": event_data,
                        "source": source,
                        "trigger_id": registration.trigger_id,
                    },
                    "event",
                )
                execution_ids.append(execution_id)
                logger.info(
                    f"Event trigger executed workflow event_type={event_type} "
                    f"workflow_id={registration.workflow_id} execution_id={execution_id}"
                )
            except Exception as e:
                logger.error(
                    f"Event trigger execution failed event_type={event_type} "
                    f"workflow_id={registration.workflow_id}: {e}"
                )

        return execution_ids
