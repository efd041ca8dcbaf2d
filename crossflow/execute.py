"""Workflow run execution for crossflow."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import timedelta
from typing import Any, List, Optional

from pydantic import BaseModel

from .actions import ActionInvoker, derived_event_id
from .config import RunnerConfig
from .contracts import EventEnvelope, OutboxRecord
from .errors import PermanentValidationError, TemplateError
from .persistence.repository import Repository
from .utils.clock import Clock, utcnow
from .utils.retry import RetryDecision, RetryManager
from .workflows.conditions import evaluate_conditions
from .workflows.definitions import WorkflowDefinitionStore
from .workflows.models import (
    RunStatus,
    RunStep,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
)
from .workflows.templates import build_context, idempotency_key

logger = logging.getLogger(__name__)

RUN_COMPLETED_EVENT = "workflow.run.completed"
RUN_FAILED_EVENT = "workflow.run.failed"
CANCELLED = "cancelled"


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return json.loads(json.dumps(value, default=str))


class WorkflowRunner:
    """Turns events into workflow runs and drives runs step by step.

    Registered with the event router as a consumer of every event type. The
    pair ``(definition, trigger event)`` maps to at most one run, so
    redelivering an event resumes the existing run instead of starting another.
    """

    name = "workflow-runner"

    def __init__(
        self,
        repository: Repository,
        invoker: Optional[ActionInvoker] = None,
        definitions: Optional[WorkflowDefinitionStore] = None,
        retry_manager: Optional[RetryManager] = None,
        config: Optional[RunnerConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.config = config or RunnerConfig()
        self.invoker = invoker or ActionInvoker(
            repository=repository, default_timeout=self.config.action_timeout
        )
        if self.invoker.repository is None:
            self.invoker.repository = repository
        self.definitions = definitions or WorkflowDefinitionStore(repository, clock=clock)
        self.retry_manager = retry_manager or RetryManager(clock=clock)
        self._clock = clock
        self._stopping = False

    async def __call__(self, envelope: EventEnvelope) -> None:
        await self.handle_event(envelope)

    def start(self) -> None:
        """Accept work again after :meth:`stop`."""
        self._stopping = False

    def stop(self) -> None:
        """Release held runs at the next step boundary instead of continuing."""
        self._stopping = True

    # ------------------------------------------------------------------
    async def handle_event(self, envelope: EventEnvelope) -> List[WorkflowRun]:
        """Start or resume the runs ``envelope`` triggers."""
        runs: List[WorkflowRun] = []
        for definition in await self.definitions.match(envelope):
            if not evaluate_conditions(definition.conditions, envelope.payload):
                logger.debug(
                    f"Skipping {definition.id} for event {envelope.id}: conditions not met"
                )
                continue
            run, created = await self.repository.create_run(
                WorkflowRun(
                    workflow_definition_id=definition.id,
                    tenant_id=envelope.tenant_id,
                    trigger_event_id=envelope.id,
                    correlation_id=envelope.correlation_id,
                    trigger_payload=envelope.payload,
                    created_at=self._clock(),
                )
            )
            if created:
                logger.info(
                    f"Created run {run.id} of {definition.id} for event {envelope.id} "
                    f"(correlation_id={run.correlation_id})"
                )
            if run.is_terminal:
                logger.debug(f"Run {run.id} already {run.status.value}; nothing to do")
                runs.append(run)
                continue
            if run.next_attempt_at is not None and run.next_attempt_at > self._clock():
                logger.debug(f"Run {run.id} is waiting for retry at {run.next_attempt_at}")
                runs.append(run)
                continue
            runs.append(
                await self.execute_run(run.id, envelope=envelope, definition=definition)
            )
        return runs

    async def execute_run(
        self,
        run_id: str,
        envelope: Optional[EventEnvelope] = None,
        definition: Optional[WorkflowDefinition] = None,
    ) -> WorkflowRun:
        """Claim ``run_id`` and execute its remaining actions in order."""
        token = uuid.uuid4().hex
        run = await self.repository.claim_run(
            run_id, token, self._clock(), self.config.lease_seconds
        )
        if run is None:
            logger.debug(f"Run {run_id} is leased elsewhere or not due")
            current = await self.repository.get_run(run_id)
            if current is None:
                raise LookupError(f"Run {run_id} does not exist")
            return current

        if definition is None or definition.id != run.workflow_definition_id:
            definition = await self.repository.get_definition(run.workflow_definition_id)
        if definition is None:
            return await self._finish(
                run,
                token,
                RunStatus.FAILED,
                error=f"definition {run.workflow_definition_id} not found",
                dead_lettered=True,
            )

        if envelope is None:
            record = await self.repository.get_outbox_record(run.trigger_event_id)
            if record is not None:
                envelope = record.envelope

        await self.repository.mark_run_running(run.id, token, self._clock())
        return await self._drive(run, definition, token, envelope)

    # ------------------------------------------------------------------
    async def _drive(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        token: str,
        envelope: Optional[EventEnvelope],
    ) -> WorkflowRun:
        action_names = {i: a.name for i, a in enumerate(definition.actions)}
        steps = await self.repository.list_steps(run.id)

        for index, action in enumerate(definition.actions):
            done = [s for s in steps if s.status is StepStatus.SUCCEEDED]
            if any(s.action_index == index for s in done):
                continue

            current = await self.repository.get_run(run.id)
            if current is not None and current.cancel_requested:
                logger.info(f"Run {run.id} cancelled before action {index}")
                return await self._finish(run, token, RunStatus.FAILED, error=CANCELLED)
            if self._stopping:
                logger.info(f"Runner stopping; releasing run {run.id} at action {index}")
                await self.repository.release_run(run.id, token)
                return await self.repository.get_run(run.id)
            lease_until = self._clock() + timedelta(seconds=self.config.lease_seconds)
            if not await self.repository.extend_run_lease(run.id, token, lease_until):
                logger.warning(f"Lost lease on run {run.id}; abandoning execution")
                return await self.repository.get_run(run.id)

            context = build_context(envelope, run, done, action_names)
            try:
                key = idempotency_key(
                    run.id,
                    index,
                    action.idempotency_key_template,
                    context,
                    self.invoker.renderer,
                )
            except TemplateError as exc:
                step = await self.repository.start_step(
                    run.id, index, f"{run.id}:{index}", self._clock()
                )
                await self.repository.finish_step(
                    step.id, StepStatus.FAILED, self._clock(), error=str(exc)
                )
                return await self._fail(run, definition, token, step, exc)

            step = await self.repository.start_step(run.id, index, key, self._clock())
            logger.info(
                f"Run {run.id} starting action {index} ({action.type.value}) "
                f"attempt {step.attempt_count}"
            )
            try:
                result = _jsonable(await self.invoker.execute(action, context, key))
            except Exception as exc:
                await self.repository.finish_step(
                    step.id, StepStatus.FAILED, self._clock(), error=str(exc)
                )
                return await self._fail(run, definition, token, step, exc)

            await self.repository.finish_step(
                step.id, StepStatus.SUCCEEDED, self._clock(), result=result
            )
            steps = await self.repository.list_steps(run.id)

        logger.info(f"Run {run.id} completed (correlation_id={run.correlation_id})")
        return await self._finish(run, token, RunStatus.COMPLETED)

    async def _fail(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        token: str,
        step: RunStep,
        error: Exception,
    ) -> WorkflowRun:
        message = f"action {step.action_index}: {error}"
        if isinstance(error, PermanentValidationError):
            decision = RetryDecision(
                retry=False, dead_letter=True, reason="permanent validation error"
            )
        else:
            decision = self.retry_manager.decide(
                step.attempt_count, error, definition.retry_policy
            )
        if decision.retry:
            logger.warning(
                f"Run {run.id} failed at {message}; retrying at {decision.next_attempt_at}"
            )
            await self.repository.reschedule_run(
                run.id, token, message, decision.next_attempt_at
            )
            return await self.repository.get_run(run.id)
        logger.error(f"Run {run.id} dead-lettered ({decision.reason}): {message}")
        return await self._finish(
            run, token, RunStatus.FAILED, error=message, dead_lettered=True
        )

    async def _finish(
        self,
        run: WorkflowRun,
        token: str,
        status: RunStatus,
        error: Optional[str] = None,
        dead_lettered: bool = False,
    ) -> WorkflowRun:
        now = self._clock()
        event = None
        if self.config.emit_lifecycle_events:
            event = self._lifecycle_event(run, status, now, error, dead_lettered)
        if not await self.repository.finish_run(
            run.id, token, status, now, error=error, dead_lettered=dead_lettered, event=event
        ):
            logger.warning(f"Lost lease on run {run.id} before it could finish")
        return await self.repository.get_run(run.id)

    def _lifecycle_event(
        self,
        run: WorkflowRun,
        status: RunStatus,
        now,
        error: Optional[str],
        dead_lettered: bool,
    ) -> OutboxRecord:
        event_type = RUN_COMPLETED_EVENT if status is RunStatus.COMPLETED else RUN_FAILED_EVENT
        envelope = EventEnvelope(
            id=derived_event_id(f"{run.id}:{status.value}"),
            tenant_id=run.tenant_id,
            event_type=event_type,
            payload={
                "run_id": run.id,
                "workflow_definition_id": run.workflow_definition_id,
                "trigger_event_id": run.trigger_event_id,
                "status": status.value,
                "error": error,
                "dead_lettered": dead_lettered,
            },
            actor_id=self.name,
            occurred_at=now,
            correlation_id=run.correlation_id,
        )
        return OutboxRecord(envelope=envelope, created_at=now)
