"""In-memory implementation of the crossflow repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..contracts import OutboxRecord
from ..workflows.models import (
    RunStatus,
    RunStep,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
)
from .claims import claim_in_order
from .repository import Repository


class InMemoryTransaction:
    """Buffers outbox records and staged mutations until commit."""

    def __init__(self) -> None:
        self._records: List[OutboxRecord] = []
        self._mutations: List[Callable[[], None]] = []
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def stage(self, mutation: Callable[[], None]) -> None:
        """Register a domain mutation applied only if the transaction commits."""
        self._mutations.append(mutation)

    async def insert_outbox_record(self, record: OutboxRecord) -> bool:
        if any(r.id == record.id for r in self._records):
            return False
        self._records.append(record.model_copy(deep=True))
        return True


class InMemoryRepository(Repository):
    """Store outbox and workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: Dict[str, OutboxRecord] = {}
        self._seq = 0
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._run_index: Dict[tuple[str, str], str] = {}
        self._steps: Dict[str, Dict[int, RunStep]] = {}

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        tx = InMemoryTransaction()
        try:
            yield tx
        except BaseException:
            tx._active = False
            raise
        async with self._lock:
            for record in tx._records:
                self._insert(record)
            for mutation in tx._mutations:
                mutation()
        tx._active = False

    def _insert(self, record: OutboxRecord) -> bool:
        if record.id in self._records:
            return False
        self._seq += 1
        record.seq = self._seq
        self._records[record.id] = record
        return True

    def _held(self, record_id: str, token: str) -> OutboxRecord | None:
        record = self._records.get(record_id)
        if record is None or record.lease_token != token:
            return None
        if record.processed_at is not None or record.dead_lettered_at is not None:
            return None
        return record

    # ------------------------------------------------------------------
    async def claim_outbox_batch(
        self, token: str, now: datetime, lease_seconds: float, limit: int
    ) -> list[OutboxRecord]:
        expires = now + timedelta(seconds=lease_seconds)

        async def try_claim(record: OutboxRecord) -> OutboxRecord | None:
            record.lease_token = token
            record.lease_expires_at = expires
            return record.model_copy(deep=True)

        async with self._lock:
            pending = sorted(
                (
                    r
                    for r in self._records.values()
                    if r.processed_at is None and r.dead_lettered_at is None
                ),
                key=lambda r: r.seq or 0,
            )
            return await claim_in_order(pending, now, limit, try_claim)

    async def mark_handler_completed(
        self,
        record_id: str,
        token: str,
        completed_handlers: list[str],
        lease_expires_at: datetime,
    ) -> bool:
        async with self._lock:
            record = self._held(record_id, token)
            if record is None:
                return False
            record.completed_handlers = list(completed_handlers)
            record.lease_expires_at = lease_expires_at
            return True

    async def mark_processed(self, record_id: str, token: str, now: datetime) -> bool:
        async with self._lock:
            record = self._held(record_id, token)
            if record is None:
                return False
            record.processed_at = now
            record.delivery_attempts += 1
            record.last_error = None
            record.lease_token = None
            record.lease_expires_at = None
            record.next_attempt_at = None
            return True

    async def record_delivery_failure(
        self,
        record_id: str,
        token: str,
        error: str,
        now: datetime,
        next_attempt_at: Optional[datetime],
        dead_letter: bool,
    ) -> bool:
        async with self._lock:
            record = self._held(record_id, token)
            if record is None:
                return False
            record.delivery_attempts += 1
            record.last_error = error
            record.lease_token = None
            record.lease_expires_at = None
            record.next_attempt_at = None if dead_letter else next_attempt_at
            record.dead_lettered_at = now if dead_letter else None
            return True

    async def release_lease(self, record_id: str, token: str) -> bool:
        async with self._lock:
            record = self._held(record_id, token)
            if record is None:
                return False
            record.lease_token = None
            record.lease_expires_at = None
            return True

    async def get_outbox_record(self, record_id: str) -> OutboxRecord | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def list_outbox_records(
        self, dead_lettered: Optional[bool] = None, limit: int = 100
    ) -> list[OutboxRecord]:
        records = sorted(self._records.values(), key=lambda r: r.seq or 0)
        if dead_lettered is not None:
            records = [
                r for r in records if (r.dead_lettered_at is not None) == dead_lettered
            ]
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def count_backlog(self) -> int:
        return sum(
            1
            for r in self._records.values()
            if r.processed_at is None and r.dead_lettered_at is None
        )

    async def replay_dead_letter(self, record_id: str, now: datetime) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or record.dead_lettered_at is None:
                return False
            record.dead_lettered_at = None
            record.next_attempt_at = None
            record.attempts_at_replay = record.delivery_attempts
            return True

    # ------------------------------------------------------------------
    async def insert_definition(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(definition_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(self, name: Optional[str] = None) -> list[WorkflowDefinition]:
        definitions = sorted(
            self._definitions.values(), key=lambda d: (d.name, d.version)
        )
        return [
            d.model_copy(deep=True) for d in definitions if name is None or d.name == name
        ]

    async def set_definition_enabled(self, definition_id: str, enabled: bool) -> bool:
        async with self._lock:
            definition = self._definitions.get(definition_id)
            if definition is None:
                return False
            definition.enabled = enabled
            return True

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        key = (run.workflow_definition_id, run.trigger_event_id)
        async with self._lock:
            existing_id = self._run_index.get(key)
            if existing_id is not None:
                return self._runs[existing_id].model_copy(deep=True), False
            self._runs[run.id] = run.model_copy(deep=True)
            self._run_index[key] = run.id
            self._steps[run.id] = {}
            return run.model_copy(deep=True), True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def find_run(self, definition_id: str, trigger_event_id: str) -> WorkflowRun | None:
        run_id = self._run_index.get((definition_id, trigger_event_id))
        return await self.get_run(run_id) if run_id else None

    def _held_run(self, run_id: str, token: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None or run.lease_token != token or run.is_terminal:
            return None
        return run

    async def claim_run(
        self, run_id: str, token: str, now: datetime, lease_seconds: float
    ) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or not _run_is_due(run, now):
                return None
            run.lease_token = token
            run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return run.model_copy(deep=True)

    async def extend_run_lease(
        self, run_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        async with self._lock:
            run = self._held_run(run_id, token)
            if run is None:
                return False
            run.lease_expires_at = lease_expires_at
            return True

    async def mark_run_running(self, run_id: str, token: str, now: datetime) -> bool:
        async with self._lock:
            run = self._held_run(run_id, token)
            if run is None:
                return False
            run.status = RunStatus.RUNNING
            run.started_at = run.started_at or now
            run.next_attempt_at = None
            return True

    async def reschedule_run(
        self, run_id: str, token: str, error: str, next_attempt_at: datetime
    ) -> bool:
        async with self._lock:
            run = self._held_run(run_id, token)
            if run is None:
                return False
            run.status = RunStatus.PENDING
            run.error = error
            run.next_attempt_at = next_attempt_at
            run.lease_token = None
            run.lease_expires_at = None
            return True

    async def finish_run(
        self,
        run_id: str,
        token: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
        dead_lettered: bool = False,
        event: Optional[OutboxRecord] = None,
    ) -> bool:
        async with self._lock:
            run = self._held_run(run_id, token)
            if run is None:
                return False
            run.status = status
            run.completed_at = now
            run.error = error
            run.dead_lettered = dead_lettered
            run.next_attempt_at = None
            run.lease_token = None
            run.lease_expires_at = None
            if event is not None:
                self._insert(event.model_copy(deep=True))
            return True

    async def release_run(self, run_id: str, token: str) -> bool:
        async with self._lock:
            run = self._held_run(run_id, token)
            if run is None:
                return False
            run.lease_token = None
            run.lease_expires_at = None
            return True

    async def request_run_cancel(self, run_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.is_terminal:
                return False
            run.cancel_requested = True
            return True

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        if dead_lettered is not None:
            runs = [r for r in runs if r.dead_lettered == dead_lettered]
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in runs if _run_is_due(r, now)][:limit]

    # ------------------------------------------------------------------
    async def start_step(
        self, run_id: str, action_index: int, idempotency_key: str, now: datetime
    ) -> RunStep:
        async with self._lock:
            steps = self._steps.setdefault(run_id, {})
            step = steps.get(action_index)
            if step is None:
                step = RunStep(
                    run_id=run_id,
                    action_index=action_index,
                    idempotency_key=idempotency_key,
                    started_at=now,
                )
                steps[action_index] = step
            else:
                step.status = StepStatus.PENDING
                step.attempt_count += 1
                step.result = None
                step.error = None
                step.started_at = now
                step.completed_at = None
            return step.model_copy(deep=True)

    async def finish_step(
        self,
        step_id: str,
        status: StepStatus,
        now: datetime,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._lock:
            for steps in self._steps.values():
                for step in steps.values():
                    if step.id == step_id:
                        step.status = status
                        step.result = result
                        step.error = error
                        step.completed_at = now
                        return

    async def list_steps(self, run_id: str) -> list[RunStep]:
        steps = self._steps.get(run_id, {})
        return [steps[i].model_copy(deep=True) for i in sorted(steps)]

    async def close(self) -> None:
        pass


def _run_is_due(run: WorkflowRun, now: datetime) -> bool:
    if run.is_terminal:
        return False
    if run.lease_expires_at is not None and run.lease_expires_at > now:
        return False
    return run.next_attempt_at is None or run.next_attempt_at <= now
