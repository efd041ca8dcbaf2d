"""Repository abstraction for outbox and workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Optional, Protocol

from ..contracts import OutboxRecord
from ..workflows.models import RunStatus, RunStep, StepStatus, WorkflowDefinition, WorkflowRun


class Transaction(Protocol):
    """Unit of work shared by a domain mutation and its outbox events."""

    @property
    def active(self) -> bool:
        """``False`` once the transaction committed or rolled back."""

    async def insert_outbox_record(self, record: OutboxRecord) -> bool:
        """Stage ``record``; returns ``False`` if its id is already stored."""


class Repository(Protocol):
    """Protocol for outbox and workflow persistence backends."""

    # -- transactions ---------------------------------------------------
    def transaction(self) -> AsyncContextManager[Transaction]:
        """Open a transaction committed on clean exit, rolled back on error."""

    # -- outbox ---------------------------------------------------------
    async def claim_outbox_batch(
        self, token: str, now: datetime, lease_seconds: float, limit: int
    ) -> list[OutboxRecord]:
        """Lease up to ``limit`` deliverable records in per-key creation order."""

    async def mark_handler_completed(
        self,
        record_id: str,
        token: str,
        completed_handlers: list[str],
        lease_expires_at: datetime,
    ) -> bool:
        """Persist succeeded handler names and extend the lease."""

    async def mark_processed(self, record_id: str, token: str, now: datetime) -> bool:
        """Mark a leased record as delivered to every consumer."""

    async def record_delivery_failure(
        self,
        record_id: str,
        token: str,
        error: str,
        now: datetime,
        next_attempt_at: Optional[datetime],
        dead_letter: bool,
    ) -> bool:
        """Count a failed attempt and either schedule a retry or dead-letter."""

    async def release_lease(self, record_id: str, token: str) -> bool:
        """Give a claimed record back without counting an attempt."""

    async def get_outbox_record(self, record_id: str) -> OutboxRecord | None:
        """Retrieve a record by event id."""

    async def list_outbox_records(
        self, dead_lettered: Optional[bool] = None, limit: int = 100
    ) -> list[OutboxRecord]:
        """Return records in creation order, optionally filtered."""

    async def count_backlog(self) -> int:
        """Number of records neither processed nor dead-lettered."""

    async def replay_dead_letter(self, record_id: str, now: datetime) -> bool:
        """Return a dead-lettered record to the pending backlog."""

    # -- workflow definitions -------------------------------------------
    async def insert_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a newly published definition."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id, enabled or not."""

    async def list_definitions(self, name: Optional[str] = None) -> list[WorkflowDefinition]:
        """Return all definitions, optionally only versions of ``name``."""

    async def set_definition_enabled(self, definition_id: str, enabled: bool) -> bool:
        """Toggle ``enabled``; the only mutation allowed after publish."""

    # -- runs -----------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        """Insert ``run`` unless one exists for its definition and trigger event."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def find_run(self, definition_id: str, trigger_event_id: str) -> WorkflowRun | None:
        """Retrieve the run of ``definition_id`` for ``trigger_event_id``."""

    async def claim_run(
        self, run_id: str, token: str, now: datetime, lease_seconds: float
    ) -> WorkflowRun | None:
        """Lease a non-terminal, due run; ``None`` if held or not due."""

    async def extend_run_lease(
        self, run_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        """Extend a held lease; ``False`` if it was lost."""

    async def mark_run_running(self, run_id: str, token: str, now: datetime) -> bool:
        """Move a leased run to ``running``."""

    async def reschedule_run(
        self, run_id: str, token: str, error: str, next_attempt_at: datetime
    ) -> bool:
        """Return a leased run to ``pending`` until ``next_attempt_at``."""

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
        """Move a leased run to a terminal status, appending ``event`` atomically."""

    async def release_run(self, run_id: str, token: str) -> bool:
        """Drop a run lease without changing its status."""

    async def request_run_cancel(self, run_id: str) -> bool:
        """Flag a non-terminal run for cancellation at its next step boundary."""

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        """Return runs in creation order, optionally filtered."""

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        """Non-terminal runs with no live lease whose retry time has come."""

    # -- steps ----------------------------------------------------------
    async def start_step(
        self, run_id: str, action_index: int, idempotency_key: str, now: datetime
    ) -> RunStep:
        """Create the step row, or reset it for another attempt."""

    async def finish_step(
        self,
        step_id: str,
        status: StepStatus,
        now: datetime,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a step attempt."""

    async def list_steps(self, run_id: str) -> list[RunStep]:
        """Return the steps of a run ordered by action index."""

    async def close(self) -> None:
        """Release backend resources."""
