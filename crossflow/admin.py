"""Operational commands over the outbox, definitions and runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from .contracts import OutboxRecord
from .errors import NotFoundError
from .persistence.repository import Repository
from .utils.clock import Clock, utcnow
from .workflows.definitions import WorkflowDefinitionStore
from .workflows.models import RunStatus, RunStep, WorkflowDefinition, WorkflowRun

logger = logging.getLogger(__name__)


class RunHistory(BaseModel):
    """A run together with its step records."""

    run: WorkflowRun
    steps: List[RunStep]


class AdminService:
    def __init__(self, repository: Repository, clock: Clock = utcnow) -> None:
        self.repository = repository
        self.definitions = WorkflowDefinitionStore(repository, clock=clock)
        self._clock = clock

    # -- outbox ---------------------------------------------------------
    async def list_records(
        self, dead_lettered: Optional[bool] = None, limit: int = 100
    ) -> List[OutboxRecord]:
        return await self.repository.list_outbox_records(
            dead_lettered=dead_lettered, limit=limit
        )

    async def list_dead_letters(self, limit: int = 100) -> List[OutboxRecord]:
        return await self.list_records(dead_lettered=True, limit=limit)

    async def get_record(self, record_id: str) -> OutboxRecord:
        record = await self.repository.get_outbox_record(record_id)
        if record is None:
            raise NotFoundError(f"Outbox record {record_id} not found")
        return record

    async def replay(self, record_id: str) -> OutboxRecord:
        """Return a dead-lettered record to the backlog with a fresh attempt budget."""
        record = await self.get_record(record_id)
        if record.dead_lettered_at is None:
            raise ValueError(f"Outbox record {record_id} is not dead-lettered")
        if not await self.repository.replay_dead_letter(record_id, self._clock()):
            raise ValueError(f"Outbox record {record_id} could not be replayed")
        logger.info(f"Replayed dead-lettered record {record_id}")
        return await self.get_record(record_id)

    async def backlog(self) -> int:
        return await self.repository.count_backlog()

    # -- definitions ----------------------------------------------------
    async def list_definitions(self, name: Optional[str] = None) -> List[WorkflowDefinition]:
        return await self.definitions.list(name=name)

    async def publish(
        self, path: Path, respect_gitignore: bool = True
    ) -> List[WorkflowDefinition]:
        return await self.definitions.publish_path(path, respect_gitignore=respect_gitignore)

    async def enable(self, definition_id: str) -> WorkflowDefinition:
        return await self.definitions.enable(definition_id)

    async def disable(self, definition_id: str) -> WorkflowDefinition:
        return await self.definitions.disable(definition_id)

    # -- runs -----------------------------------------------------------
    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 100,
    ) -> List[WorkflowRun]:
        return await self.repository.list_runs(
            status=status, dead_lettered=dead_lettered, limit=limit
        )

    async def run_history(self, run_id: str) -> RunHistory:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return RunHistory(run=run, steps=await self.repository.list_steps(run_id))

    async def cancel_run(self, run_id: str) -> WorkflowRun:
        """Request cancellation; the runner honours it at the next step boundary."""
        run = await self.repository.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.is_terminal:
            raise ValueError(f"Run {run_id} is already {run.status.value}")
        await self.repository.request_run_cancel(run_id)
        logger.info(f"Cancellation requested for run {run_id}")
        return await self.repository.get_run(run_id)
