"""Resumes workflow runs whose retry time arrived or whose lease expired."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import SchedulerConfig
from .execute import WorkflowRunner
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class RunScheduler:
    """Polls for due runs and hands them to the :class:`WorkflowRunner`."""

    def __init__(
        self,
        runner: WorkflowRunner,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.runner = runner
        self.repository = runner.repository
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._running = False

    def stop(self) -> None:
        self._running = False

    async def poll_once(self) -> int:
        """Execute every due run of one batch; returns how many were attempted."""
        due = await self.repository.list_due_runs(self._clock(), self.config.batch_size)
        for run in due:
            logger.info(f"Resuming run {run.id} (status {run.status.value})")
            await self.runner.execute_run(run.id)
        return len(due)

    async def run(self, lifespan: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        self._running = True
        try:
            while self._running:
                handled = await self.poll_once()
                delay = 0.0 if handled else self.config.poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    delay = min(delay, remaining)
                await asyncio.sleep(delay)
        finally:
            self._running = False
