"""Wiring of outbox, router, runner and workers into one application object."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncContextManager, Dict, List, Optional

from .actions import ActionInvoker
from .admin import AdminService
from .config import CrossflowConfig, load_config
from .contracts import EventEnvelope
from .dispatch import CapacityCallback, OutboxDispatcher
from .execute import WorkflowRunner
from .outbox.writer import OutboxWriter
from .persistence import get_repository
from .persistence.repository import Repository, Transaction
from .registry import OPERATIONS, OperationRegistry
from .routing import EventRouter
from .scheduler import RunScheduler
from .utils.clock import Clock, utcnow
from .utils.retry import RetryManager
from .workflows.definitions import WorkflowDefinitionStore
from .workflows.models import WorkflowDefinition

logger = logging.getLogger(__name__)


class Crossflow:
    """Application facade used by domains, consumers and the worker CLI.

    Example::

        flow = Crossflow()

        @flow.operation("projects", "create_project")
        async def create_project(params, key):
            ...

        async with flow.transaction() as tx:
            await flow.emit(tx, "acme", "contract.signed", {"contract_id": "c-1"})
    """

    def __init__(
        self,
        repository: Optional[Repository] = None,
        config: Optional[CrossflowConfig] = None,
        operations: Optional[OperationRegistry] = None,
        router: Optional[EventRouter] = None,
        on_capacity_exceeded: Optional[CapacityCallback] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.operations = operations if operations is not None else OPERATIONS
        self.router = router or EventRouter()
        self.writer = OutboxWriter(clock=clock)
        self.definitions = WorkflowDefinitionStore(self.repository, clock=clock)
        self.invoker = ActionInvoker(
            registry=self.operations,
            repository=self.repository,
            writer=self.writer,
            default_timeout=self.config.runner.action_timeout,
        )
        self.runner = WorkflowRunner(
            self.repository,
            invoker=self.invoker,
            definitions=self.definitions,
            retry_manager=RetryManager(clock=clock),
            config=self.config.runner,
            clock=clock,
        )
        self.router.register("*", self.runner, name=WorkflowRunner.name)
        self.dispatcher = OutboxDispatcher(
            self.repository,
            self.router,
            config=self.config.dispatcher,
            on_capacity_exceeded=on_capacity_exceeded,
            clock=clock,
        )
        self.scheduler = RunScheduler(self.runner, config=self.config.scheduler, clock=clock)
        self.admin = AdminService(self.repository, clock=clock)

    # -- registration ---------------------------------------------------
    def operation(self, domain: str, name: Optional[str] = None):
        return self.operations.operation(domain, name)

    def subscribe(self, event_type: str, name: Optional[str] = None):
        return self.router.subscribe(event_type, name=name)

    # -- producing ------------------------------------------------------
    def transaction(self) -> AsyncContextManager[Transaction]:
        return self.repository.transaction()

    async def emit(
        self,
        tx: Transaction,
        tenant_id: str,
        event_type: str,
        payload: Dict[str, Any],
        actor_id: Optional[str] = None,
        **kwargs: Any,
    ) -> EventEnvelope:
        return await self.writer.append(
            tx, tenant_id, event_type, payload, actor_id, **kwargs
        )

    async def publish(self, source: WorkflowDefinition | Path | str) -> List[WorkflowDefinition]:
        """Publish a definition object, or every definition in a YAML path."""
        if isinstance(source, WorkflowDefinition):
            return [await self.definitions.publish(source)]
        return await self.definitions.publish_path(Path(source))

    # -- workers --------------------------------------------------------
    async def run_worker(self, lifespan: Optional[float] = None) -> None:
        """Run the dispatcher and run scheduler until stopped."""
        logger.info("Starting crossflow worker")
        self.runner.start()
        try:
            await asyncio.gather(
                self.dispatcher.run(lifespan=lifespan),
                self.scheduler.run(lifespan=lifespan),
            )
        finally:
            self.stop()

    def stop(self) -> None:
        self.dispatcher.stop()
        self.scheduler.stop()
        self.runner.stop()

    async def close(self) -> None:
        await self.repository.close()
