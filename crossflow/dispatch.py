"""Outbox dispatcher: leases pending records and delivers them to consumers."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional

from .config import DispatcherConfig
from .contracts import OutboxRecord
from .errors import CapacityExceeded, PoisonRecord
from .persistence.repository import Repository
from .routing import EventRouter
from .utils.clock import Clock, utcnow
from .utils.retry import RetryManager

logger = logging.getLogger(__name__)

CapacityCallback = Callable[[CapacityExceeded], Any]


class OutboxDispatcher:
    """Polls the outbox and delivers records at-least-once.

    Records sharing ``(tenant_id, event_type)`` are delivered in creation
    order. Each poll leases a batch with a fresh token; every state change is
    conditional on that token, so concurrent dispatchers never both mark a
    record processed.
    """

    def __init__(
        self,
        repository: Repository,
        router: EventRouter,
        config: Optional[DispatcherConfig] = None,
        retry_manager: Optional[RetryManager] = None,
        on_capacity_exceeded: Optional[CapacityCallback] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.router = router
        self.config = config or DispatcherConfig()
        self.retry_manager = retry_manager or RetryManager(self.config.retry, clock=clock)
        self.on_capacity_exceeded = on_capacity_exceeded
        self._clock = clock
        self._running = False

    def stop(self) -> None:
        """Stop :meth:`run` after the batch in progress."""
        self._running = False

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until stopped or until ``lifespan`` seconds have passed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        idle = self.config.poll_interval
        self._running = True
        logger.info("Outbox dispatcher started")
        try:
            while self._running:
                handled = await self.poll_once()
                if handled:
                    idle = self.config.poll_interval
                    delay = 0.0
                else:
                    delay = idle
                    idle = min(idle * 2, self.config.max_idle_interval)
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    delay = min(delay, remaining)
                if delay:
                    await asyncio.sleep(delay)
                else:
                    await asyncio.sleep(0)
        finally:
            self._running = False
            logger.info("Outbox dispatcher stopped")

    async def poll_once(self) -> int:
        """Lease and deliver one batch; returns the number of records handled."""
        await self._check_capacity()
        token = uuid.uuid4().hex
        batch = await self.repository.claim_outbox_batch(
            token, self._clock(), self.config.lease_seconds, self.config.batch_size
        )
        if not batch:
            return 0
        logger.debug(f"Leased {len(batch)} outbox records with token {token}")

        failed_keys: set[tuple[str, str]] = set()
        for record in batch:
            if record.ordering_key in failed_keys:
                # An earlier record of this group failed; keep the order intact.
                await self.repository.release_lease(record.id, token)
                logger.debug(f"Released {record.id} behind a failed predecessor")
                continue
            if not await self._deliver(record, token):
                failed_keys.add(record.ordering_key)
        return len(batch)

    async def _deliver(self, record: OutboxRecord, token: str) -> bool:
        completed = list(record.completed_handlers)

        async def on_success(name: str) -> None:
            completed.append(name)
            lease_until = self._clock() + timedelta(seconds=self.config.lease_seconds)
            if not await self.repository.mark_handler_completed(
                record.id, token, completed, lease_until
            ):
                logger.warning(f"Lease lost on {record.id} after handler {name}")

        report = await self.router.deliver(
            record.envelope, skip=record.completed_handlers, on_success=on_success
        )
        now = self._clock()
        if report.succeeded:
            if await self.repository.mark_processed(record.id, token, now):
                logger.info(
                    f"Delivered {record.event_type} {record.id} "
                    f"(correlation_id={record.envelope.correlation_id})"
                )
            else:
                logger.warning(f"Lease lost on {record.id}; not marking processed")
            return True

        error = report.error_summary or "delivery failed"
        attempts = record.attempts_since_replay + 1
        decision = self.retry_manager.decide(attempts)
        updated = await self.repository.record_delivery_failure(
            record.id,
            token,
            error,
            now,
            decision.next_attempt_at,
            dead_letter=decision.dead_letter,
        )
        if not updated:
            logger.warning(f"Lease lost on {record.id}; failure not recorded")
        elif decision.dead_letter:
            poison = PoisonRecord(record.id, record.delivery_attempts + 1, error)
            logger.error(f"Dead-lettered outbox record: {poison}")
        else:
            logger.warning(
                f"Delivery of {record.id} failed (attempt {attempts}): {error}; "
                f"retrying at {decision.next_attempt_at}"
            )
        return False

    async def _check_capacity(self) -> None:
        depth = await self.repository.count_backlog()
        if depth <= self.config.capacity_threshold:
            return
        signal = CapacityExceeded(depth, self.config.capacity_threshold)
        logger.warning(str(signal))
        if self.on_capacity_exceeded is not None:
            result = self.on_capacity_exceeded(signal)
            if inspect.isawaitable(result):
                await result
