"""Fan-out of outbox events to registered consumers."""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from pydantic import BaseModel, Field

from .contracts import EventEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Any]
SuccessCallback = Callable[[str], Awaitable[None]]


class HandlerOutcome(BaseModel):
    """Result of invoking one consumer for one event."""

    name: str
    succeeded: bool
    error: Optional[str] = None


class DeliveryReport(BaseModel):
    """Per-consumer outcomes of a single delivery attempt."""

    event_id: str
    outcomes: List[HandlerOutcome] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(o.succeeded for o in self.outcomes)

    @property
    def failures(self) -> List[HandlerOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def error_summary(self) -> Optional[str]:
        failures = self.failures
        if not failures:
            return None
        return "; ".join(f"{o.name}: {o.error}" for o in failures)


class _Registration(BaseModel):
    pattern: str
    name: str
    handler: Any


class EventRouter:
    """Map event types to consumer handlers.

    ``event_type`` may be an exact type or an ``fnmatch`` pattern such as
    ``contract.*`` or ``*``. A handler fails by raising or by returning
    ``False``; one handler failing never prevents the others from running.
    """

    def __init__(self) -> None:
        self._registrations: List[_Registration] = []

    def register(
        self, event_type: str, handler: Handler, name: Optional[str] = None
    ) -> str:
        name = name or getattr(handler, "name", None) or getattr(
            handler, "__qualname__", repr(handler)
        )
        if any(r.name == name for r in self._registrations):
            raise ValueError(f"Handler {name!r} is already registered")
        self._registrations.append(
            _Registration(pattern=event_type, name=name, handler=handler)
        )
        logger.debug(f"Registered handler {name} for {event_type}")
        return name

    def subscribe(self, event_type: str, name: Optional[str] = None):
        """Decorator form of :meth:`register`."""

        def decorator(func: Handler) -> Handler:
            self.register(event_type, func, name=name)
            return func

        return decorator

    def handlers_for(self, event_type: str) -> List[str]:
        """Names of handlers interested in ``event_type`` in registration order."""
        return [
            r.name
            for r in self._registrations
            if fnmatch.fnmatchcase(event_type, r.pattern)
        ]

    async def _call(self, handler: Handler, envelope: EventEnvelope) -> Any:
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        ):
            return await handler(envelope)
        result = await asyncio.to_thread(handler, envelope)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def deliver(
        self,
        envelope: EventEnvelope,
        skip: Iterable[str] = (),
        on_success: Optional[SuccessCallback] = None,
    ) -> DeliveryReport:
        """Invoke every matching handler not named in ``skip``."""
        skip = set(skip)
        report = DeliveryReport(event_id=envelope.id)
        for registration in self._registrations:
            if not fnmatch.fnmatchcase(envelope.event_type, registration.pattern):
                continue
            if registration.name in skip:
                report.skipped.append(registration.name)
                continue
            try:
                result = await self._call(registration.handler, envelope)
            except Exception as exc:
                logger.warning(
                    f"Handler {registration.name} failed for event {envelope.id}: {exc}"
                )
                report.outcomes.append(
                    HandlerOutcome(
                        name=registration.name,
                        succeeded=False,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue
            if result is False:
                logger.warning(
                    f"Handler {registration.name} rejected event {envelope.id}"
                )
                report.outcomes.append(
                    HandlerOutcome(
                        name=registration.name,
                        succeeded=False,
                        error="handler returned False",
                    )
                )
                continue
            report.outcomes.append(HandlerOutcome(name=registration.name, succeeded=True))
            if on_success is not None:
                await on_success(registration.name)
        return report
