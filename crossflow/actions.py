"""Invocation of workflow actions against domain operations."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .errors import InvalidEventError, PermanentValidationError, TransientDeliveryError
from .outbox.writer import OutboxWriter
from .persistence.repository import Repository
from .registry import OPERATIONS, OperationRegistry
from .workflows.models import ActionSpec, ActionType
from .workflows.templates import ParameterRenderer

logger = logging.getLogger(__name__)

ActionExecutor = Callable[
    ["ActionInvoker", ActionSpec, Dict[str, Any], str, Mapping[str, Any]],
    Awaitable[Any],
]

_EVENT_NAMESPACE = uuid.UUID("6f1c35c4-5d0e-4d52-9a43-58f3a1b0c2e7")


def derived_event_id(key: str) -> str:
    """Deterministic event id for an event emitted under idempotency ``key``."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, key))


class ActionInvoker:
    """Call registered domain operations with a timeout and error mapping.

    Unknown operations are permanent failures. Timeouts and unexpected
    exceptions are transient and retried by the runner.
    """

    executors: Dict[ActionType, ActionExecutor] = {}

    def __init__(
        self,
        registry: Optional[OperationRegistry] = None,
        repository: Optional[Repository] = None,
        writer: Optional[OutboxWriter] = None,
        default_timeout: float = 30.0,
        renderer: Optional[ParameterRenderer] = None,
    ) -> None:
        self.registry = registry if registry is not None else OPERATIONS
        self.repository = repository
        self.writer = writer or OutboxWriter()
        self.default_timeout = default_timeout
        self.renderer = renderer or ParameterRenderer()

    @classmethod
    def executor(cls, action_type: ActionType):
        """Register the coroutine executing actions of ``action_type``."""

        def decorator(func: ActionExecutor) -> ActionExecutor:
            cls.executors[action_type] = func
            return func

        return decorator

    async def invoke(
        self,
        target_domain: str,
        operation_name: str,
        parameters: Dict[str, Any],
        idempotency_key: str,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call ``target_domain.operation_name`` and return its result."""
        descriptor = self.registry.resolve(target_domain, operation_name)
        handler = descriptor.handler
        timeout = timeout or self.default_timeout
        logger.debug(
            f"Invoking {descriptor.qualified_name} with key {idempotency_key}"
        )
        if inspect.iscoroutinefunction(handler):
            call = handler(parameters, idempotency_key)
        else:
            call = asyncio.to_thread(handler, parameters, idempotency_key)
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientDeliveryError(
                f"{descriptor.qualified_name} timed out after {timeout}s"
            ) from exc
        except (PermanentValidationError, TransientDeliveryError):
            raise
        except Exception as exc:
            raise TransientDeliveryError(
                f"{descriptor.qualified_name} failed: {type(exc).__name__}: {exc}"
            ) from exc
        return result

    async def execute(
        self,
        action: ActionSpec,
        context: Mapping[str, Any],
        idempotency_key: str,
    ) -> Any:
        """Render ``action`` parameters from ``context`` and run it."""
        executor = self.executors.get(action.type)
        if executor is None:
            raise PermanentValidationError(f"No executor for action type {action.type}")
        parameters = self.renderer.render(action.parameters, context)
        return await executor(self, action, parameters, idempotency_key, context)


@ActionInvoker.executor(ActionType.CREATE_ENTITY)
async def _create_entity(
    invoker: ActionInvoker,
    action: ActionSpec,
    parameters: Dict[str, Any],
    key: str,
    context: Mapping[str, Any],
) -> Any:
    return await invoker.invoke(
        action.target_domain, action.operation_name, parameters, key, action.timeout
    )


@ActionInvoker.executor(ActionType.INVOKE_DOMAIN_OPERATION)
async def _invoke_operation(
    invoker: ActionInvoker,
    action: ActionSpec,
    parameters: Dict[str, Any],
    key: str,
    context: Mapping[str, Any],
) -> Any:
    return await invoker.invoke(
        action.target_domain, action.operation_name, parameters, key, action.timeout
    )


@ActionInvoker.executor(ActionType.EMIT_EVENT)
async def _emit_event(
    invoker: ActionInvoker,
    action: ActionSpec,
    parameters: Dict[str, Any],
    key: str,
    context: Mapping[str, Any],
) -> Any:
    if invoker.repository is None:
        raise PermanentValidationError("emit-event actions need a repository")
    run = context.get("run", {})
    event_id = derived_event_id(key)
    try:
        async with invoker.repository.transaction() as tx:
            envelope = await invoker.writer.append(
                tx,
                tenant_id=run.get("tenant_id"),
                event_type=action.event_type,
                payload=parameters,
                actor_id=f"workflow:{run.get('workflow_definition_id')}",
                correlation_id=run.get("correlation_id"),
                event_id=event_id,
            )
    except InvalidEventError as exc:
        raise PermanentValidationError(f"Cannot emit {action.event_type}: {exc}") from exc
    logger.info(f"Run {run.get('id')} emitted {action.event_type} as {envelope.id}")
    return {"event_id": envelope.id, "event_type": action.event_type}
