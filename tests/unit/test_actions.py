import asyncio

import pytest

from crossflow.actions import ActionInvoker, derived_event_id
from crossflow.errors import (
    PermanentValidationError,
    TransientDeliveryError,
    UnknownOperationError,
)
from crossflow.workflows.models import ActionSpec, ActionType


@pytest.mark.asyncio
async def test_invoke_async_and_sync_operations(operations):
    calls = []

    @operations.operation("projects", "create_project")
    async def create_project(params, key):
        calls.append((params, key))
        return {"id": "p-1"}

    @operations.operation("revenue")
    def create_invoice_schedule(params, key):
        return {"schedule": params["project_id"]}

    invoker = ActionInvoker(registry=operations)
    assert await invoker.invoke("projects", "create_project", {"a": 1}, "k-1") == {"id": "p-1"}
    assert calls == [({"a": 1}, "k-1")]
    assert await invoker.invoke(
        "revenue", "create_invoice_schedule", {"project_id": "p-1"}, "k-2"
    ) == {"schedule": "p-1"}


@pytest.mark.asyncio
async def test_unknown_operation_is_permanent(operations):
    invoker = ActionInvoker(registry=operations)
    with pytest.raises(UnknownOperationError) as exc_info:
        await invoker.invoke("projects", "nope", {}, "k")
    assert isinstance(exc_info.value, PermanentValidationError)


@pytest.mark.asyncio
async def test_timeout_and_errors_are_transient(operations):
    @operations.operation("slow", "wait")
    async def wait(params, key):
        await asyncio.sleep(5)

    @operations.operation("flaky", "explode")
    async def explode(params, key):
        raise ConnectionError("database unavailable")

    @operations.operation("strict", "reject")
    async def reject(params, key):
        raise PermanentValidationError("client is archived")

    invoker = ActionInvoker(registry=operations, default_timeout=0.05)
    with pytest.raises(TransientDeliveryError):
        await invoker.invoke("slow", "wait", {}, "k")
    with pytest.raises(TransientDeliveryError):
        await invoker.invoke("flaky", "explode", {}, "k")
    with pytest.raises(PermanentValidationError):
        await invoker.invoke("strict", "reject", {}, "k")


@pytest.mark.asyncio
async def test_execute_renders_parameters(operations):
    @operations.operation("projects", "create_project")
    async def create_project(params, key):
        return {"params": params, "key": key}

    action = ActionSpec(
        type=ActionType.CREATE_ENTITY,
        target_domain="projects",
        entity="project",
        parameters={"client": "{{ trigger.client_id }}", "fixed": 7},
    )
    invoker = ActionInvoker(registry=operations)
    result = await invoker.execute(action, {"trigger": {"client_id": "cl-1"}}, "run:0")
    assert result == {"params": {"client": "cl-1", "fixed": 7}, "key": "run:0"}


@pytest.mark.asyncio
async def test_emit_event_is_idempotent(repo, operations):
    action = ActionSpec(
        type=ActionType.EMIT_EVENT,
        event_type="engagement.activated",
        parameters={"client": "{{ trigger.client_id }}"},
    )
    context = {
        "trigger": {"client_id": "cl-1"},
        "run": {
            "id": "run-1",
            "tenant_id": "acme",
            "workflow_definition_id": "wf:v1",
            "correlation_id": "corr-1",
        },
    }
    invoker = ActionInvoker(registry=operations, repository=repo)
    first = await invoker.execute(action, context, "run-1:2")
    second = await invoker.execute(action, context, "run-1:2")

    assert first == second
    assert first["event_id"] == derived_event_id("run-1:2")
    records = await repo.list_outbox_records()
    assert len(records) == 1
    assert records[0].envelope.payload == {"client": "cl-1"}
    assert records[0].envelope.correlation_id == "corr-1"
