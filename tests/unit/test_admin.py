import pytest

from crossflow.admin import AdminService
from crossflow.errors import NotFoundError
from crossflow.outbox import OutboxWriter
from crossflow.workflows.models import RunStatus, WorkflowRun


@pytest.mark.asyncio
async def test_replay_dead_letter(repo, clock):
    admin = AdminService(repo, clock=clock)
    async with repo.transaction() as tx:
        event = await OutboxWriter(clock=clock).append(tx, "acme", "contract.signed", {})

    with pytest.raises(ValueError):
        await admin.replay(event.id)

    await repo.claim_outbox_batch("t1", clock.now, 30, 10)
    await repo.record_delivery_failure(event.id, "t1", "boom", clock.now, None, True)
    assert [r.id for r in await admin.list_dead_letters()] == [event.id]
    assert await admin.backlog() == 0

    record = await admin.replay(event.id)
    assert record.dead_lettered_at is None
    assert record.delivery_attempts == 1
    assert await admin.backlog() == 1
    assert await admin.list_dead_letters() == []

    with pytest.raises(NotFoundError):
        await admin.get_record("missing")


@pytest.mark.asyncio
async def test_run_history_and_cancel(repo, clock):
    admin = AdminService(repo, clock=clock)
    run, _ = await repo.create_run(
        WorkflowRun(
            workflow_definition_id="wf:v1",
            tenant_id="acme",
            trigger_event_id="evt-1",
            created_at=clock.now,
        )
    )
    await repo.start_step(run.id, 0, f"{run.id}:0", clock.now)

    history = await admin.run_history(run.id)
    assert history.run.id == run.id
    assert [s.action_index for s in history.steps] == [0]

    cancelled = await admin.cancel_run(run.id)
    assert cancelled.cancel_requested
    assert [r.id for r in await admin.list_runs(status=RunStatus.PENDING)] == [run.id]
    assert await admin.list_runs(dead_lettered=True) == []

    with pytest.raises(NotFoundError):
        await admin.run_history("missing")
