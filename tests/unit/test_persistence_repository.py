import asyncio
import uuid
from datetime import timedelta

import pytest

from crossflow.contracts import EventEnvelope, OutboxRecord
from crossflow.outbox import OutboxWriter
from crossflow.persistence import SQLiteRepository
from crossflow.workflows.models import RunStatus, StepStatus, WorkflowRun


async def _append(repo, clock, event_type="contract.signed", tenant="acme", **payload):
    async with repo.transaction() as tx:
        return await OutboxWriter(clock=clock).append(tx, tenant, event_type, payload)


@pytest.mark.asyncio
async def test_claim_respects_creation_order_per_key(repo, clock):
    first = await _append(repo, clock, n=1)
    second = await _append(repo, clock, n=2)
    other = await _append(repo, clock, event_type="invoice.paid", n=3)

    batch = await repo.claim_outbox_batch("t1", clock.now, 30, 10)
    assert [r.id for r in batch] == [first.id, second.id, other.id]
    assert all(r.lease_token == "t1" for r in batch)

    # Everything is leased now.
    assert await repo.claim_outbox_batch("t2", clock.now, 30, 10) == []


@pytest.mark.asyncio
async def test_backing_off_record_blocks_its_followers(repo, clock):
    first = await _append(repo, clock, n=1)
    await _append(repo, clock, n=2)
    other = await _append(repo, clock, event_type="invoice.paid")

    batch = await repo.claim_outbox_batch("t1", clock.now, 30, 1)
    assert [r.id for r in batch] == [first.id]
    await repo.record_delivery_failure(
        first.id, "t1", "boom", clock.now, clock.now + timedelta(seconds=60), False
    )

    batch = await repo.claim_outbox_batch("t2", clock.now, 30, 10)
    assert [r.id for r in batch] == [other.id]

    clock.advance(61)
    batch = await repo.claim_outbox_batch("t3", clock.now, 30, 10)
    assert batch[0].id == first.id
    assert batch[0].delivery_attempts == 1


@pytest.mark.asyncio
async def test_state_changes_require_lease_token(repo, clock):
    event = await _append(repo, clock)
    await repo.claim_outbox_batch("t1", clock.now, 30, 10)

    assert not await repo.mark_processed(event.id, "stale", clock.now)
    assert await repo.mark_processed(event.id, "t1", clock.now)
    assert not await repo.mark_processed(event.id, "t1", clock.now)

    record = await repo.get_outbox_record(event.id)
    assert record.processed_at == clock.now
    assert record.delivery_attempts == 1
    assert record.lease_token is None
    assert await repo.count_backlog() == 0


@pytest.mark.asyncio
async def test_expired_lease_can_be_reclaimed(repo, clock):
    event = await _append(repo, clock)
    await repo.claim_outbox_batch("t1", clock.now, 30, 10)
    clock.advance(31)
    batch = await repo.claim_outbox_batch("t2", clock.now, 30, 10)
    assert [r.id for r in batch] == [event.id]
    assert not await repo.mark_processed(event.id, "t1", clock.now)
    assert await repo.mark_processed(event.id, "t2", clock.now)


@pytest.mark.asyncio
async def test_handler_progress_and_dead_letter_replay(repo, clock):
    event = await _append(repo, clock)
    await repo.claim_outbox_batch("t1", clock.now, 30, 10)
    assert await repo.mark_handler_completed(
        event.id, "t1", ["billing"], clock.now + timedelta(seconds=60)
    )
    assert await repo.record_delivery_failure(
        event.id, "t1", "boom", clock.now, None, dead_letter=True
    )

    record = await repo.get_outbox_record(event.id)
    assert record.completed_handlers == ["billing"]
    assert record.dead_lettered_at == clock.now
    assert record.processed_at is None
    assert await repo.count_backlog() == 0
    assert [r.id for r in await repo.list_outbox_records(dead_lettered=True)] == [event.id]
    assert await repo.claim_outbox_batch("t2", clock.now, 30, 10) == []

    assert await repo.replay_dead_letter(event.id, clock.now)
    assert not await repo.replay_dead_letter(event.id, clock.now)
    record = await repo.get_outbox_record(event.id)
    assert record.dead_lettered_at is None
    assert record.delivery_attempts == 1
    assert record.attempts_since_replay == 0
    assert [r.id for r in await repo.claim_outbox_batch("t3", clock.now, 30, 10)] == [
        event.id
    ]


@pytest.mark.asyncio
async def test_release_lease_does_not_count_attempt(repo, clock):
    event = await _append(repo, clock)
    await repo.claim_outbox_batch("t1", clock.now, 30, 10)
    assert await repo.release_lease(event.id, "t1")
    record = await repo.get_outbox_record(event.id)
    assert record.delivery_attempts == 0
    assert record.lease_token is None


@pytest.mark.asyncio
async def test_create_run_is_unique_per_definition_and_event(repo, clock):
    run = WorkflowRun(
        workflow_definition_id="wf:v1",
        tenant_id="acme",
        trigger_event_id="evt-1",
        trigger_payload={"a": 1},
        created_at=clock.now,
    )
    stored, created = await repo.create_run(run)
    assert created
    again, created_again = await repo.create_run(
        WorkflowRun(
            workflow_definition_id="wf:v1",
            tenant_id="acme",
            trigger_event_id="evt-1",
            created_at=clock.now,
        )
    )
    assert not created_again
    assert again.id == stored.id
    assert again.trigger_payload == {"a": 1}
    assert (await repo.find_run("wf:v1", "evt-1")).id == run.id


@pytest.mark.asyncio
async def test_run_lease_lifecycle(repo, clock):
    run, _ = await repo.create_run(
        WorkflowRun(
            workflow_definition_id="wf:v1",
            tenant_id="acme",
            trigger_event_id="evt-1",
            created_at=clock.now,
        )
    )
    claimed = await repo.claim_run(run.id, "r1", clock.now, 60)
    assert claimed is not None
    assert await repo.claim_run(run.id, "r2", clock.now, 60) is None
    assert await repo.mark_run_running(run.id, "r1", clock.now)
    assert await repo.list_due_runs(clock.now, 10) == []

    retry_at = clock.now + timedelta(seconds=10)
    assert await repo.reschedule_run(run.id, "r1", "boom", retry_at)
    rescheduled = await repo.get_run(run.id)
    assert rescheduled.status is RunStatus.PENDING
    assert rescheduled.next_attempt_at == retry_at
    assert await repo.list_due_runs(clock.now, 10) == []
    clock.advance(11)
    assert [r.id for r in await repo.list_due_runs(clock.now, 10)] == [run.id]

    assert await repo.claim_run(run.id, "r2", clock.now, 60) is not None
    event = OutboxRecord(
        envelope=EventEnvelope(tenant_id="acme", event_type="workflow.run.completed"),
        created_at=clock.now,
    )
    assert await repo.finish_run(run.id, "r2", RunStatus.COMPLETED, clock.now, event=event)
    finished = await repo.get_run(run.id)
    assert finished.status is RunStatus.COMPLETED
    assert finished.lease_token is None
    assert await repo.get_outbox_record(event.id) is not None
    assert not await repo.request_run_cancel(run.id)
    assert await repo.claim_run(run.id, "r3", clock.now, 60) is None


@pytest.mark.asyncio
async def test_steps_reuse_row_on_retry(repo, clock):
    run, _ = await repo.create_run(
        WorkflowRun(
            workflow_definition_id="wf:v1",
            tenant_id="acme",
            trigger_event_id="evt-1",
            created_at=clock.now,
        )
    )
    step = await repo.start_step(run.id, 0, f"{run.id}:0", clock.now)
    assert step.attempt_count == 1
    await repo.finish_step(step.id, StepStatus.FAILED, clock.now, error="boom")
    retry = await repo.start_step(run.id, 0, f"{run.id}:0", clock.now)
    assert retry.attempt_count == 2
    assert retry.status is StepStatus.PENDING
    assert retry.error is None
    await repo.finish_step(retry.id, StepStatus.SUCCEEDED, clock.now, result={"id": "p-1"})

    steps = await repo.list_steps(run.id)
    assert len(steps) == 1
    assert steps[0].result == {"id": "p-1"}
    assert steps[0].status is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_two_sqlite_connections_never_share_a_lease(tmp_path, clock):
    path = tmp_path / "shared.db"
    repo_a = SQLiteRepository(path)
    repo_b = SQLiteRepository(path)
    for n in range(20):
        await _append(repo_a, clock, event_type=f"contract.e{n % 4}", n=n)

    a, b = await asyncio.gather(
        repo_a.claim_outbox_batch(uuid.uuid4().hex, clock.now, 30, 20),
        repo_b.claim_outbox_batch(uuid.uuid4().hex, clock.now, 30, 20),
    )
    ids_a = {r.id for r in a}
    ids_b = {r.id for r in b}
    assert not ids_a & ids_b
    await repo_a.close()
    await repo_b.close()


@pytest.mark.asyncio
async def test_sqlite_transaction_reads_through_its_own_connection(tmp_path, clock):
    repo = SQLiteRepository(tmp_path / "tx.db")
    async with repo.transaction() as tx:
        event = await OutboxWriter(clock=clock).append(
            tx, "acme", "contract.signed", {"id": "c-1"}
        )
        rows = await tx.fetchall("SELECT id FROM outbox WHERE id = ?", event.id)
        assert [r["id"] for r in rows] == [event.id]
    assert (await repo.get_outbox_record(event.id)).event_type == "contract.signed"
    await repo.close()
