import pytest

from crossflow.errors import InvalidEventError
from crossflow.outbox import OutboxWriter
from crossflow.persistence import SQLiteRepository


class DomainFailure(Exception):
    pass


@pytest.mark.asyncio
async def test_append_commits_with_transaction(repo, clock):
    writer = OutboxWriter(clock=clock)
    async with repo.transaction() as tx:
        envelope = await writer.append(
            tx, "acme", "contract.signed", {"contract_id": "c-1"}, actor_id="u-1"
        )

    record = await repo.get_outbox_record(envelope.id)
    assert record is not None
    assert record.envelope.payload == {"contract_id": "c-1"}
    assert record.envelope.correlation_id == envelope.id
    assert record.created_at == clock.now
    assert record.seq is not None
    assert record.delivery_attempts == 0
    assert await repo.count_backlog() == 1


@pytest.mark.asyncio
async def test_rollback_discards_event(repo, clock):
    writer = OutboxWriter(clock=clock)
    with pytest.raises(DomainFailure):
        async with repo.transaction() as tx:
            envelope = await writer.append(tx, "acme", "contract.signed", {})
            raise DomainFailure()

    assert await repo.get_outbox_record(envelope.id) is None
    assert await repo.count_backlog() == 0


@pytest.mark.asyncio
async def test_duplicate_event_id_is_ignored(repo):
    writer = OutboxWriter()
    for _ in range(2):
        async with repo.transaction() as tx:
            await writer.append(tx, "acme", "contract.signed", {}, event_id="evt-1")
    assert len(await repo.list_outbox_records()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tenant, event_type, payload",
    [
        ("", "contract.signed", {}),
        ("acme", "ContractSigned", {}),
        ("acme", "contract", {}),
        ("acme", "contract.signed", ["not", "an", "object"]),
        ("acme", "contract.signed", {"when": object()}),
    ],
)
async def test_invalid_events_roll_back(repo, tenant, event_type, payload):
    writer = OutboxWriter()
    with pytest.raises(InvalidEventError):
        async with repo.transaction() as tx:
            await writer.append(tx, tenant, event_type, payload)
    assert await repo.count_backlog() == 0


@pytest.mark.asyncio
async def test_append_requires_active_transaction(repo):
    writer = OutboxWriter()
    async with repo.transaction() as tx:
        pass
    with pytest.raises(InvalidEventError):
        await writer.append(tx, "acme", "contract.signed", {})


@pytest.mark.asyncio
async def test_domain_row_and_event_share_transaction(tmp_path):
    repo = SQLiteRepository(tmp_path / "domain.db")
    writer = OutboxWriter()
    async with repo.transaction() as tx:
        await tx.execute("CREATE TABLE contracts (id TEXT PRIMARY KEY, status TEXT)")

    async with repo.transaction() as tx:
        await tx.execute("INSERT INTO contracts VALUES (?, ?)", "c-1", "signed")
        committed = await writer.append(tx, "acme", "contract.signed", {"id": "c-1"})

    with pytest.raises(DomainFailure):
        async with repo.transaction() as tx:
            await tx.execute("INSERT INTO contracts VALUES (?, ?)", "c-2", "signed")
            rolled_back = await writer.append(tx, "acme", "contract.signed", {"id": "c-2"})
            raise DomainFailure()

    async with repo.transaction() as tx:
        rows = await tx.fetchall("SELECT id FROM contracts ORDER BY id")
    assert [r["id"] for r in rows] == ["c-1"]
    assert await repo.get_outbox_record(committed.id) is not None
    assert await repo.get_outbox_record(rolled_back.id) is None
    await repo.close()
