"""Example crossflow application for a services firm.

Run the worker with:
    crossflow worker run --app guides.engagement_app:flow

or run this file directly to emit one contract and process it in-process.
"""

import asyncio
import uuid
from pathlib import Path

from crossflow import Crossflow
from crossflow.persistence import SQLiteRepository

flow = Crossflow(repository=SQLiteRepository("crossflow-example.db"))

PROJECTS = {}
SCHEDULES = {}


@flow.operation("projects", "create_project")
async def create_project(params, key):
    # Keyed by the idempotency key so a retried step returns the same project.
    if key not in PROJECTS:
        PROJECTS[key] = {"id": str(uuid.uuid4()), **params}
    return PROJECTS[key]


@flow.operation("revenue", "create_invoice_schedule")
def create_invoice_schedule(params, key):
    if key not in SCHEDULES:
        SCHEDULES[key] = {"id": str(uuid.uuid4()), **params}
    return SCHEDULES[key]


@flow.subscribe("engagement.activated", name="crm-notifier")
async def notify_crm(envelope):
    print(f"Engagement activated: {envelope.payload}")


@flow.subscribe("workflow.run.*", name="run-audit")
async def audit_runs(envelope):
    print(f"{envelope.event_type}: run {envelope.payload['run_id']}")


async def main():
    """Publish the workflow, sign a contract and drain the outbox."""
    await flow.publish(Path(__file__).parent / "workflows")

    async with flow.transaction() as tx:
        # Domain writes would share this transaction with the event.
        event = await flow.emit(
            tx,
            "acme",
            "contract.signed",
            {
                "contract_id": "c-1001",
                "client_id": "client-7",
                "amount": 12000,
                "contract_type": "engagement",
            },
            actor_id="user-42",
        )
    print(f"Emitted contract.signed with correlation ID: {event.correlation_id}")

    await flow.run_worker(lifespan=2)
    await flow.close()


if __name__ == "__main__":
    asyncio.run(main())
