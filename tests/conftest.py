from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import crossflow.persistence as persistence
from crossflow.config import CrossflowConfig
from crossflow.persistence import InMemoryRepository, SQLiteRepository
from crossflow.registry import OperationRegistry
from crossflow.workflows.models import ActionSpec, ActionType, WorkflowDefinition


class FakeClock:
    """Manually advanced clock shared by the components under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepository()
    return SQLiteRepository(tmp_path / "crossflow.db")


@pytest.fixture
def operations() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def config() -> CrossflowConfig:
    return CrossflowConfig(
        dispatcher={"poll_interval": 0.01, "max_idle_interval": 0.05},
        runner={"action_timeout": 1.0, "lease_seconds": 30},
        scheduler={"poll_interval": 0.01},
    )


@pytest.fixture(autouse=True)
def _reset_repository(monkeypatch):
    monkeypatch.delenv("CROSSFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CROSSFLOW_CONFIG", raising=False)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def activate_engagement() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="activate-engagement",
        trigger="contract.signed",
        conditions=[{"path": "contract_type", "op": "eq", "value": "engagement"}],
        actions=[
            ActionSpec(
                type=ActionType.CREATE_ENTITY,
                name="project",
                target_domain="projects",
                entity="project",
                parameters={
                    "client_id": "{{ trigger.client_id }}",
                    "name": "Engagement {{ trigger.contract_id }}",
                },
            ),
            ActionSpec(
                type=ActionType.CREATE_ENTITY,
                name="schedule",
                target_domain="revenue",
                entity="invoice_schedule",
                parameters={
                    "project_id": "{{ steps.project.id }}",
                    "amount": "{{ trigger.amount }}",
                },
            ),
        ],
        retry_policy={"max_attempts": 3, "base_delay": 10, "factor": 2},
    )
