import pytest

from crossflow.contracts import EventEnvelope
from crossflow.errors import DefinitionConflictError, NotFoundError, PermanentValidationError
from crossflow.workflows.definitions import (
    WorkflowDefinitionStore,
    load_definitions,
    load_definitions_file,
)
from crossflow.workflows.models import WorkflowDefinition

WORKFLOW_YAML = """
name: activate-engagement
version: 1
trigger: contract.signed
conditions:
  - path: contract_type
    op: eq
    value: engagement
actions:
  - type: create-entity
    name: project
    target_domain: projects
    entity: project
    parameters:
      client_id: "{{ trigger.client_id }}"
  - type: create-entity
    target_domain: revenue
    entity: invoice_schedule
    parameters:
      project_id: "{{ steps.project.id }}"
retry_policy:
  max_attempts: 3
"""


def _definition(version=1, **overrides):
    data = {
        "name": "notify",
        "version": version,
        "trigger": "contract.signed",
        "actions": [{"type": "emit-event", "event_type": "client.notified"}],
    }
    data.update(overrides)
    return WorkflowDefinition(**data)


def test_load_definitions_file(tmp_path):
    path = tmp_path / "activate.yaml"
    path.write_text(WORKFLOW_YAML)
    (definition,) = load_definitions_file(path)
    assert definition.id == "activate-engagement:v1"
    assert definition.trigger_event_type == "contract.signed"
    assert definition.actions[0].operation_name == "create_project"
    assert definition.retry_policy.max_attempts == 3


def test_load_definitions_respects_gitignore(tmp_path):
    (tmp_path / "workflows").mkdir()
    (tmp_path / "workflows" / "a.yaml").write_text(WORKFLOW_YAML)
    (tmp_path / "drafts").mkdir()
    (tmp_path / "drafts" / "b.yml").write_text(WORKFLOW_YAML.replace("version: 1", "version: 2"))
    (tmp_path / ".gitignore").write_text("drafts/\n")

    assert [d.id for d in load_definitions(tmp_path)] == ["activate-engagement:v1"]
    assert len(load_definitions(tmp_path, respect_gitignore=False)) == 2


def test_invalid_yaml_definition(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("name: broken\ntrigger: contract.signed\nactions: []\n")
    with pytest.raises(PermanentValidationError):
        load_definitions_file(path)


@pytest.mark.asyncio
async def test_publish_is_idempotent_and_immutable(repo, clock):
    store = WorkflowDefinitionStore(repo, clock=clock)
    published = await store.publish(_definition())
    assert published.published_at == clock.now

    again = await store.publish(_definition())
    assert again.id == published.id

    with pytest.raises(DefinitionConflictError):
        await store.publish(_definition(description="changed"))


@pytest.mark.asyncio
async def test_new_version_supersedes_older(repo, clock):
    store = WorkflowDefinitionStore(repo, clock=clock)
    await store.publish(_definition(version=1))
    await store.publish(_definition(version=2))

    versions = {d.id: d.enabled for d in await store.list(name="notify")}
    assert versions == {"notify:v1": False, "notify:v2": True}


@pytest.mark.asyncio
async def test_enable_disable_and_match(repo, clock):
    store = WorkflowDefinitionStore(repo, clock=clock)
    await store.publish(_definition())
    await store.publish(_definition(name="scoped", tenant_id="globex"))
    event = EventEnvelope(tenant_id="acme", event_type="contract.signed")

    assert [d.id for d in await store.match(event)] == ["notify:v1"]
    await store.disable("notify:v1")
    assert await store.match(event) == []
    assert not (await store.get("notify:v1")).enabled
    await store.enable("notify:v1")
    assert [d.id for d in await store.match(event)] == ["notify:v1"]

    with pytest.raises(NotFoundError):
        await store.enable("missing:v1")
