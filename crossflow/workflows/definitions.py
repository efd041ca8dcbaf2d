"""Versioned storage and lookup of workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..cli_utils.fs import iter_definition_files
from ..contracts import EventEnvelope
from ..errors import DefinitionConflictError, NotFoundError, PermanentValidationError
from ..outbox.writer import validate_event_type
from ..persistence.repository import Repository
from ..utils.clock import Clock, utcnow
from .models import WorkflowDefinition

logger = logging.getLogger(__name__)


def parse_definitions(data: Any, source: str = "<data>") -> List[WorkflowDefinition]:
    """Build definitions from a parsed YAML document.

    A document is either one definition mapping, a list of them, or a mapping
    with a ``workflows`` list.
    """
    if data is None:
        return []
    if isinstance(data, dict) and "workflows" in data:
        data = data["workflows"]
    items = data if isinstance(data, list) else [data]
    definitions = []
    for item in items:
        try:
            definition = WorkflowDefinition.model_validate(item)
        except ValidationError as exc:
            raise PermanentValidationError(f"Invalid workflow in {source}: {exc}") from exc
        validate_event_type(definition.trigger_event_type)
        definitions.append(definition)
    return definitions


def load_definitions_file(path: Path) -> List[WorkflowDefinition]:
    """Parse every workflow definition contained in the YAML file ``path``."""
    with open(path, encoding="utf-8") as f:
        documents = list(yaml.safe_load_all(f))
    definitions: List[WorkflowDefinition] = []
    for document in documents:
        definitions.extend(parse_definitions(document, source=str(path)))
    return definitions


def load_definitions(
    search_path: Path, respect_gitignore: bool = True
) -> List[WorkflowDefinition]:
    """Load definitions from a YAML file or every YAML file below a directory."""
    definitions: List[WorkflowDefinition] = []
    for path in iter_definition_files(search_path, respect_gitignore=respect_gitignore):
        definitions.extend(load_definitions_file(path))
    return definitions


class WorkflowDefinitionStore:
    """Publish, toggle and match workflow definitions.

    Definitions are immutable after publish except for ``enabled``; a content
    change requires a new ``version``. Publishing a new version disables the
    enabled older versions of the same workflow name.
    """

    def __init__(self, repository: Repository, clock: Clock = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    async def publish(
        self, definition: WorkflowDefinition, supersede: bool = True
    ) -> WorkflowDefinition:
        """Persist ``definition``; re-publishing identical content is a no-op."""
        validate_event_type(definition.trigger_event_type)
        existing = await self.repository.get_definition(definition.id)
        if existing is not None:
            if existing.content_signature() != definition.content_signature():
                raise DefinitionConflictError(
                    f"Definition {definition.id} is already published with different "
                    "content; publish a new version instead"
                )
            logger.debug(f"Definition {definition.id} already published")
            return existing

        published = definition.model_copy(update={"published_at": self._clock()})
        await self.repository.insert_definition(published)
        logger.info(f"Published workflow definition {published.id}")

        if supersede and published.enabled:
            for other in await self.repository.list_definitions(name=published.name):
                if other.id != published.id and other.enabled and other.version < published.version:
                    await self.repository.set_definition_enabled(other.id, False)
                    logger.info(f"Disabled {other.id}, superseded by {published.id}")
        return published

    async def publish_many(
        self, definitions: Iterable[WorkflowDefinition]
    ) -> List[WorkflowDefinition]:
        ordered = sorted(definitions, key=lambda d: (d.name, d.version))
        return [await self.publish(d) for d in ordered]

    async def publish_path(
        self, path: Path, respect_gitignore: bool = True
    ) -> List[WorkflowDefinition]:
        return await self.publish_many(
            load_definitions(path, respect_gitignore=respect_gitignore)
        )

    async def get(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.repository.get_definition(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    async def list(self, name: Optional[str] = None) -> List[WorkflowDefinition]:
        return await self.repository.list_definitions(name=name)

    async def set_enabled(self, definition_id: str, enabled: bool) -> WorkflowDefinition:
        if not await self.repository.set_definition_enabled(definition_id, enabled):
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        logger.info(
            f"Workflow definition {definition_id} {'enabled' if enabled else 'disabled'}"
        )
        return await self.get(definition_id)

    async def enable(self, definition_id: str) -> WorkflowDefinition:
        return await self.set_enabled(definition_id, True)

    async def disable(self, definition_id: str) -> WorkflowDefinition:
        return await self.set_enabled(definition_id, False)

    async def match(self, envelope: EventEnvelope) -> List[WorkflowDefinition]:
        """Enabled definitions triggered by ``envelope``, read fresh from storage."""
        return [
            d
            for d in await self.repository.list_definitions()
            if d.matches(envelope.event_type, envelope.tenant_id)
        ]
