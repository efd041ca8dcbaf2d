"""Append domain events to the outbox inside the producer's transaction."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from ..contracts import EventEnvelope, OutboxRecord
from ..errors import InvalidEventError
from ..persistence.repository import Transaction
from ..utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")


def validate_event_type(event_type: str) -> str:
    """Ensure ``event_type`` is a dotted lowercase namespace like ``contract.signed``."""
    if not isinstance(event_type, str) or not EVENT_TYPE_PATTERN.match(event_type):
        raise InvalidEventError(f"Malformed event type: {event_type!r}")
    return event_type


class OutboxWriter:
    """Records events in the same transaction as the state change they describe.

    Usage::

        async with repository.transaction() as tx:
            await save_contract(tx, contract)
            await writer.append(tx, tenant_id, "contract.signed", payload, actor_id)

    If the block raises, neither the domain change nor the event is kept.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    async def append(
        self,
        tx: Transaction,
        tenant_id: str,
        event_type: str,
        payload: Dict[str, Any],
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        schema_version: int = 1,
        event_id: Optional[str] = None,
    ) -> EventEnvelope:
        """Validate and stage a new event on ``tx``.

        Appending an ``event_id`` that is already stored is a no-op, which lets
        retried producers pass a deterministic id.
        """
        if not tx.active:
            raise InvalidEventError("Outbox append requires an active transaction")
        if not tenant_id:
            raise InvalidEventError("Event tenant_id must not be empty")
        validate_event_type(event_type)
        if not isinstance(payload, dict):
            raise InvalidEventError("Event payload must be a JSON object")
        if schema_version < 1:
            raise InvalidEventError("schema_version must be >= 1")
        try:
            payload = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as exc:
            raise InvalidEventError(f"Event payload is not JSON serializable: {exc}") from exc

        now = self._clock()
        fields: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "event_type": event_type,
            "schema_version": schema_version,
            "payload": payload,
            "actor_id": actor_id,
            "occurred_at": now,
            "correlation_id": correlation_id,
        }
        if event_id is not None:
            fields["id"] = event_id
        envelope = EventEnvelope(**fields)
        inserted = await tx.insert_outbox_record(
            OutboxRecord(envelope=envelope, created_at=now)
        )
        if inserted:
            logger.debug(
                f"Staged event {envelope.id} ({event_type}) for tenant {tenant_id}"
            )
        else:
            logger.debug(f"Event {envelope.id} already in outbox; ignoring duplicate")
        return envelope
