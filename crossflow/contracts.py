"""Core event contracts for the crossflow outbox."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .utils.clock import utcnow


class EventEnvelope(BaseModel):
    """Immutable record of a domain event."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    event_type: str
    schema_version: int = 1
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_correlation(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("correlation_id") is None:
            data = dict(data)
            data.setdefault("id", str(uuid.uuid4()))
            data["correlation_id"] = data["id"]
        return data


class OutboxStatus(str, Enum):
    PENDING = "pending"
    LEASED = "leased"
    PROCESSED = "processed"
    DEAD_LETTER = "dead_letter"


class OutboxRecord(BaseModel):
    """Delivery state of an :class:`EventEnvelope` in the outbox."""

    envelope: EventEnvelope
    seq: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    delivery_attempts: int = 0
    last_error: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None
    completed_handlers: List[str] = Field(default_factory=list)
    attempts_at_replay: int = 0

    @property
    def id(self) -> str:
        return self.envelope.id

    @property
    def tenant_id(self) -> str:
        return self.envelope.tenant_id

    @property
    def event_type(self) -> str:
        return self.envelope.event_type

    @property
    def ordering_key(self) -> tuple[str, str]:
        """Records sharing this key are delivered in creation order."""
        return (self.envelope.tenant_id, self.envelope.event_type)

    @property
    def attempts_since_replay(self) -> int:
        return self.delivery_attempts - self.attempts_at_replay

    def status_at(self, now: datetime) -> OutboxStatus:
        if self.processed_at is not None:
            return OutboxStatus.PROCESSED
        if self.dead_lettered_at is not None:
            return OutboxStatus.DEAD_LETTER
        if self.lease_expires_at is not None and self.lease_expires_at > now:
            return OutboxStatus.LEASED
        return OutboxStatus.PENDING

    @property
    def status(self) -> OutboxStatus:
        return self.status_at(utcnow())

    def is_available(self, now: datetime) -> bool:
        """Return ``True`` when the record may be claimed at ``now``."""
        if self.status_at(now) is not OutboxStatus.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now


class RetryPolicy(BaseModel):
    """Exponential backoff settings with an attempt ceiling."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=300.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


__all__ = ["EventEnvelope", "OutboxRecord", "OutboxStatus", "RetryPolicy"]
