"""Error taxonomy for outbox delivery and workflow orchestration."""

from __future__ import annotations

from typing import Optional


class CrossflowError(Exception):
    """Base class for all crossflow errors."""


class TransientDeliveryError(CrossflowError):
    """Recoverable failure; the record or step is retried with backoff."""


class PermanentValidationError(CrossflowError):
    """Deterministic failure that must not be retried.

    Runs failing with this error are moved to ``failed`` immediately and
    surfaced for manual remediation.
    """


class TemplateError(PermanentValidationError):
    """Action parameters could not be rendered from the run context."""


class UnknownOperationError(PermanentValidationError):
    """No domain registered the requested operation."""

    def __init__(self, domain: str, operation: str) -> None:
        super().__init__(f"Unknown operation {domain}.{operation}")
        self.domain = domain
        self.operation = operation


class InvalidEventError(CrossflowError, ValueError):
    """An event was rejected by the outbox writer."""


class DefinitionConflictError(CrossflowError):
    """A published workflow definition id was reused with different content."""


class NotFoundError(CrossflowError, LookupError):
    """Requested record, run or definition does not exist."""


class CapacityExceeded(CrossflowError):
    """Outbox backlog grew beyond the configured threshold.

    This is an operational signal, never a per-record failure.
    """

    def __init__(self, depth: int, threshold: int) -> None:
        super().__init__(f"Outbox backlog {depth} exceeds threshold {threshold}")
        self.depth = depth
        self.threshold = threshold


class PoisonRecord(CrossflowError):
    """A record failed on every attempt and was moved to dead-letter."""

    def __init__(
        self, record_id: str, attempts: int, last_error: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Record {record_id} dead-lettered after {attempts} attempts: {last_error}"
        )
        self.record_id = record_id
        self.attempts = attempts
        self.last_error = last_error


__all__ = [
    "CrossflowError",
    "TransientDeliveryError",
    "PermanentValidationError",
    "TemplateError",
    "UnknownOperationError",
    "InvalidEventError",
    "DefinitionConflictError",
    "NotFoundError",
    "CapacityExceeded",
    "PoisonRecord",
]
