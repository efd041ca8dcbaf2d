"""Transactional outbox writer."""

from __future__ import annotations

from .writer import EVENT_TYPE_PATTERN, OutboxWriter, validate_event_type

__all__ = ["EVENT_TYPE_PATTERN", "OutboxWriter", "validate_event_type"]
