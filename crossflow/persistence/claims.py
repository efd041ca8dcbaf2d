"""Claim planning shared by the repository backends."""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Iterable

from ..contracts import OutboxRecord


async def claim_in_order(
    candidates: Iterable[OutboxRecord],
    now: datetime,
    limit: int,
    try_claim: Callable[[OutboxRecord], Awaitable[OutboxRecord | None]],
) -> list[OutboxRecord]:
    """Claim ``candidates`` in sequence order, one ordering key at a time.

    A record that is unavailable, or whose conditional claim fails, blocks
    every later record with the same ``(tenant_id, event_type)``: a later
    record may only be delivered once everything before it was delivered or
    dead-lettered.
    """
    blocked: set[tuple[str, str]] = set()
    claimed: list[OutboxRecord] = []
    for record in candidates:
        if len(claimed) >= limit:
            break
        key = record.ordering_key
        if key in blocked:
            continue
        if not record.is_available(now):
            blocked.add(key)
            continue
        leased = await try_claim(record)
        if leased is None:
            blocked.add(key)
            continue
        claimed.append(leased)
    return claimed
