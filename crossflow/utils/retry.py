"""Backoff computation and retry or dead-letter decisions."""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from ..contracts import RetryPolicy
from ..errors import PermanentValidationError
from .clock import Clock, utcnow


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 300.0,
    jitter: float = 0.0,
) -> float:
    """Compute capped exponential backoff with jitter for the ``attempt``-th failure."""
    delay = min(cap, base * factor ** max(attempt - 1, 0))
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


class RetryDecision(BaseModel):
    """Outcome of a failed attempt: retry later or dead-letter."""

    retry: bool
    dead_letter: bool
    delay: Optional[float] = None
    next_attempt_at: Optional[datetime] = None
    reason: Optional[str] = None


class RetryManager:
    """Decides between backoff and dead-letter for failed records and runs."""

    def __init__(self, policy: RetryPolicy | None = None, clock: Clock = utcnow) -> None:
        self.policy = policy or RetryPolicy()
        self._clock = clock

    def decide(
        self,
        attempts: int,
        error: BaseException | None = None,
        policy: RetryPolicy | None = None,
    ) -> RetryDecision:
        """Return the decision after ``attempts`` failed attempts."""
        policy = policy or self.policy
        if isinstance(error, PermanentValidationError):
            return RetryDecision(
                retry=False, dead_letter=True, reason="permanent validation error"
            )
        if attempts >= policy.max_attempts:
            return RetryDecision(
                retry=False,
                dead_letter=True,
                reason=f"attempt ceiling {policy.max_attempts} reached",
            )
        delay = compute_backoff(
            attempts,
            base=policy.base_delay,
            factor=policy.factor,
            cap=policy.max_delay,
            jitter=policy.jitter,
        )
        return RetryDecision(
            retry=True,
            dead_letter=False,
            delay=delay,
            next_attempt_at=self._clock() + timedelta(seconds=delay),
        )
