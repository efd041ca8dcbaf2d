from datetime import timedelta

from crossflow.contracts import RetryPolicy
from crossflow.errors import PermanentValidationError, TransientDeliveryError
from crossflow.utils.retry import RetryManager, compute_backoff


def test_compute_backoff_grows_and_caps():
    assert compute_backoff(1, base=1, factor=2, cap=10) == 1
    assert compute_backoff(2, base=1, factor=2, cap=10) == 2
    assert compute_backoff(3, base=1, factor=2, cap=10) == 4
    assert compute_backoff(10, base=1, factor=2, cap=10) == 10


def test_compute_backoff_jitter_bounds():
    for _ in range(20):
        delay = compute_backoff(1, base=1, factor=2, cap=10, jitter=0.5)
        assert 1 <= delay <= 1.5


def test_retry_manager_schedules_retry(clock):
    manager = RetryManager(RetryPolicy(max_attempts=3, base_delay=5), clock=clock)
    decision = manager.decide(1, TransientDeliveryError("boom"))
    assert decision.retry and not decision.dead_letter
    assert decision.delay == 5
    assert decision.next_attempt_at == clock.now + timedelta(seconds=5)


def test_retry_manager_dead_letters_at_ceiling(clock):
    manager = RetryManager(RetryPolicy(max_attempts=3), clock=clock)
    decision = manager.decide(3, RuntimeError("boom"))
    assert decision.dead_letter and not decision.retry
    assert decision.next_attempt_at is None


def test_permanent_errors_are_never_retried(clock):
    manager = RetryManager(RetryPolicy(max_attempts=10), clock=clock)
    decision = manager.decide(1, PermanentValidationError("bad input"))
    assert decision.dead_letter


def test_policy_override(clock):
    manager = RetryManager(RetryPolicy(max_attempts=10), clock=clock)
    assert manager.decide(2, policy=RetryPolicy(max_attempts=2)).dead_letter
