from __future__ import annotations

import random

import pytest

from src.config.load_config import WorkerConfig
from src.runtime.retry import RetryScheduler, backoff_base_s, jittered_delay_s
from src.storage.sqlite_store import JOB_FAILED, JOB_RETRY


SCHEDULE = (60.0, 300.0, 1800.0, 7200.0, 43200.0)


def test_backoff_base_is_indexed_by_attempt_and_saturates() -> None:
    assert backoff_base_s(1, SCHEDULE) == 60.0
    assert backoff_base_s(2, SCHEDULE) == 300.0
    assert backoff_base_s(3, SCHEDULE) == 1800.0
    assert backoff_base_s(4, SCHEDULE) == 7200.0
    assert backoff_base_s(5, SCHEDULE) == 43200.0
    assert backoff_base_s(12, SCHEDULE) == 43200.0
    # Attempt numbers below 1 are treated as the first attempt.
    assert backoff_base_s(0, SCHEDULE) == 60.0


def test_backoff_base_rejects_empty_schedule() -> None:
    with pytest.raises(ValueError):
        backoff_base_s(1, ())


@pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5, 9])
def test_jittered_delay_stays_within_thirty_percent(attempt: int) -> None:
    rng = random.Random(1234)
    base = backoff_base_s(attempt, SCHEDULE)
    for _ in range(500):
        delay = jittered_delay_s(attempt, schedule=SCHEDULE, jitter_ratio=0.3, rng=rng)
        assert 0.7 * base <= delay <= 1.3 * base


def test_zero_jitter_is_exact() -> None:
    delay = jittered_delay_s(2, schedule=SCHEDULE, jitter_ratio=0.0, rng=random.Random(0))
    assert delay == 300.0


def test_decide_retry_before_max_attempts() -> None:
    now = 1_700_000_000.0
    scheduler = RetryScheduler(WorkerConfig(), rng=random.Random(7), clock=lambda: now)

    decision = scheduler.decide(2)
    assert decision.status == JOB_RETRY
    assert decision.attempts == 2
    assert decision.terminal is False
    assert decision.next_run_at is not None
    assert 210.0 <= decision.next_run_at - now <= 390.0
    assert decision.delay_s == pytest.approx(decision.next_run_at - now)


def test_decide_failed_at_max_attempts() -> None:
    scheduler = RetryScheduler(WorkerConfig(max_attempts=5), rng=random.Random(7))
    decision = scheduler.decide(5)
    assert decision.status == JOB_FAILED
    assert decision.terminal is True
    assert decision.next_run_at is None

    assert scheduler.decide(6).status == JOB_FAILED


def test_next_run_at_strictly_increases_across_tiers() -> None:
    # Worst case per tier: max jitter on the lower tier vs min jitter on the next one.
    now = 1_000.0
    for seed in range(50):
        scheduler = RetryScheduler(WorkerConfig(max_attempts=5), rng=random.Random(seed), clock=lambda: now)
        next_runs = [scheduler.decide(a).next_run_at for a in (1, 2, 3, 4)]
        assert all(x is not None for x in next_runs)
        assert next_runs == sorted(next_runs)
        assert len(set(next_runs)) == len(next_runs)


def test_custom_max_attempts_is_honored() -> None:
    scheduler = RetryScheduler(WorkerConfig(max_attempts=2), rng=random.Random(0))
    assert scheduler.decide(1).status == JOB_RETRY
    assert scheduler.decide(2).status == JOB_FAILED
