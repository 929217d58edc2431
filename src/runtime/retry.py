from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from src.config.load_config import WorkerConfig
from src.storage.sqlite_store import JOB_FAILED, JOB_RETRY


def backoff_base_s(attempt: int, schedule: Sequence[float]) -> float:
    """Base delay for a 1-based attempt number; saturates at the last table entry."""
    if not schedule:
        raise ValueError("backoff schedule must not be empty")
    idx = min(max(int(attempt), 1) - 1, len(schedule) - 1)
    return float(schedule[idx])


def jittered_delay_s(
    attempt: int,
    *,
    schedule: Sequence[float],
    jitter_ratio: float,
    rng: random.Random,
) -> float:
    base = backoff_base_s(attempt, schedule)
    u = rng.uniform(-float(jitter_ratio), float(jitter_ratio))
    return base * (1.0 + u)


@dataclass(frozen=True)
class RetryDecision:
    status: str
    attempts: int
    next_run_at: float | None = None
    delay_s: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status == JOB_FAILED


class RetryScheduler:
    """Turns a failed attempt into RETRY (with a jittered backoff) or terminal FAILED.

    `attempts` is the number of the attempt that just failed. Randomness and the clock
    are injected so callers can pin them down.
    """

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or WorkerConfig()
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return int(self._config.max_attempts)

    def decide(self, attempts: int) -> RetryDecision:
        attempts = max(int(attempts), 1)
        if attempts >= self.max_attempts:
            return RetryDecision(status=JOB_FAILED, attempts=attempts)

        delay = jittered_delay_s(
            attempts,
            schedule=self._config.retry_backoff_s,
            jitter_ratio=self._config.jitter_ratio,
            rng=self._rng,
        )
        return RetryDecision(
            status=JOB_RETRY,
            attempts=attempts,
            next_run_at=self._clock() + delay,
            delay_s=delay,
        )
