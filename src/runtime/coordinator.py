from __future__ import annotations

import sqlite3
import time
from typing import Any, Callable

from src.runtime.outcomes import Failed, JobOutcome, Skipped, Succeeded
from src.runtime.retry import RetryScheduler
from src.storage.sqlite_store import (
    JOB_DONE,
    JOB_FAILED,
    JOB_RETRY,
    RECIPE_FAILED,
    RECIPE_READY,
    ClaimedJob,
    SQLiteStore,
)
from src.utils.structured_log import get_logger


logger = get_logger(__name__)


class JobStoreError(RuntimeError):
    """A state write for one job failed; the job may be left claimed until its lease expires."""

    def __init__(self, message: str, *, job_id: int) -> None:
        super().__init__(message)
        self.job_id = job_id


class ClaimLostError(JobStoreError):
    """The job is no longer held by this run's claim; nothing was written for it."""


class StatusCoordinator:
    """Applies a job outcome to the job row, the owning recipe and the normalized list."""

    def __init__(
        self,
        store: SQLiteStore,
        retry: RetryScheduler,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._retry = retry
        self._clock = clock

    def finalize(self, job: ClaimedJob, outcome: JobOutcome) -> str:
        """Persist `outcome` and return the job's new status."""
        try:
            if isinstance(outcome, Succeeded):
                return self._succeeded(job, outcome)
            if isinstance(outcome, Skipped):
                return self._skipped(job, outcome)
            if isinstance(outcome, Failed):
                return self._failed(job, outcome)
        except sqlite3.Error as e:
            logger.error(
                "Failed to persist job outcome",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "outcome": type(outcome).__name__},
                exc_info=True,
            )
            raise JobStoreError(f"Failed to persist job outcome: {e}", job_id=job.job_id) from e
        raise TypeError(f"Unknown job outcome: {type(outcome).__name__}")

    def _succeeded(self, job: ClaimedJob, outcome: Succeeded) -> str:
        now = self._clock()
        with self._store.transaction():
            self._release(job, status=JOB_DONE, attempts=job.attempts, commit=False)
            self._store.upsert_normalized_ingredients(job.recipe_id, outcome.items, commit=False)
            self._store.update_recipe_status(job.recipe_id, RECIPE_READY, updated_at=now, commit=False)

        logger.info(
            "Job completed successfully",
            extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "normalized_count": len(outcome.items)},
        )
        self._event(
            job,
            "job_succeeded",
            {"normalized_count": len(outcome.items), "confidence": outcome.confidence, "warnings": outcome.warnings},
        )
        return JOB_DONE

    def _skipped(self, job: ClaimedJob, outcome: Skipped) -> str:
        self._release(job, status=JOB_DONE, attempts=job.attempts, last_error=outcome.reason)
        logger.info("Job skipped", extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "reason": outcome.reason})
        self._event(job, "job_skipped", {"reason": outcome.reason})
        return JOB_DONE

    def _failed(self, job: ClaimedJob, outcome: Failed) -> str:
        decision = self._retry.decide(job.attempts)

        if decision.status == JOB_RETRY:
            self._release(
                job,
                status=JOB_RETRY,
                attempts=decision.attempts,
                last_error=outcome.reason,
                next_run_at=decision.next_run_at,
            )
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": job.job_id,
                    "recipe_id": job.recipe_id,
                    "attempts": decision.attempts,
                    "delay_s": decision.delay_s,
                    "next_run_at": decision.next_run_at,
                    "failure_kind": outcome.kind,
                    "error": outcome.reason,
                },
            )
            self._event(
                job,
                "job_retry_scheduled",
                {
                    "attempts": decision.attempts,
                    "next_run_at": decision.next_run_at,
                    "delay_s": decision.delay_s,
                    "failure_kind": outcome.kind,
                    "error": outcome.reason,
                },
            )
            return JOB_RETRY

        with self._store.transaction():
            self._release(
                job,
                status=JOB_FAILED,
                attempts=decision.attempts,
                last_error=outcome.reason,
                commit=False,
            )
            self._store.update_recipe_status(job.recipe_id, RECIPE_FAILED, commit=False)

        logger.warning(
            "Job failed permanently after max attempts",
            extra={
                "job_id": job.job_id,
                "recipe_id": job.recipe_id,
                "attempts": decision.attempts,
                "failure_kind": outcome.kind,
                "error": outcome.reason,
            },
        )
        self._event(
            job,
            "job_failed",
            {"attempts": decision.attempts, "failure_kind": outcome.kind, "error": outcome.reason},
        )
        return JOB_FAILED

    def _release(self, job: ClaimedJob, **changes: Any) -> None:
        """Write the job row under this run's claim token; raise ClaimLostError if it no longer holds it."""
        updated = self._store.update_job(job.job_id, claim_token=job.claim_token or None, **changes)
        if not updated:
            logger.warning(
                "Job claim lost before finalize, discarding outcome",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id},
            )
            raise ClaimLostError("Job claim was lost before its outcome could be written", job_id=job.job_id)

    def _event(self, job: ClaimedJob, event_type: str, payload: dict[str, Any]) -> None:
        # The state write already committed; a lost trace event must not turn it into a failure.
        try:
            self._store.append_event(job.job_id, event_type, payload)
        except sqlite3.Error:
            logger.error(
                "Failed to record job event",
                extra={"job_id": job.job_id, "event_type": event_type},
                exc_info=True,
            )
