from __future__ import annotations

import random
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from src.config.load_config import (
    DEFAULT_ALLOWED_UNITS,
    AppConfig,
    WorkerConfig,
    load_app_config,
    resolve_batch_size,
)
from src.normalization.ingredients import LLMIngredientNormalizer, NormalizationService
from src.runtime.coordinator import ClaimLostError, JobStoreError, StatusCoordinator
from src.runtime.outcomes import FAILURE_INTERNAL, Failed, JobOutcome, Skipped, Succeeded
from src.runtime.processor import JobProcessor
from src.runtime.retry import RetryScheduler
from src.storage.sqlite_store import ClaimedJob, SQLiteStore, default_db_path
from src.utils.structured_log import get_logger


logger = get_logger(__name__)


class ClaimError(RuntimeError):
    """Claiming jobs failed; the run did not touch any job."""


@dataclass
class WorkerRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    duration_s: float = 0.0

    def as_response(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class NormalizationWorker:
    """One bounded worker run: claim up to N jobs, then process them strictly sequentially.

    The only coordination with concurrent runs is the store's atomic claim. A failure
    while processing or persisting one job is recorded against that job and never stops
    the loop; a failed claim aborts the run with `ClaimError`.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        normalizer: NormalizationService,
        worker_config: WorkerConfig | None = None,
        allowed_units: tuple[str, ...] = DEFAULT_ALLOWED_UNITS,
        language: str = "pl",
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = worker_config or WorkerConfig()
        self._clock = clock
        self._processor = JobProcessor(normalizer, allowed_units=allowed_units, language=language)
        self._coordinator = StatusCoordinator(
            store,
            RetryScheduler(self._config, rng=rng, clock=clock),
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        store: SQLiteStore,
        app_config: AppConfig,
        *,
        normalizer: NormalizationService | None = None,
        rng: random.Random | None = None,
    ) -> NormalizationWorker:
        return cls(
            store,
            normalizer=normalizer or LLMIngredientNormalizer(app_config.normalization),
            worker_config=app_config.worker,
            allowed_units=app_config.normalization.allowed_units,
            language=app_config.normalization.language,
            rng=rng,
        )

    def resolve_batch_size(self, batch_size: int | None = None) -> int:
        if batch_size is None:
            return resolve_batch_size(self._config)
        return resolve_batch_size(self._config, env_value=str(batch_size))

    def run_batch(self, batch_size: int | None = None) -> WorkerRunSummary:
        started = time.monotonic()
        limit = self.resolve_batch_size(batch_size)

        try:
            jobs = self._store.claim_normalization_jobs(limit, lease_s=self._config.claim_lease_s, now=self._clock())
        except sqlite3.Error as e:
            logger.error("Failed to claim normalization jobs", extra={"batch_size": limit}, exc_info=True)
            raise ClaimError(f"Failed to claim jobs: {e}") from e

        summary = WorkerRunSummary()
        if not jobs:
            logger.info("No jobs to process", extra={"batch_size": limit})
            summary.duration_s = time.monotonic() - started
            return summary

        logger.info(
            "Claimed normalization jobs",
            extra={"batch_size": limit, "claimed": len(jobs), "job_ids": [j.job_id for j in jobs]},
        )

        for job in jobs:
            self._run_one(job, summary)

        summary.duration_s = time.monotonic() - started
        logger.info(
            "Worker run completed",
            extra={**summary.as_response(), "duration_s": round(summary.duration_s, 3)},
        )
        return summary

    def _renew(self, job: ClaimedJob, summary: WorkerRunSummary) -> bool:
        # The claim-time lease only covers the first job; later ones in a long batch need a fresh one.
        try:
            held = self._store.renew_claim(
                job.job_id,
                job.claim_token,
                lease_s=self._config.claim_lease_s,
                now=self._clock(),
            )
        except sqlite3.Error as e:
            logger.error("Failed to renew job claim", extra={"job_id": job.job_id}, exc_info=True)
            summary.errors.append({"job_id": job.job_id, "stage": "claim", "error": f"Failed to renew claim: {e}"})
            return False
        if not held:
            logger.warning(
                "Job claim lost before processing, skipping job",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id},
            )
            summary.errors.append({"job_id": job.job_id, "stage": "claim", "error": "Job claim lost before processing"})
        return held

    def _run_one(self, job: ClaimedJob, summary: WorkerRunSummary) -> None:
        if not self._renew(job, summary):
            return
        summary.processed += 1
        logger.info(
            "Processing job",
            extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "attempts": job.attempts},
        )
        self._trace(job, "job_claimed", {"attempts": job.attempts, "previous_error": job.last_error})

        outcome: JobOutcome
        try:
            outcome = self._processor.process(job)
        except Exception as e:
            logger.error(
                "Unexpected error while processing job",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id},
                exc_info=True,
            )
            summary.errors.append({"job_id": job.job_id, "stage": "process", "error": f"{type(e).__name__}: {e}"})
            self._trace(job, "job_internal_error", {"stage": "process", "error": f"{type(e).__name__}: {e}"})
            outcome = Failed(reason=f"Internal error: {e}", kind=FAILURE_INTERNAL)

        try:
            self._coordinator.finalize(job, outcome)
        except ClaimLostError as e:
            # Another run owns the job now; its outcome is the one that counts.
            summary.failed += 1
            summary.errors.append({"job_id": job.job_id, "stage": "claim_lost", "error": str(e)})
            return
        except JobStoreError as e:
            # Data-consistency risk: the job keeps its lease and is retried once it expires.
            summary.failed += 1
            summary.errors.append({"job_id": job.job_id, "stage": "finalize", "error": str(e)})
            return
        except Exception as e:
            logger.error(
                "Unexpected error while finalizing job",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id},
                exc_info=True,
            )
            summary.failed += 1
            summary.errors.append({"job_id": job.job_id, "stage": "finalize", "error": f"{type(e).__name__}: {e}"})
            return

        if isinstance(outcome, Succeeded):
            summary.succeeded += 1
        elif isinstance(outcome, Skipped):
            summary.skipped += 1
        else:
            summary.failed += 1

    def _trace(self, job: ClaimedJob, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self._store.append_event(job.job_id, event_type, payload)
        except sqlite3.Error:
            logger.error("Failed to record job event", extra={"job_id": job.job_id, "event_type": event_type}, exc_info=True)


def run_worker_once(
    *,
    db_path: str | None = None,
    batch_size: int | None = None,
    app_config: AppConfig | None = None,
    normalizer: NormalizationService | None = None,
) -> WorkerRunSummary:
    """Open a store, run one batch, close the store."""
    cfg = app_config or load_app_config()
    store = SQLiteStore(db_path)
    try:
        worker = NormalizationWorker.from_config(store, cfg, normalizer=normalizer)
        return worker.run_batch(batch_size)
    finally:
        store.close()


class WorkerScheduler:
    """Optional background thread that triggers one worker run every `interval_s` seconds.

    Meant for single-instance deployments; overlapping runs from other triggers are
    still kept apart by the store's claim.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        app_config: AppConfig | None = None,
        normalizer: NormalizationService | None = None,
        interval_s: float | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._app_config = app_config or load_app_config()
        self._normalizer = normalizer
        self._interval_s = float(interval_s or self._app_config.worker.schedule_interval_s)
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._last_run_at: float | None = None
        self._last_summary: dict[str, int] | None = None
        self._last_error: str | None = None
        self._runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_s": self._interval_s,
            "db_path": self._db_path,
            "runs": self._runs,
            "last_run_at": self._last_run_at,
            "last_summary": self._last_summary,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="normalization-worker-scheduler", daemon=True)
        self._thread.start()
        logger.info("Worker scheduler started", extra={"interval_s": self._interval_s})

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)
        logger.info("Worker scheduler stopped")

    def tick(self) -> WorkerRunSummary | None:
        self._last_run_at = time.time()
        self._runs += 1
        try:
            summary = run_worker_once(
                db_path=self._db_path,
                app_config=self._app_config,
                normalizer=self._normalizer,
            )
        except ClaimError as e:
            self._last_error = str(e)
            return None
        self._last_error = None
        self._last_summary = summary.as_response()
        return summary

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                # Never let one bad tick kill the thread.
                logger.error("Scheduled worker run failed", exc_info=True)
                self._last_error = f"{type(e).__name__}: {e}"
            self._stop.wait(self._interval_s)
