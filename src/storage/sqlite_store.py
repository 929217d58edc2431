from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 1

JOB_QUEUED = "QUEUED"
JOB_RETRY = "RETRY"
JOB_DONE = "DONE"
JOB_FAILED = "FAILED"
JOB_STATUSES = (JOB_QUEUED, JOB_RETRY, JOB_DONE, JOB_FAILED)

RECIPE_PENDING = "PENDING"
RECIPE_READY = "READY"
RECIPE_FAILED = "FAILED"
RECIPE_STATUSES = (RECIPE_PENDING, RECIPE_READY, RECIPE_FAILED)

# Eligibility predicate shared by the claim SELECT and its compare-and-swap UPDATE.
# Parameters: (now, now).
_CLAIM_ELIGIBLE_SQL = """
(
  status = 'QUEUED'
  OR (status = 'RETRY' AND next_run_at IS NOT NULL AND next_run_at <= ?)
)
AND (locked_until IS NULL OR locked_until <= ?)
"""


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _parse_ingredients(raw: str | None) -> list[dict[str, Any]]:
    """Decode a recipe's ingredient list; anything but a JSON list of objects is a ValueError."""
    if raw is None:
        raise ValueError("Recipe ingredient content is missing")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed ingredients_json: {e}") from e
    if not isinstance(data, list):
        raise ValueError(f"ingredients_json must be a list, got {type(data).__name__}")
    if not all(isinstance(entry, dict) for entry in data):
        raise ValueError("ingredients_json entries must be objects")
    return [dict(entry) for entry in data]


def default_db_path() -> str:
    return os.getenv("RECIPES_SQLITE_PATH", "data/app.db")


@dataclass(frozen=True)
class RecipeRecord:
    recipe_id: int
    user_id: str
    name: str
    created_at: float
    normalized_ingredients_status: str


@dataclass(frozen=True)
class ClaimedJob:
    """A job taken by one worker run, with the recipe content it needs.

    `ingredients_error` is set (and `ingredients` left empty) when the stored content
    could not be decoded; the job is still returned so the run can fail it.
    """

    job_id: int
    recipe_id: int
    user_id: str
    attempts: int
    last_error: str | None
    ingredients: list[dict[str, Any]] = field(default_factory=list)
    claim_token: str = ""
    ingredients_error: str | None = None


def _claimed_job_from_row(row: sqlite3.Row, *, token: str) -> ClaimedJob:
    try:
        ingredients = _parse_ingredients(row["ingredients_json"])
        error = None
    except ValueError as e:
        ingredients = []
        error = str(e)
    return ClaimedJob(
        job_id=int(row["job_id"]),
        recipe_id=int(row["recipe_id"]),
        user_id=str(row["user_id"]),
        attempts=int(row["attempts"]),
        last_error=row["last_error"],
        ingredients=ingredients,
        claim_token=token,
        ingredients_error=error,
    )


class SQLiteStore:
    """SQLite-backed store for recipes, normalization jobs and per-job trace events.

    The only cross-invocation coordination is `claim_normalization_jobs`: it runs in a
    `BEGIN IMMEDIATE` transaction and marks rows with a lease via a conditional update,
    so overlapping worker runs (threads, processes) never receive the same job.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        Methods called inside must be passed `commit=False`.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS recipes (
              recipe_id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              name TEXT NOT NULL,
              ingredients_json TEXT NOT NULL,
              normalized_ingredients_status TEXT NOT NULL DEFAULT 'PENDING',
              normalized_ingredients_updated_at REAL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS normalized_ingredients_jobs (
              job_id INTEGER PRIMARY KEY AUTOINCREMENT,
              recipe_id INTEGER NOT NULL,
              user_id TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              last_error TEXT,
              next_run_at REAL,
              locked_until REAL,
              claim_token TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              FOREIGN KEY (recipe_id) REFERENCES recipes(recipe_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS recipe_normalized_ingredients (
              recipe_id INTEGER PRIMARY KEY,
              items_json TEXT NOT NULL,
              updated_at REAL NOT NULL,
              FOREIGN KEY (recipe_id) REFERENCES recipes(recipe_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_events (
              event_id TEXT PRIMARY KEY,
              job_id INTEGER NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (job_id) REFERENCES normalized_ingredients_jobs(job_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_status_next ON normalized_ingredients_jobs(status, next_run_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_recipe ON normalized_ingredients_jobs(recipe_id, status);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job_ts ON job_events(job_id, created_at);")
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

        current = self._get_schema_version()
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({SCHEMA_VERSION}).")

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    # --- Recipes
    def create_recipe(
        self,
        *,
        user_id: str,
        name: str,
        ingredients: list[dict[str, Any]],
        status: str = RECIPE_PENDING,
    ) -> RecipeRecord:
        if status not in RECIPE_STATUSES:
            raise ValueError(f"Invalid recipe status: {status!r}")
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            INSERT INTO recipes(
              user_id, name, ingredients_json, normalized_ingredients_status, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?);
            """,
            (user_id, name, _json_dumps(ingredients), status, ts, ts),
        )
        self._conn.commit()
        return RecipeRecord(
            recipe_id=int(cur.lastrowid),
            user_id=user_id,
            name=name,
            created_at=ts,
            normalized_ingredients_status=status,
        )

    def get_recipe(self, *, recipe_id: int) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              recipe_id, user_id, name, ingredients_json, normalized_ingredients_status,
              normalized_ingredients_updated_at, created_at, updated_at
            FROM recipes
            WHERE recipe_id = ?
            LIMIT 1;
            """,
            (recipe_id,),
        ).fetchone()

    def update_recipe_ingredients(self, recipe_id: int, ingredients: list[dict[str, Any]]) -> int:
        """Replace a recipe's ingredient content and queue a fresh normalization job for it."""
        ts = _utc_ts()
        with self.transaction():
            updated = self._conn.execute(
                """
                UPDATE recipes
                SET ingredients_json = ?, normalized_ingredients_status = 'PENDING', updated_at = ?
                WHERE recipe_id = ?;
                """,
                (_json_dumps(ingredients), ts, recipe_id),
            )
            if updated.rowcount != 1:
                raise KeyError(f"Recipe not found: {recipe_id}")
            row = self.get_recipe(recipe_id=recipe_id)
            return self.enqueue_job(recipe_id=recipe_id, user_id=str(row["user_id"]), commit=False)

    def update_recipe_status(
        self,
        recipe_id: int,
        status: str,
        *,
        updated_at: float | None = None,
        commit: bool = True,
    ) -> None:
        """Set the recipe's normalization status; READY stamps a timestamp, anything else clears it."""
        if status not in RECIPE_STATUSES:
            raise ValueError(f"Invalid recipe status: {status!r}")
        stamp = (updated_at if updated_at is not None else _utc_ts()) if status == RECIPE_READY else None
        self._conn.execute(
            """
            UPDATE recipes
            SET normalized_ingredients_status = ?, normalized_ingredients_updated_at = ?
            WHERE recipe_id = ?;
            """,
            (status, stamp, recipe_id),
        )
        if commit:
            self._conn.commit()

    # --- Normalized ingredients
    def upsert_normalized_ingredients(
        self, recipe_id: int, items: list[dict[str, Any]], *, commit: bool = True
    ) -> None:
        """Replace the whole normalized list for a recipe (never merges)."""
        self._conn.execute(
            """
            INSERT INTO recipe_normalized_ingredients(recipe_id, items_json, updated_at)
            VALUES(?, ?, ?)
            ON CONFLICT(recipe_id) DO UPDATE SET
              items_json = excluded.items_json,
              updated_at = excluded.updated_at;
            """,
            (recipe_id, _json_dumps(items), _utc_ts()),
        )
        if commit:
            self._conn.commit()

    def get_normalized_ingredients(self, *, recipe_id: int) -> list[dict[str, Any]] | None:
        row = self._conn.execute(
            "SELECT items_json FROM recipe_normalized_ingredients WHERE recipe_id = ? LIMIT 1;",
            (recipe_id,),
        ).fetchone()
        if row is None:
            return None
        return list(json.loads(str(row["items_json"])))

    # --- Jobs
    def enqueue_job(self, *, recipe_id: int, user_id: str, commit: bool = True) -> int:
        """Queue a normalization job for a recipe and return its id.

        An unclaimed QUEUED job for the same recipe is reused. Unclaimed RETRY jobs are
        superseded (closed as DONE) since they would normalize stale content.
        """
        ts = _utc_ts()
        existing = self._conn.execute(
            """
            SELECT job_id FROM normalized_ingredients_jobs
            WHERE recipe_id = ? AND status = 'QUEUED' AND (locked_until IS NULL OR locked_until <= ?)
            ORDER BY created_at ASC, job_id ASC
            LIMIT 1;
            """,
            (recipe_id, ts),
        ).fetchone()
        if existing is not None:
            job_id = int(existing["job_id"])
        else:
            cur = self._conn.execute(
                """
                INSERT INTO normalized_ingredients_jobs(
                  recipe_id, user_id, status, attempts, created_at, updated_at
                ) VALUES(?, ?, 'QUEUED', 0, ?, ?);
                """,
                (recipe_id, user_id, ts, ts),
            )
            job_id = int(cur.lastrowid)

        self._conn.execute(
            """
            UPDATE normalized_ingredients_jobs
            SET status = 'DONE', next_run_at = NULL, last_error = ?, updated_at = ?
            WHERE recipe_id = ? AND status = 'RETRY' AND job_id != ?
              AND (locked_until IS NULL OR locked_until <= ?);
            """,
            (f"Superseded by job {job_id}", ts, recipe_id, job_id, ts),
        )
        if commit:
            self._conn.commit()
        return job_id

    def get_job(self, *, job_id: int) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              job_id, recipe_id, user_id, status, attempts, last_error, next_run_at,
              locked_until, claim_token, created_at, updated_at
            FROM normalized_ingredients_jobs
            WHERE job_id = ?
            LIMIT 1;
            """,
            (job_id,),
        ).fetchone()

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(1) AS c FROM normalized_ingredients_jobs GROUP BY status;"
        ).fetchall()
        counts = {s: 0 for s in JOB_STATUSES}
        counts.update({str(r["status"]): int(r["c"]) for r in rows})
        return counts

    def claim_normalization_jobs(
        self,
        limit: int,
        *,
        lease_s: float = 900.0,
        now: float | None = None,
    ) -> list[ClaimedJob]:
        """Atomically claim up to `limit` eligible jobs, oldest-eligible first.

        Each claimed row gets `attempts + 1`, a lease (`locked_until`) and a claim token.
        The status column is left as QUEUED/RETRY; `update_job` clears the lease when the
        job is finalized, and an expired lease makes the job claimable again.
        """
        if int(limit) < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        ts = _utc_ts() if now is None else float(now)
        token = _new_id("claim")

        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                f"""
                SELECT job_id
                FROM normalized_ingredients_jobs
                WHERE {_CLAIM_ELIGIBLE_SQL}
                ORDER BY
                  CASE WHEN status = 'RETRY' THEN next_run_at ELSE created_at END ASC,
                  job_id ASC
                LIMIT ?;
                """,
                (ts, ts, int(limit)),
            ).fetchall()
            if not rows:
                return []

            for row in rows:
                self._conn.execute(
                    f"""
                    UPDATE normalized_ingredients_jobs
                    SET
                      attempts = attempts + 1,
                      locked_until = ?,
                      claim_token = ?,
                      updated_at = ?
                    WHERE job_id = ? AND {_CLAIM_ELIGIBLE_SQL};
                    """,
                    (ts + float(lease_s), token, ts, int(row["job_id"]), ts, ts),
                )

            claimed = self._conn.execute(
                """
                SELECT
                  j.job_id, j.recipe_id, j.user_id, j.attempts, j.last_error, r.ingredients_json
                FROM normalized_ingredients_jobs AS j
                LEFT JOIN recipes AS r ON r.recipe_id = j.recipe_id
                WHERE j.claim_token = ?
                ORDER BY
                  CASE WHEN j.status = 'RETRY' THEN j.next_run_at ELSE j.created_at END ASC,
                  j.job_id ASC;
                """,
                (token,),
            ).fetchall()

        return [_claimed_job_from_row(r, token=token) for r in claimed]

    def renew_claim(
        self,
        job_id: int,
        claim_token: str,
        *,
        lease_s: float = 900.0,
        now: float | None = None,
    ) -> bool:
        """Extend the lease of a job still held under `claim_token`.

        Returns False when the claim was released or taken over by another run.
        """
        ts = _utc_ts() if now is None else float(now)
        cur = self._conn.execute(
            """
            UPDATE normalized_ingredients_jobs
            SET locked_until = ?, updated_at = ?
            WHERE job_id = ? AND claim_token = ?;
            """,
            (ts + float(lease_s), ts, job_id, claim_token),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def update_job(
        self,
        job_id: int,
        *,
        status: str,
        attempts: int,
        last_error: str | None = None,
        next_run_at: float | None = None,
        claim_token: str | None = None,
        commit: bool = True,
    ) -> bool:
        """Write a job's post-processing state and release its claim.

        `attempts` never moves backwards; `last_error` is only overwritten when given;
        `next_run_at` is kept only for RETRY. With `claim_token`, the write only applies
        while that claim still holds the job. Returns whether a row was updated.
        """
        if status not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status!r}")
        if status == JOB_RETRY and next_run_at is None:
            raise ValueError("next_run_at is required for RETRY")
        params: list[Any] = [
            status,
            int(attempts),
            last_error,
            next_run_at if status == JOB_RETRY else None,
            _utc_ts(),
            job_id,
        ]
        where = "job_id = ?"
        if claim_token is not None:
            where += " AND claim_token = ?"
            params.append(claim_token)
        cur = self._conn.execute(
            f"""
            UPDATE normalized_ingredients_jobs
            SET
              status = ?,
              attempts = MAX(attempts, ?),
              last_error = COALESCE(?, last_error),
              next_run_at = ?,
              locked_until = NULL,
              claim_token = NULL,
              updated_at = ?
            WHERE {where};
            """,
            tuple(params),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    # --- Events (per-job trace)
    def append_event(self, job_id: int, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO job_events(event_id, job_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, job_id, _utc_ts(), event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def list_events_for_job(self, *, job_id: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, created_at, event_type, payload_json
            FROM job_events
            WHERE job_id = ?
            ORDER BY created_at ASC, rowid ASC;
            """,
            (job_id,),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
