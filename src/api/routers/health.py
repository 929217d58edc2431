from __future__ import annotations

import importlib.metadata
import time
from pathlib import Path
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.storage.sqlite_store import JOB_STATUSES
from src.storage.sqlite_store import SCHEMA_VERSION
from src.storage.sqlite_store import SQLiteStore
from src.storage.sqlite_store import default_db_path


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


def _jobs_by_status() -> dict[str, int]:
    # Read-only view: an absent database means an empty queue, not one to create.
    db_path = Path(default_db_path()).expanduser()
    if not db_path.exists():
        return {s: 0 for s in JOB_STATUSES}
    store = SQLiteStore(db_path)
    try:
        return store.count_jobs_by_status()
    finally:
        store.close()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "recipes-normalization-worker",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/worker")
def system_worker(request: Request) -> dict[str, Any]:
    scheduler = getattr(request.app.state, "worker_scheduler", None)
    scheduler_snapshot: dict[str, Any] = {"enabled": scheduler is not None, "running": False}
    if scheduler is not None:
        scheduler_snapshot.update(scheduler.status_snapshot())

    return {
        "ts": time.time(),
        "scheduler": scheduler_snapshot,
        "queue": {"jobs_by_status": _jobs_by_status()},
    }
