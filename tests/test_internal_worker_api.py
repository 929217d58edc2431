from __future__ import annotations

import os
import tempfile
from typing import Any

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.api.dependencies import get_normalizer
from src.normalization.ingredients import NormalizationRequest, NormalizationSuccess, NormalizedIngredient
from src.storage.sqlite_store import JOB_DONE, RECIPE_READY, SQLiteStore


RUN_PATH = "/internal/workers/normalized-ingredients/run"
SECRET = "s3cret"


class _FakeNormalizer:
    def __init__(self) -> None:
        self.calls = 0

    def normalize(self, request: NormalizationRequest) -> Any:
        self.calls += 1
        return NormalizationSuccess(
            items=[NormalizedIngredient(amount=1, unit="szt.", name=t) for t in request.item_texts],
            confidence=1.0,
        )


def _client(fake: _FakeNormalizer) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_normalizer] = lambda: fake
    return TestClient(app)


def _env(monkeypatch: pytest.MonkeyPatch, td: str, *, secret: str | None = SECRET) -> str:
    db_path = os.path.join(td, "app.db")
    monkeypatch.setenv("RECIPES_SQLITE_PATH", db_path)
    monkeypatch.delenv("RECIPES_CONFIG_PATH", raising=False)
    monkeypatch.delenv("RECIPES_ENABLE_SCHEDULER", raising=False)
    monkeypatch.delenv("NORMALIZED_INGREDIENTS_WORKER_BATCH_SIZE", raising=False)
    if secret is None:
        monkeypatch.delenv("INTERNAL_WORKER_SECRET", raising=False)
    else:
        monkeypatch.setenv("INTERNAL_WORKER_SECRET", secret)
    return db_path


def _seed(db_path: str, n: int = 1) -> list[int]:
    store = SQLiteStore(db_path)
    try:
        job_ids = []
        for i in range(n):
            recipe = store.create_recipe(
                user_id="u1",
                name=f"Przepis {i}",
                ingredients=[{"type": "item", "content": "jajko"}],
            )
            job_ids.append(store.enqueue_job(recipe_id=recipe.recipe_id, user_id="u1"))
        return job_ids
    finally:
        store.close()


def test_run_requires_valid_secret_and_has_no_side_effects(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        [job_id] = _seed(db_path)
        fake = _FakeNormalizer()
        client = _client(fake)

        r = client.post(RUN_PATH)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "unauthorized"

        r = client.post(RUN_PATH, headers={"x-internal-worker-secret": "wrong"})
        assert r.status_code == 401

        assert fake.calls == 0
        store = SQLiteStore(db_path)
        try:
            row = store.get_job(job_id=job_id)
            assert row["attempts"] == 0
            assert row["locked_until"] is None
        finally:
            store.close()


def test_run_without_configured_secret_is_internal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, secret=None)
        r = _client(_FakeNormalizer()).post(RUN_PATH, headers={"x-internal-worker-secret": "anything"})
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "internal"


def test_run_processes_claimed_jobs(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        job_ids = _seed(db_path, n=2)
        fake = _FakeNormalizer()
        client = _client(fake)

        r = client.post(RUN_PATH, headers={"x-internal-worker-secret": SECRET})
        assert r.status_code == 200
        assert r.json() == {"processed": 2, "succeeded": 2, "failed": 0, "skipped": 0}

        r = client.post(RUN_PATH, headers={"x-internal-worker-secret": SECRET})
        assert r.status_code == 200
        assert r.json() == {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        store = SQLiteStore(db_path)
        try:
            for job_id in job_ids:
                row = store.get_job(job_id=job_id)
                assert row["status"] == JOB_DONE
                recipe = store.get_recipe(recipe_id=int(row["recipe_id"]))
                assert recipe["normalized_ingredients_status"] == RECIPE_READY
        finally:
            store.close()


def test_run_honors_batch_size_env(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        _seed(db_path, n=3)
        monkeypatch.setenv("NORMALIZED_INGREDIENTS_WORKER_BATCH_SIZE", "2")

        r = _client(_FakeNormalizer()).post(RUN_PATH, headers={"x-internal-worker-secret": SECRET})
        assert r.json()["processed"] == 2


def test_unknown_internal_paths_are_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        client = _client(_FakeNormalizer())

        r = client.post("/internal/workers/other/run", headers={"x-internal-worker-secret": SECRET})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "not_found"

        r = client.get(RUN_PATH)
        assert r.status_code == 404


def test_system_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        _seed(db_path, n=2)
        client = _client(_FakeNormalizer())

        assert client.get("/api/v1/healthz").json() == {"status": "ok"}

        v = client.get("/api/v1/version").json()
        assert v["service"] == "recipes-normalization-worker"
        assert v["api"] == "v1"

        w = client.get("/api/v1/system/worker").json()
        assert w["scheduler"]["enabled"] is False
        assert w["queue"]["jobs_by_status"]["QUEUED"] == 2


def test_system_worker_does_not_create_missing_database(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        db_dir = os.path.join(td, "not-yet")
        monkeypatch.setenv("RECIPES_SQLITE_PATH", os.path.join(db_dir, "app.db"))
        client = _client(_FakeNormalizer())

        r = client.get("/api/v1/system/worker")
        assert r.status_code == 200
        assert r.json()["queue"]["jobs_by_status"] == {"QUEUED": 0, "RETRY": 0, "DONE": 0, "FAILED": 0}
        assert not os.path.exists(db_dir)
