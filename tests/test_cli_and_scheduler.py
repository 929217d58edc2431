from __future__ import annotations

import json
import os
import tempfile

import pytest

from src.cli.run_worker import main
from src.config.load_config import load_app_config
from src.normalization.ingredients import NormalizationFailure, NormalizationRequest
from src.runtime.worker import WorkerScheduler
from src.storage.sqlite_store import JOB_RETRY, SQLiteStore


class _RejectingNormalizer:
    def normalize(self, request: NormalizationRequest) -> NormalizationFailure:
        return NormalizationFailure(reasons=["cannot parse"])


def test_cli_run_on_empty_queue_prints_zero_summary(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("RECIPES_CONFIG_PATH", raising=False)
    with tempfile.TemporaryDirectory() as td:
        code = main(["--db-path", os.path.join(td, "app.db"), "--batch-size", "5"])
        assert code == 0
        out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert out["processed"] == 0
        assert out["errors"] == []


def test_cli_rejects_out_of_range_batch_size() -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(SystemExit):
            main(["--db-path", os.path.join(td, "app.db"), "--batch-size", "0"])


def test_cli_missing_config_exits_nonzero() -> None:
    with tempfile.TemporaryDirectory() as td:
        code = main(["--db-path", os.path.join(td, "app.db"), "--config", os.path.join(td, "missing.toml")])
        assert code == 1


def test_scheduler_tick_runs_one_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RECIPES_CONFIG_PATH", raising=False)
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        store = SQLiteStore(db_path)
        try:
            recipe = store.create_recipe(user_id="u1", name="Zupa", ingredients=[{"type": "item", "content": "woda"}])
            job_id = store.enqueue_job(recipe_id=recipe.recipe_id, user_id="u1")
        finally:
            store.close()

        scheduler = WorkerScheduler(db_path=db_path, app_config=load_app_config(), normalizer=_RejectingNormalizer())
        summary = scheduler.tick()
        assert summary is not None
        assert summary.as_response() == {"processed": 1, "succeeded": 0, "failed": 1, "skipped": 0}

        snap = scheduler.status_snapshot()
        assert snap["running"] is False
        assert snap["runs"] == 1
        assert snap["last_summary"]["failed"] == 1
        assert snap["last_error"] is None

        store = SQLiteStore(db_path)
        try:
            assert store.get_job(job_id=job_id)["status"] == JOB_RETRY
        finally:
            store.close()


def test_scheduler_start_stop() -> None:
    with tempfile.TemporaryDirectory() as td:
        scheduler = WorkerScheduler(
            db_path=os.path.join(td, "app.db"),
            app_config=load_app_config(),
            normalizer=_RejectingNormalizer(),
            interval_s=3600,
        )
        scheduler.start()
        try:
            assert scheduler.running is True
        finally:
            scheduler.stop()
        assert scheduler.running is False
