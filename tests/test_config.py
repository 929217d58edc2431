from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from src.config.load_config import (
    BATCH_SIZE_ENV,
    DEFAULT_ALLOWED_UNITS,
    ConfigError,
    WorkerConfig,
    load_app_config,
    resolve_batch_size,
)


_TEMPLATES = """
[normalization]
system_prompt_template = "units {{allowed_units}}"
user_prompt_template = "{{ingredients}}"
"""


def _write(td: str, text: str) -> Path:
    p = Path(td) / "cfg.toml"
    p.write_text(text, encoding="utf-8")
    return p


def test_default_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RECIPES_CONFIG_PATH", raising=False)
    cfg = load_app_config()
    assert cfg.worker.batch_size == 10
    assert cfg.worker.max_batch_size == 100
    assert cfg.worker.max_attempts == 5
    assert cfg.worker.retry_backoff_s == (60.0, 300.0, 1800.0, 7200.0, 43200.0)
    assert cfg.worker.jitter_ratio == 0.3
    assert cfg.normalization.allowed_units == DEFAULT_ALLOWED_UNITS
    assert cfg.normalization.language == "pl"
    assert cfg.normalization.model == "gpt-4o-mini"
    assert "{{ingredients}}" in cfg.normalization.user_prompt_template


def test_config_path_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        p = _write(td, "[worker]\nbatch_size = 25\n" + _TEMPLATES)
        monkeypatch.setenv("RECIPES_CONFIG_PATH", str(p))
        assert load_app_config().worker.batch_size == 25


@pytest.mark.parametrize(
    "worker_toml",
    [
        "batch_size = 0",
        "batch_size = 500",
        'batch_size = "ten"',
        "jitter_ratio = 1.5",
        "retry_backoff_s = []",
        "retry_backoff_s = [60, -1]",
        "claim_lease_s = 0",
    ],
)
def test_invalid_worker_values_fall_back_to_defaults(worker_toml: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = load_app_config(_write(td, f"[worker]\n{worker_toml}\n" + _TEMPLATES))
        assert cfg.worker == WorkerConfig()


def test_missing_file_and_templates_are_errors() -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(Path(td) / "nope.toml")
        with pytest.raises(ConfigError):
            load_app_config(_write(td, "[normalization]\nlanguage = 'pl'\n"))
        with pytest.raises(ConfigError):
            load_app_config(_write(td, "[worker\n"))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("25", 25),
        (" 1 ", 1),
        ("100", 100),
        ("0", 10),
        ("101", 10),
        ("-3", 10),
        ("abc", 10),
        ("2.5", 10),
        ("", 10),
    ],
)
def test_resolve_batch_size(raw: str, expected: int) -> None:
    assert resolve_batch_size(WorkerConfig(), env_value=raw) == expected


def test_resolve_batch_size_reads_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(BATCH_SIZE_ENV, "7")
    assert resolve_batch_size(WorkerConfig()) == 7
    monkeypatch.delenv(BATCH_SIZE_ENV)
    assert resolve_batch_size(WorkerConfig(batch_size=4)) == 4


def test_claim_lease_must_outlive_one_ai_call() -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(_write(td, "[worker]\nclaim_lease_s = 30\n" + _TEMPLATES))
        with pytest.raises(ConfigError):
            load_app_config(_write(td, "[worker]\nclaim_lease_s = 60\n" + _TEMPLATES))
        cfg = load_app_config(_write(td, "[worker]\nclaim_lease_s = 120\n" + _TEMPLATES))
        assert cfg.worker.claim_lease_s == 120.0
