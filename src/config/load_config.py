from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.utils.structured_log import get_logger


logger = get_logger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]

BATCH_SIZE_ENV = "NORMALIZED_INGREDIENTS_WORKER_BATCH_SIZE"

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_BATCH_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_S: tuple[float, ...] = (60.0, 300.0, 1800.0, 7200.0, 43200.0)
DEFAULT_JITTER_RATIO = 0.3
DEFAULT_CLAIM_LEASE_S = 900.0
DEFAULT_SCHEDULE_INTERVAL_S = 60.0

DEFAULT_ALLOWED_UNITS: tuple[str, ...] = ("g", "ml", "szt.", "ząbek", "łyżeczka", "łyżka", "szczypta", "pęczek")


class ConfigError(RuntimeError):
    pass


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _int_in_range(value: Any, *, key: str, min_v: int, max_v: int, default: int) -> int:
    """Parse a bounded integer, falling back to `default` (with a warning) when invalid."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    else:
        try:
            parsed = int(str(value).strip(), 10)
        except ValueError:
            parsed = None
    if parsed is None or parsed < min_v or parsed > max_v:
        logger.warning(
            "Invalid config value, using default",
            extra={"key": key, "value": value, "default": default, "min": min_v, "max": max_v},
        )
        return default
    return parsed


def _backoff_schedule(value: Any, *, key: str) -> tuple[float, ...]:
    if value is None:
        return DEFAULT_RETRY_BACKOFF_S
    try:
        schedule = tuple(float(v) for v in value)
    except (TypeError, ValueError):
        schedule = ()
    if not schedule or any(v <= 0 for v in schedule):
        logger.warning("Invalid config value, using default", extra={"key": key, "value": value})
        return DEFAULT_RETRY_BACKOFF_S
    return schedule


def _ratio(value: Any, *, key: str, default: float) -> float:
    if value is None:
        return default
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        ratio = -1.0
    if not 0.0 <= ratio < 1.0:
        logger.warning("Invalid config value, using default", extra={"key": key, "value": value, "default": default})
        return default
    return ratio


def _positive_float(value: Any, *, key: str, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = 0.0
    if parsed <= 0:
        logger.warning("Invalid config value, using default", extra={"key": key, "value": value, "default": default})
        return default
    return parsed


@dataclass(frozen=True)
class WorkerConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_s: tuple[float, ...] = DEFAULT_RETRY_BACKOFF_S
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    claim_lease_s: float = DEFAULT_CLAIM_LEASE_S
    schedule_interval_s: float = DEFAULT_SCHEDULE_INTERVAL_S


@dataclass(frozen=True)
class NormalizationConfig:
    system_prompt_template: str
    user_prompt_template: str
    language: str = "pl"
    allowed_units: tuple[str, ...] = DEFAULT_ALLOWED_UNITS
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 4000
    timeout_s: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    normalization: NormalizationConfig
    worker: WorkerConfig = field(default_factory=WorkerConfig)


def default_config_path() -> Path:
    raw = os.getenv("RECIPES_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return REPO_ROOT / "config" / "default.toml"


def resolve_batch_size(worker: WorkerConfig, env_value: str | None = None) -> int:
    """Batch size for one worker run: env override, else config, each bounded to 1..max_batch_size."""
    raw = os.getenv(BATCH_SIZE_ENV) if env_value is None else env_value
    if raw is None or not raw.strip():
        return worker.batch_size
    return _int_in_range(
        raw,
        key=BATCH_SIZE_ENV,
        min_v=1,
        max_v=worker.max_batch_size,
        default=worker.batch_size,
    )


def _load_worker(raw: dict[str, Any]) -> WorkerConfig:
    max_batch_size = _int_in_range(
        raw.get("max_batch_size"),
        key="worker.max_batch_size",
        min_v=1,
        max_v=DEFAULT_MAX_BATCH_SIZE,
        default=DEFAULT_MAX_BATCH_SIZE,
    )
    return WorkerConfig(
        batch_size=_int_in_range(
            raw.get("batch_size"),
            key="worker.batch_size",
            min_v=1,
            max_v=max_batch_size,
            default=min(DEFAULT_BATCH_SIZE, max_batch_size),
        ),
        max_batch_size=max_batch_size,
        max_attempts=_int_in_range(
            raw.get("max_attempts"),
            key="worker.max_attempts",
            min_v=1,
            max_v=100,
            default=DEFAULT_MAX_ATTEMPTS,
        ),
        retry_backoff_s=_backoff_schedule(raw.get("retry_backoff_s"), key="worker.retry_backoff_s"),
        jitter_ratio=_ratio(raw.get("jitter_ratio"), key="worker.jitter_ratio", default=DEFAULT_JITTER_RATIO),
        claim_lease_s=_positive_float(
            raw.get("claim_lease_s"), key="worker.claim_lease_s", default=DEFAULT_CLAIM_LEASE_S
        ),
        schedule_interval_s=_positive_float(
            raw.get("schedule_interval_s"),
            key="worker.schedule_interval_s",
            default=DEFAULT_SCHEDULE_INTERVAL_S,
        ),
    )


def _load_normalization(raw: dict[str, Any]) -> NormalizationConfig:
    units_raw = raw.get("allowed_units")
    if units_raw is None:
        allowed_units = DEFAULT_ALLOWED_UNITS
    else:
        if not isinstance(units_raw, list) or not units_raw:
            raise ConfigError("normalization.allowed_units must be a non-empty list of strings")
        allowed_units = tuple(_as_str(u, key="normalization.allowed_units").strip() for u in units_raw)

    language = _as_str(raw.get("language", "pl"), key="normalization.language").strip()
    if not language:
        raise ConfigError("Invalid normalization.language: empty string")

    return NormalizationConfig(
        system_prompt_template=_as_str(
            raw.get("system_prompt_template"), key="normalization.system_prompt_template"
        ).strip(),
        user_prompt_template=_as_str(
            raw.get("user_prompt_template"), key="normalization.user_prompt_template"
        ).strip(),
        language=language,
        allowed_units=allowed_units,
        model=_as_str(raw.get("model", "gpt-4o-mini"), key="normalization.model"),
        temperature=_as_float(raw.get("temperature", 0.3), key="normalization.temperature"),
        max_tokens=_as_int(raw.get("max_tokens", 4000), key="normalization.max_tokens"),
        timeout_s=_as_float(raw.get("timeout_s", 60.0), key="normalization.timeout_s"),
    )


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    worker = _load_worker(dict(raw.get("worker", {}) or {}))
    normalization = _load_normalization(dict(raw.get("normalization", {}) or {}))
    # The lease is renewed per job, so it only has to outlive one AI call.
    if worker.claim_lease_s <= normalization.timeout_s:
        raise ConfigError(
            f"worker.claim_lease_s ({worker.claim_lease_s}) must exceed "
            f"normalization.timeout_s ({normalization.timeout_s})"
        )
    return AppConfig(worker=worker, normalization=normalization)
