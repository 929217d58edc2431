from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from src.config.load_config import ConfigError, load_app_config
from src.runtime.worker import ClaimError, run_worker_once
from src.utils.structured_log import setup_logging


def _clamp_int(name: str, value: int, *, min_v: int, max_v: int) -> int:
    if value < min_v or value > max_v:
        raise SystemExit(f"{name} must be in [{min_v}..{max_v}], got {value}")
    return value


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one ingredient-normalization worker batch.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Jobs to claim (default: env NORMALIZED_INGREDIENTS_WORKER_BATCH_SIZE or config).",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env RECIPES_SQLITE_PATH or data/app.db).",
    )
    parser.add_argument(
        "--config",
        default="",
        help="TOML config path (default: env RECIPES_CONFIG_PATH or config/default.toml).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging()

    try:
        app_config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    batch_size = None
    if args.batch_size is not None:
        batch_size = _clamp_int(
            "batch_size",
            int(args.batch_size),
            min_v=1,
            max_v=app_config.worker.max_batch_size,
        )

    try:
        summary = run_worker_once(db_path=args.db_path or None, batch_size=batch_size, app_config=app_config)
    except ClaimError as e:
        print(str(e), file=sys.stderr)
        return 1

    print(json.dumps(summary.as_dict(), ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
