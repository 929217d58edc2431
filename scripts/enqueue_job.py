#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Queue an ingredient-normalization job for a recipe (SQLite-backed).")
    p.add_argument("--recipe-id", type=int, required=True, help="Recipe id to normalize.")
    p.add_argument("--user-id", required=True, help="Owner of the recipe.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env RECIPES_SQLITE_PATH or data/app.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    store = SQLiteStore(args.db_path or None)
    try:
        if store.get_recipe(recipe_id=int(args.recipe_id)) is None:
            print(f"Recipe not found: {args.recipe_id}", file=sys.stderr)
            return 1
        job_id = store.enqueue_job(recipe_id=int(args.recipe_id), user_id=str(args.user_id))
        print(job_id)
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
