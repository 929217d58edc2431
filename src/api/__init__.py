"""HTTP API layer (FastAPI).

Two surfaces:
- `/internal/workers/normalized-ingredients/run`: shared-secret trigger for one worker run
- `/api/v1`: health, version and queue observability

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""
