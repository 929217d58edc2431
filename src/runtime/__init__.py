"""Runtime orchestration for ingredient-normalization jobs.

This layer is responsible for:
- claiming eligible jobs from SQLite (one atomic claim per run)
- classifying each job (processor) and persisting its outcome (coordinator)
- retry timing with backoff and jitter

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""
