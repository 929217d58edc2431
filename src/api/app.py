from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from src.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from src.runtime.worker import WorkerScheduler
from src.utils.structured_log import get_logger, setup_logging

from .routers.health import router as health_router
from .routers.internal import router as internal_router


logger = get_logger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Periodic in-process trigger; off by default (an external scheduler calls /internal).
        if _env_bool("RECIPES_ENABLE_SCHEDULER", False):
            scheduler = WorkerScheduler()
            scheduler.start()
            app.state.worker_scheduler = scheduler
        try:
            yield
        finally:
            scheduler = getattr(app.state, "worker_scheduler", None)
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="Recipes Normalization Worker", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(internal_router, prefix="/internal", tags=["internal"])

    return app


app = create_app()
