from __future__ import annotations

import hmac
import os
import threading

from fastapi import Header, Request

from src.api.errors import APIError
from src.config.load_config import AppConfig, ConfigError, load_app_config
from src.normalization.ingredients import LLMIngredientNormalizer, NormalizationService
from src.utils.structured_log import get_logger


logger = get_logger(__name__)

INTERNAL_SECRET_ENV = "INTERNAL_WORKER_SECRET"
INTERNAL_SECRET_HEADER = "x-internal-worker-secret"

_INIT_LOCK = threading.Lock()


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: app config loaded once and cached in `app.state`."""
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached

    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "app_config", None)
        if isinstance(cached2, AppConfig):
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="internal", message=str(e)) from e
        request.app.state.app_config = cfg
        return cfg


def get_normalizer(request: Request) -> NormalizationService:
    """FastAPI dependency: the LLM-backed normalizer, shared for the process lifetime."""
    cached = getattr(request.app.state, "normalizer", None)
    if cached is not None:
        return cached

    cfg = get_app_config(request)
    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "normalizer", None)
        if cached2 is not None:
            return cached2
        normalizer = LLMIngredientNormalizer(cfg.normalization)
        request.app.state.normalizer = normalizer
        return normalizer


def verify_internal_worker_secret(
    x_internal_worker_secret: str | None = Header(default=None, alias=INTERNAL_SECRET_HEADER),
) -> None:
    """Reject the request unless the shared secret header matches `INTERNAL_WORKER_SECRET`."""
    expected = os.getenv(INTERNAL_SECRET_ENV, "")
    if not expected:
        logger.error("INTERNAL_WORKER_SECRET not configured")
        raise APIError(status_code=500, code="internal", message="Worker not configured")

    provided = x_internal_worker_secret or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Invalid or missing worker secret", extra={"header_present": bool(provided)})
        raise APIError(status_code=401, code="unauthorized", message="Invalid or missing worker secret")

    logger.info("Worker request authenticated")
