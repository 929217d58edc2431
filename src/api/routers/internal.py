from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.dependencies import get_app_config, get_normalizer, verify_internal_worker_secret
from src.api.errors import APIError
from src.config.load_config import AppConfig
from src.normalization.ingredients import NormalizationService
from src.runtime.worker import ClaimError, run_worker_once
from src.utils.structured_log import get_logger


logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/workers/normalized-ingredients/run",
    dependencies=[Depends(verify_internal_worker_secret)],
)
def run_normalized_ingredients_worker(
    cfg: AppConfig = Depends(get_app_config),
    normalizer: NormalizationService = Depends(get_normalizer),
) -> dict[str, int]:
    logger.info("Normalized ingredients worker triggered")
    try:
        summary = run_worker_once(app_config=cfg, normalizer=normalizer)
    except ClaimError as e:
        raise APIError(status_code=500, code="internal", message=str(e)) from e
    return summary.as_response()


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
def internal_not_found(path: str) -> None:
    raise APIError(status_code=404, code="not_found", message="Not found", details={"path": f"/internal/{path}"})
