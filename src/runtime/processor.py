from __future__ import annotations

from typing import Any, Iterable

from src.config.load_config import DEFAULT_ALLOWED_UNITS
from src.normalization.ingredients import (
    NormalizationFailure,
    NormalizationRequest,
    NormalizationService,
    NormalizationServiceError,
    NormalizationSuccess,
)
from src.runtime.outcomes import FAILURE_INFRASTRUCTURE, FAILURE_SEMANTIC, Failed, JobOutcome, Skipped, Succeeded
from src.storage.sqlite_store import ClaimedJob
from src.utils.structured_log import get_logger


logger = get_logger(__name__)

SKIP_REASON_NO_ITEMS = "No ingredient items to normalize"


def extract_item_texts(ingredients: Iterable[dict[str, Any]]) -> list[str]:
    """Item entries only (headers are section titles, not ingredients), blank content dropped."""
    texts: list[str] = []
    for entry in ingredients:
        if str(entry.get("type", "")).strip().lower() != "item":
            continue
        content = str(entry.get("content") or "").strip()
        if content:
            texts.append(content)
    return texts


class JobProcessor:
    """Classifies one claimed job into Succeeded / Failed / Skipped. No retry logic here."""

    def __init__(
        self,
        normalizer: NormalizationService,
        *,
        allowed_units: tuple[str, ...] = DEFAULT_ALLOWED_UNITS,
        language: str = "pl",
    ) -> None:
        self._normalizer = normalizer
        self._allowed_units = tuple(allowed_units)
        self._language = language

    def process(self, job: ClaimedJob) -> JobOutcome:
        if job.ingredients_error is not None:
            raise ValueError(f"Unreadable ingredient content for recipe {job.recipe_id}: {job.ingredients_error}")
        item_texts = extract_item_texts(job.ingredients)
        if not item_texts:
            logger.info(
                "No ingredient items to normalize, skipping job",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id},
            )
            return Skipped(reason=SKIP_REASON_NO_ITEMS)

        request = NormalizationRequest(
            user_id=job.user_id,
            recipe_id=job.recipe_id,
            item_texts=item_texts,
            allowed_units=self._allowed_units,
            language=self._language,
        )
        try:
            result = self._normalizer.normalize(request)
        except NormalizationServiceError as e:
            logger.warning(
                "Normalization service error",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "code": e.code, "error": str(e)},
            )
            return Failed(reason=str(e), kind=FAILURE_INFRASTRUCTURE)

        if isinstance(result, NormalizationFailure):
            reason = "; ".join(result.reasons) or "Normalization failed"
            logger.info(
                "Normalization rejected content",
                extra={"job_id": job.job_id, "recipe_id": job.recipe_id, "reasons": result.reasons},
            )
            return Failed(reason=reason, kind=FAILURE_SEMANTIC)
        if isinstance(result, NormalizationSuccess):
            return Succeeded(
                items=[item.model_dump() for item in result.items],
                confidence=result.confidence,
                warnings=list(result.warnings),
            )
        raise TypeError(f"Unexpected normalization result: {type(result).__name__}")
