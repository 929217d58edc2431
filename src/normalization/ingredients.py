from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import openai
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.config.load_config import DEFAULT_ALLOWED_UNITS, NormalizationConfig
from src.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient
from src.utils.json_extract import JSONExtractionError, extract_first_json_object
from src.utils.structured_log import get_logger
from src.utils.template import render_template


logger = get_logger(__name__)

NORMALIZED_INGREDIENT_UNITS: tuple[str, ...] = DEFAULT_ALLOWED_UNITS


class NormalizationServiceError(RuntimeError):
    """Infrastructure failure of the normalization service (not a verdict on the content)."""

    def __init__(self, message: str, *, code: str = "internal") -> None:
        super().__init__(message)
        self.code = code


class NormalizedIngredient(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: float | None = None
    unit: str | None = None
    name: str = Field(min_length=1)


class NormalizationMeta(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)
    warnings: list[str] = Field(default_factory=list)


class LLMNormalizationResponse(BaseModel):
    normalized_ingredients: list[NormalizedIngredient] = Field(min_length=1)
    meta: NormalizationMeta


@dataclass(frozen=True)
class NormalizationRequest:
    user_id: str
    recipe_id: int
    item_texts: list[str]
    allowed_units: tuple[str, ...] = NORMALIZED_INGREDIENT_UNITS
    language: str = "pl"


@dataclass(frozen=True)
class NormalizationSuccess:
    items: list[NormalizedIngredient]
    confidence: float
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NormalizationFailure:
    reasons: list[str]


NormalizationResult = Union[NormalizationSuccess, NormalizationFailure]


class NormalizationService(Protocol):
    def normalize(self, request: NormalizationRequest) -> NormalizationResult: ...


class LLMIngredientNormalizer:
    """Normalization service backed by an OpenAI-compatible chat model in JSON mode.

    Content the model cannot normalize comes back as `NormalizationFailure`; every
    upstream or contract problem (credentials, timeout, rate limit, unparsable or
    out-of-schema reply) raises `NormalizationServiceError`.
    """

    def __init__(self, config: NormalizationConfig, *, llm: OpenAICompatibleChatClient | None = None) -> None:
        self._config = config
        self._llm = llm

    def _client(self) -> OpenAICompatibleChatClient:
        if self._llm is None:
            try:
                self._llm = OpenAICompatibleChatClient(
                    model=self._config.model or None,
                    timeout_s=self._config.timeout_s,
                )
            except LLMConfigError as e:
                logger.error("OpenAI client not configured", extra={"error": str(e)})
                raise NormalizationServiceError("AI service is not configured", code="not_configured") from e
        return self._llm

    def _complete(self, *, system: str, user: str) -> str:
        llm = self._client()
        try:
            result = llm.chat(
                system=system,
                user=user,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                json_mode=True,
            )
        except openai.APITimeoutError as e:
            logger.error("OpenAI API timeout", extra={"timeout_s": self._config.timeout_s})
            raise NormalizationServiceError("AI service request timeout", code="timeout") from e
        except openai.RateLimitError as e:
            logger.error("OpenAI API rate limited", extra={"status": e.status_code})
            raise NormalizationServiceError(
                "AI service rate limit exceeded", code="rate_limited"
            ) from e
        except openai.APIStatusError as e:
            logger.error("OpenAI API error", extra={"status": e.status_code, "body": str(e.message)[:500]})
            raise NormalizationServiceError("AI service temporarily unavailable", code="upstream_error") from e
        except openai.APIConnectionError as e:
            logger.error("OpenAI API network error", extra={"error": str(e)})
            raise NormalizationServiceError("AI service network error", code="network_error") from e
        except openai.APIError as e:
            logger.error("OpenAI API error", extra={"error": str(e)})
            raise NormalizationServiceError("AI service temporarily unavailable", code="upstream_error") from e

        if not result.content:
            logger.error("Empty response from OpenAI", extra={"finish_reason": result.finish_reason})
            raise NormalizationServiceError("AI service returned empty response", code="invalid_response")
        return result.content

    def normalize(self, request: NormalizationRequest) -> NormalizationResult:
        ingredients_text = "\n".join(t for t in request.item_texts if t and t.strip())

        logger.info(
            "Starting normalized ingredients generation",
            extra={
                "user_id": request.user_id,
                "recipe_id": request.recipe_id,
                "items_count": len(request.item_texts),
                "language": request.language,
            },
        )

        if not ingredients_text.strip():
            return NormalizationFailure(reasons=["No ingredient items to normalize (only headers or empty list)"])

        variables: dict[str, Any] = {
            "allowed_units": list(request.allowed_units),
            "language": request.language,
            "ingredients": ingredients_text,
        }
        system = render_template(self._config.system_prompt_template, variables)
        user = render_template(self._config.user_prompt_template, variables)

        content = self._complete(system=system, user=user)

        try:
            payload = extract_first_json_object(content)
        except JSONExtractionError as e:
            logger.error("Failed to parse OpenAI response as JSON", extra={"content": content[:500]})
            raise NormalizationServiceError(
                "AI service returned invalid response format", code="invalid_response"
            ) from e

        reasons = payload.get("reasons")
        if "normalized_ingredients" not in payload and isinstance(reasons, list):
            cleaned = [str(r).strip() for r in reasons if str(r).strip()]
            return NormalizationFailure(reasons=cleaned or ["Normalization rejected without a reason"])

        try:
            validated = LLMNormalizationResponse.model_validate(payload)
        except ValidationError as e:
            logger.error(
                "LLM response validation failed for normalized ingredients",
                extra={"recipe_id": request.recipe_id, "errors": e.errors(include_url=False)},
            )
            raise NormalizationServiceError(
                "AI service returned invalid response format for normalized ingredients",
                code="invalid_response",
            ) from e

        allowed = set(request.allowed_units)
        for item in validated.normalized_ingredients:
            if item.unit is not None and item.unit not in allowed:
                logger.error(
                    "LLM returned unit not in allowed list",
                    extra={"recipe_id": request.recipe_id, "unit": item.unit},
                )
                raise NormalizationServiceError(
                    "AI service returned invalid unit (not in allowed list)", code="invalid_response"
                )

        logger.info(
            "Normalized ingredients generation completed",
            extra={
                "recipe_id": request.recipe_id,
                "normalized_count": len(validated.normalized_ingredients),
                "confidence": validated.meta.confidence,
            },
        )
        return NormalizationSuccess(
            items=list(validated.normalized_ingredients),
            confidence=validated.meta.confidence,
            warnings=list(validated.meta.warnings),
        )
