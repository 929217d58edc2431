from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.utils.structured_log import get_logger


logger = get_logger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(req: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            extra={"path": req.url.path, "status_code": exc.status_code, "code": exc.code, "error": exc.message},
        )
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error",
        extra={"path": req.url.path, "error_type": type(exc).__name__},
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
