"""
auth/handlers.py -- Render SecurityError as the shared JSON error envelope.

Every security failure reaches the client as:

    {"error": {"code": "...", "message": "...", "detail": null}}

message is the fixed, client-safe text of the error class; the internal
detail is logged, never returned. Retryable errors (rate limit, lockout) add a
Retry-After header. 5xx errors (configuration, integrity, storage) are logged
at ERROR since they indicate a deployment fault rather than a bad request.

Call register_exception_handlers(app) once when building the FastAPI app.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from auth.errors import RetryableError, SecurityError

logger = logging.getLogger("krm.auth.handlers")


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


def error_response(exc: SecurityError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, RetryableError):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    return error_response(exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SecurityError, security_error_handler)
