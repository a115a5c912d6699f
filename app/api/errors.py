"""Domain error → HTTP response mapping.

Every ProgressEngineError becomes {"error": kind, "detail": message} so
clients can branch on ``error`` without parsing prose.

  unknown_reference                 404
  malformed_payload / clock_skew    422
  orphaned_reference                409
  lock_timeout / version_conflict   503  (retryable)
  timeout (analytics)               504
  staleness_violation               503
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.errors import (
    AggregationError,
    AnalyticsComputationError,
    InvalidEventError,
    ProgressEngineError,
    StalenessViolationError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)


def status_for(exc: ProgressEngineError) -> int:
    if isinstance(exc, InvalidEventError):
        if exc.kind == "unknown_reference":
            return status.HTTP_404_NOT_FOUND
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, AggregationError):
        if exc.kind == "orphaned_reference":
            return status.HTTP_409_CONFLICT
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, VersionConflictError | StalenessViolationError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, AnalyticsComputationError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_engine_error(request: Request, exc: Exception) -> JSONResponse:
    # Registered for ProgressEngineError only.
    error = cast(ProgressEngineError, exc)
    code = status_for(error)
    logger.warning(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        error.detail,
        extra={"error_kind": error.kind, "status_code": code},
    )
    headers = {"Retry-After": "1"} if code == status.HTTP_503_SERVICE_UNAVAILABLE else None
    return JSONResponse(
        status_code=code,
        content={"error": error.kind, "detail": error.detail},
        headers=headers,
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProgressEngineError, _handle_engine_error)
