"""Translate scheduling errors into HTTP responses.

Body shape: {"error": code, "message": str, ...details}. Clients re-fetch
availability on slot_unavailable and re-read the meeting on
invalid_transition.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from src.outreach.scheduling.errors import (
    ConflictError,
    ExternalServiceError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ReservationTimeoutError,
    SchedulingError,
    SlotUnavailableError,
)

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR: dict[type[SchedulingError], int] = {
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    SlotUnavailableError: status.HTTP_409_CONFLICT,
    ReservationTimeoutError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    InvalidRequestError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def status_for(exc: SchedulingError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "scheduling_error",
        path=request.url.path,
        error=exc.code,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulingError, scheduling_error_handler)
