"""Maps domain errors to HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from safee.core.errors import (
    AuthenticationFailure,
    ConflictError,
    KeyUnavailableError,
    NotFoundError,
    OperationFailed,
    PermissionDeniedError,
    SafeeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    AuthenticationFailure: status.HTTP_401_UNAUTHORIZED,
    KeyUnavailableError: status.HTTP_410_GONE,
    OperationFailed: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: SafeeError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def safee_error_handler(request: Request, exc: SafeeError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    headers = {"Retry-After": "1"} if exc.retryable and status_code == 503 else None
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SafeeError, safee_error_handler)
