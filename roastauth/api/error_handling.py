from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from roastauth.api.schemas import Envelope, ErrorBody
from roastauth.logging import get_logger
from roastauth.service.errors import ServiceError
from roastauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Only reached for HTTPExceptions raised by the framework itself
_STATUS_TO_TYPE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    429: "rate_limit_exceeded",
}

# Error responses are never cached either
_NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _error_response(
    status_code: int,
    message: str,
    *,
    error_type: str,
    code: str,
    recoverable: bool = True,
    retryable: bool = True,
    details: dict | list | None = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    error_body = ErrorBody(
        type=error_type,
        code=code,
        message=message,
        recoverable=recoverable,
        retryable=retryable,
        details=details or None,
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers={**_NO_STORE_HEADERS, **(headers or {})},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the standard error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_type=exc.error_type,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            error_type=exc.error_type,
            code=exc.error_code,
            recoverable=exc.recoverable,
            retryable=exc.retryable,
            details=exc.detail,
            headers=exc.headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            409, exc.message, error_type="conflict", code="CONFLICT", details=exc.detail
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return _error_response(
            400,
            "Please check your input and try again.",
            error_type="validation_error",
            code="VALIDATION_ERROR",
            details={"fields": fields},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        error_type = _STATUS_TO_TYPE.get(exc.status_code, "server_error")
        return _error_response(
            exc.status_code,
            message,
            error_type=error_type,
            code=error_type.upper(),
            recoverable=exc.status_code < 500,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            500,
            "internal server error",
            error_type="server_error",
            code="SERVER_ERROR",
            recoverable=False,
        )
