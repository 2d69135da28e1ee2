from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import get_logger, sanitize_error_message
from authcore.service.errors import RateLimitedError, ResponseCode, ServiceError
from authcore.storage.errors import ConstraintViolation, RecordNotFound

logger = get_logger(__name__)

# Statuses raised by the framework itself (unknown route, wrong method, bad headers)
_STATUS_TO_CODE = {
    400: ResponseCode.INVALID_INPUT,
    401: ResponseCode.UNAUTHORIZED,
    403: ResponseCode.FORBIDDEN,
    409: ResponseCode.CONFLICT,
    422: ResponseCode.INVALID_INPUT,
    429: ResponseCode.TOO_MANY_REQUESTS,
}


def _code_for_status(status_code: int) -> ResponseCode:
    if status_code >= 500:
        return ResponseCode.SERVER_ERROR
    return _STATUS_TO_CODE.get(status_code, ResponseCode.INVALID_INPUT)


def _error_response(
    code: ResponseCode,
    message: Optional[str] = None,
    details: dict | list | None = None,
    *,
    status_code: Optional[int] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Render the error envelope; the HTTP status defaults to the code's prefix."""
    code = ResponseCode(code)
    error_body = ErrorBody(
        code=int(code),
        name=code.name,
        message=message or code.message,
        details=details or None,
    )
    envelope = Envelope(status="error", code=int(code), error=error_body)
    return JSONResponse(
        status_code=status_code or code.http_status,
        content=envelope.model_dump(mode="json"),
        headers=headers,
    )


def _validation_details(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep field location and message only; submitted values may hold passwords."""
    details = []
    for err in errors:
        details.append(
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": sanitize_error_message(str(err.get("msg", "invalid value"))),
                "type": err.get("type"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves as the same error envelope."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        return _error_response(
            exc.code,
            exc.message,
            exc.detail,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            response_code=int(exc.code),
            code_name=exc.error_code,
        )
        return _error_response(exc.code, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(list(exc.errors()))
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(d["loc"]) for d in details],
        )
        return _error_response(ResponseCode.INVALID_INPUT, details=details)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            constraint=exc.constraint,
        )
        return _error_response(ResponseCode.CONFLICT)

    @app.exception_handler(RecordNotFound)
    async def handle_record_not_found(request: Request, exc: RecordNotFound):
        logger.warning(
            "record_not_found",
            path=request.url.path,
            method=request.method,
            kind=exc.kind,
        )
        if exc.kind == "user":
            return _error_response(ResponseCode.USER_NOT_FOUND)
        return _error_response(ResponseCode.USER_NOT_FOUND, "Record not found")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code = _code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else code.message
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(
            code,
            message,
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
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
        return _error_response(ResponseCode.SERVER_ERROR)
