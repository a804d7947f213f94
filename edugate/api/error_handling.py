from __future__ import annotations

import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from edugate.api.schemas import ErrorBody
from edugate.config import get_settings
from edugate.logging import get_logger
from edugate.service import runtime as runtime_module
from edugate.service.errors import ServiceError
from edugate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

NOT_FOUND_MESSAGE = "Ruta no trobada"
INTERNAL_ERROR_MESSAGE = "Error intern del servidor"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    exc: BaseException | None = None,
) -> JSONResponse:
    """Build ``{"success": false, "message", "code"}``.

    Stack traces are attached to server errors outside production only.
    """
    stack = None
    if exc is not None and status_code >= 500 and not get_settings().is_production:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    body = ErrorBody(
        message=message,
        code=code or _error_code_for_status(status_code),
        stack=stack,
    )
    return JSONResponse(
        status_code=status_code, content=body.model_dump(exclude_none=True)
    )


def _first_validation_message(exc: RequestValidationError) -> str:
    for err in exc.errors():
        ctx_error = (err.get("ctx") or {}).get("error")
        if ctx_error is not None:
            return str(ctx_error)
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        message = err.get("msg", "invalid value")
        return f"{location}: {message}" if location else message
    return "Dades invàlides"


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return _error_response(409, exc.message, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.error_code, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _first_validation_message(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            message = NOT_FOUND_MESSAGE
        elif isinstance(exc.detail, str):
            message = exc.detail
        else:
            message = "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        current = runtime_module.runtime
        if current is not None:
            user = getattr(request.state, "user", None)
            await run_in_threadpool(
                current.activity.log_system_error,
                exc,
                user_id=getattr(user, "id", None),
                path=request.url.path,
                ip_address=request.client.host if request.client else "",
                user_agent=request.headers.get("user-agent", ""),
            )
        return _error_response(500, INTERNAL_ERROR_MESSAGE, code="server_error", exc=exc)

