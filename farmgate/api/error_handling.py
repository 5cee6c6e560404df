from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from farmgate.api.schemas import Envelope, ErrorBody
from farmgate.logging import get_logger, sanitize_error_message
from farmgate.service.errors import ServiceError
from farmgate.storage.errors import ConstraintViolation

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


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build an error envelope response; also used by the request middlewares."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected failure server side and answer with a bare 500 envelope."""
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=sanitize_error_message(str(exc)),
    )
    return error_response(500, "internal server error", code="server_error")


def _log_rejection(
    event: str,
    request: Request,
    status_code: int,
    error_code: str | None,
    message: str,
    **extra,
) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        error_code=error_code,
        message=message,
        **extra,
    )


def _unpack_http_detail(exc: HTTPException) -> tuple[str, str | None, dict | list | None]:
    """Split an HTTPException detail into (message, code, details).

    Route helpers raise with an envelope-shaped detail; routing itself raises
    404/405 with a plain string.
    """
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        body = detail["error"]
        return body.get("message", "http error"), body.get("code"), body.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, detail if isinstance(detail, dict) else None


def register_exception_handlers(app: FastAPI) -> None:
    """Map store, service and HTTP failures onto the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(
            "constraint_violation", request, 400, "conflict", exc.message, detail=exc.detail
        )
        return error_response(400, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            "service_error",
            request,
            exc.status_code,
            exc.error_code,
            exc.message,
            detail=exc.detail,
        )
        return error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc)
        if exc.status_code >= 400:
            _log_rejection("http_error", request, exc.status_code, code, message)
        return error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return unhandled_error_response(request, exc)
