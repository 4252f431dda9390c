from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from credvault.api.schemas import Envelope, ErrorBody
from credvault.logging import get_correlation_id, get_logger, sanitize_error_message
from credvault.service.errors import ServiceError
from credvault.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    503: "unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details or None,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(request: Request, status_code: int, event: str, **fields: Any) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _unpack_http_detail(detail: Any) -> tuple[str, Optional[str], Any]:
    """Split an HTTPException detail into (message, code, details).

    Routes raise envelope-shaped details ``{"error": {...}}``; anything else
    is treated as a bare message or a details mapping.
    """
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        inner = detail["error"]
        return inner.get("message", "http error"), inner.get("code"), inner.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, detail if isinstance(detail, dict) else None


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, 409, "constraint_violation", message=exc.message, fields=exc.fields)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            exc.status_code,
            "service_error",
            error_code=exc.error_code,
            kind=exc.kind,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        _log_failure(request, exc.status_code, "http_error", error_code=code, message=message)
        response = _error_response(exc.status_code, message, details, code=code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
