from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kvauth.api.routes import clear_token_cookies
from kvauth.api.schemas import Envelope, ErrorBody
from kvauth.config import get_settings
from kvauth.logging import get_correlation_id, get_logger, sanitize_error_message
from kvauth.service.errors import ServiceError

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    trigger_logout: bool = False,
) -> JSONResponse:
    """Build the error envelope; a logout signal also expires both token cookies."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body, trigger_logout=trigger_logout)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    response = JSONResponse(status_code=status_code, content=envelope.model_dump())
    if trigger_logout:
        clear_token_cookies(response, get_settings())
    return response


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers that render every failure as an error envelope."""

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
            trigger_logout=exc.trigger_logout,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            trigger_logout=exc.trigger_logout,
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
