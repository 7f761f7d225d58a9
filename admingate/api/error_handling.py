from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from admingate.api.boundary import clear_session_cookies
from admingate.api.schemas import Envelope, ErrorBody
from admingate.config import get_settings
from admingate.logging import get_logger
from admingate.service.errors import UNAUTHORIZED_MESSAGE, ServiceError, SessionRejected

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for session and service errors."""

    @app.exception_handler(SessionRejected)
    async def handle_session_rejected(request: Request, exc: SessionRejected):
        # Reason and stage stay in the logs; the client always sees the same 401
        logger.warning(
            "session_rejected",
            path=request.url.path,
            method=request.method,
            reason=exc.reason,
            stage=exc.stage,
        )
        response = _error_response(401, UNAUTHORIZED_MESSAGE, code="unauthorized")
        clear_session_cookies(response, get_settings())
        return response

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
        # Internal detail (operation names, ids) is not echoed on server-side failures
        details = exc.detail if exc.status_code < 500 else None
        return _error_response(exc.status_code, exc.message, details, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=exc.errors(),
        )
        return _error_response(
            400, "invalid request", {"errors": exc.errors()}, code="validation_error"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=code,
            message=message,
        )
        return _error_response(exc.status_code, message, details, code=code)

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
        return _error_response(500, "internal server error", code="server_error")
