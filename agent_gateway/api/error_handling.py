from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_gateway.api.schemas import ErrorResponse
from agent_gateway.logging import get_logger
from agent_gateway.service.errors import RateLimitedError, ServiceError, UpstreamError

logger = get_logger(__name__)

_STATUS_TO_ERROR = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    429: "Too Many Requests",
    500: "Internal Server Error",
    501: "Not Implemented",
    503: "Service Unavailable",
}


def _error_label_for_status(status_code: int) -> str:
    return _STATUS_TO_ERROR.get(status_code, "Error")


def _is_production(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings and settings.is_production)


def error_response(
    status_code: int,
    message: str,
    *,
    error: Optional[str] = None,
    details: Any = None,
    retry_after_ms: Optional[int] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Render the one error envelope every failure shares."""
    body = ErrorResponse(
        error=error or _error_label_for_status(status_code),
        message=message,
        status_code=status_code,
        retry_after=retry_after_ms,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body.to_wire(), headers=headers)


def rate_limited_response(exc: RateLimitedError) -> JSONResponse:
    headers = {
        "Retry-After": str(max(1, -(-exc.retry_after_ms // 1000))),
        "X-RateLimit-Limit": str(exc.limit),
        "X-RateLimit-Remaining": "0",
    }
    return error_response(
        exc.status_code,
        exc.message,
        error=exc.error,
        retry_after_ms=exc.retry_after_ms,
        headers=headers,
    )


def _public_message(request: Request, exc: ServiceError) -> str:
    if exc.status_code < 500 or not _is_production(request):
        return exc.message
    if isinstance(exc, UpstreamError):
        return exc.public_message
    return "Internal Server Error"


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into the shared envelope."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        return rate_limited_response(exc)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_label=exc.error,
            message=exc.message,
            detail=exc.detail,
        )
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        details = exc.detail if exc.status_code < 500 else None
        return error_response(
            exc.status_code,
            _public_message(request, exc),
            error=exc.error,
            details=details,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in errors
        )
        return error_response(
            400, message or "Invalid request body", error="Validation Error", details=errors
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                404, f"Route {request.method} {request.url.path} not found"
            )
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=str(exc.detail),
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

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
        message = "Internal Server Error" if _is_production(request) else (
            str(exc) or "An unexpected error occurred"
        )
        return error_response(500, message, error="Internal Server Error")
