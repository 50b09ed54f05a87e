from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the short ``error``
    label rendered in the response envelope:

    - Bad Request (400)
    - Unauthorized (401)
    - Not Found (404)
    - Request Timeout (408)
    - Too Many Requests (429)
    - Internal Server Error (500)
    - Not Implemented (501)
    """

    status_code: int = 400
    error: str = "Bad Request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict | list] = None,
        error: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error
        self.detail = detail


class BadRequestError(ServiceError):
    """Request is malformed or missing fields (400)."""
    status_code = 400
    error = "Bad Request"


class AuthenticationError(ServiceError):
    """Credential missing or rejected (401)."""
    status_code = 401
    error = "Unauthorized"


class TokenExpiredError(AuthenticationError):
    """Credential was well-formed and signed, but its ``exp`` has passed."""

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Credential is malformed, badly signed or missing required claims."""

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested route or resource not found (404)."""
    status_code = 404
    error = "Not Found"


class RequestTimeoutError(ServiceError):
    """Wall-clock budget for the request elapsed (408)."""
    status_code = 408
    error = "Request Timeout"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); ``retry_after_ms`` is the time until the window frees up."""
    status_code = 429
    error = "Too Many Requests"

    def __init__(self, retry_after_ms: int, *, limit: int = 0, **kwargs) -> None:
        seconds = round(retry_after_ms / 1000)
        super().__init__(
            f"Rate limit exceeded. Try again in {seconds} seconds.", **kwargs
        )
        self.retry_after_ms = retry_after_ms
        self.limit = limit


class ServerError(ServiceError):
    """Unexpected internal failure (500)."""
    status_code = 500
    error = "Internal Server Error"


class UpstreamError(ServerError):
    """The agent runtime failed while producing a turn (500)."""

    public_message = "Failed to process chat request"


class NotImplementedFeatureError(ServiceError):
    """Route is reserved but not implemented (501)."""
    status_code = 501
    error = "Not Implemented"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "TokenExpiredError",
    "InvalidTokenError",
    "NotFoundError",
    "RequestTimeoutError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
    "NotImplementedFeatureError",
]
