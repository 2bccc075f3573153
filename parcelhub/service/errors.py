from __future__ import annotations

from typing import Optional

UPSTREAM_FAILURE_MESSAGE = "Something went wrong on our side. Please try again later."
SESSION_UNAUTHORIZED_MESSAGE = (
    "Your session has expired or is no longer available. Please log in again to continue."
)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class pins an HTTP status and a stable error code:
    - validation_error (400)
    - conflict (400; duplicates are reported like validation failures)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - server_error (500)

    ``clear_cookies`` asks the central responder to expire every auth cookie
    on the error response.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    clear_cookies: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        clear_cookies: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if clear_cookies is not None:
            self.clear_cookies = clear_cookies
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Duplicate resource, e.g. an already registered email (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session is gone or its tokens no longer match; de-authenticates the client."""
    clear_cookies = True

    def __init__(self, message: str = SESSION_UNAUTHORIZED_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServerError):
    """Mailer, OAuth provider or storage call failed (500).

    The client only ever sees a generic retry message; ``reason`` is kept for logs.
    """

    def __init__(self, reason: str, **kwargs) -> None:
        detail = kwargs.pop("detail", None)
        super().__init__(UPSTREAM_FAILURE_MESSAGE, detail=detail, **kwargs)
        self.reason = reason


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "UpstreamError",
    "UPSTREAM_FAILURE_MESSAGE",
    "SESSION_UNAUTHORIZED_MESSAGE",
]
