from __future__ import annotations

from typing import Optional

UNAUTHORIZED_MESSAGE = "unauthorized, please sign in again"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionRejected(AuthenticationError):
    """Admin session could not be validated (401).

    The public message is always the same; ``reason`` and ``stage`` are for
    logs only and are never rendered to the client.
    """

    reason: str = "rejected"

    def __init__(
        self,
        message: str = UNAUTHORIZED_MESSAGE,
        *,
        reason: Optional[str] = None,
        stage: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        if reason is not None:
            self.reason = reason
        self.stage = stage


class TokenInvalid(SessionRejected):
    reason = "token-invalid"


class TokenExpired(SessionRejected):
    reason = "token-expired"


class SessionNotFound(SessionRejected):
    reason = "session-not-found"


class SessionIntegrityViolation(SessionRejected):
    reason = "integrity-violation"


class UserInvalid(SessionRejected):
    reason = "user-invalid"


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


class CreationFailed(ServerError):
    """Session creation could not be made durable; the login must fail."""

    def __init__(self, message: str = "internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PersistenceDegraded(ServiceError):
    """Durable store unavailable (503).

    Raised only on critical paths; best-effort writes log and continue.
    """
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "UNAUTHORIZED_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionRejected",
    "TokenInvalid",
    "TokenExpired",
    "SessionNotFound",
    "SessionIntegrityViolation",
    "UserInvalid",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "CreationFailed",
    "PersistenceDegraded",
]
