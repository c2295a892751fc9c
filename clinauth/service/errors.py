from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``.
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


class InvalidEmail(ValidationError):
    error_code = "invalid_email"

    def __init__(self, message: str = "invalid email format") -> None:
        super().__init__(message, detail={"field": "email"})


class WeakPassword(ValidationError):
    error_code = "weak_password"

    def __init__(
        self,
        message: str = "password does not meet security requirements",
        *,
        failed: Optional[list] = None,
    ) -> None:
        detail: dict = {"field": "password"}
        if failed:
            detail["requirements"] = failed
        super().__init__(message, detail=detail)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserAlreadyExists(ConflictError):
    error_code = "user_exists"

    def __init__(self, message: str = "user already exists") -> None:
        super().__init__(message, detail={"field": "email"})


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class AccountLocked(AuthenticationError):
    error_code = "account_locked"

    def __init__(self, message: str = "account temporarily locked") -> None:
        super().__init__(message)


class AccountInactive(AuthenticationError):
    error_code = "account_inactive"

    def __init__(self, message: str = "account has been deactivated") -> None:
        super().__init__(message)


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token") -> None:
        super().__init__(message)


class InvalidSession(AuthenticationError):
    error_code = "invalid_session"

    def __init__(self, message: str = "session is no longer valid") -> None:
        super().__init__(message)


class InvalidAccessToken(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ServiceUnavailable(ServiceError):
    """A backing store failed; this is never an auth decision (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidEmail",
    "WeakPassword",
    "ConflictError",
    "UserAlreadyExists",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountInactive",
    "InvalidRefreshToken",
    "InvalidSession",
    "InvalidAccessToken",
    "ForbiddenError",
    "ServiceUnavailable",
]
