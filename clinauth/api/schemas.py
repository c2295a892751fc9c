from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from clinauth.logging import get_correlation_id
from clinauth.storage.models import Session, TokenPair

# Token strings are a few hundred bytes; this bounds request bodies
MAX_TOKEN_LENGTH = 4096
MAX_PASSWORD_FIELD = 1024

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_email",
    "weak_password",
    "unauthorized",
    "auth_required",
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "invalid_refresh_token",
    "invalid_session",
    "invalid_token",
    "forbidden",
    "insufficient_permissions",
    "insufficient_role",
    "endpoint_access_denied",
    "not_found",
    "method_not_allowed",
    "conflict",
    "user_exists",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD)
    role: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_FIELD)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            session_id=pair.session_id,
            user_id=pair.user_id,
            role=pair.role,
        )


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at,
            last_activity=session.last_activity,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_id,
        )


class MeResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    permissions: List[str] = Field(default_factory=list)
    sessions: List[SessionInfo] = Field(default_factory=list)


class LogoutAllResponse(BaseModel):
    sessions_revoked: int


class ResourceResponse(BaseModel):
    """Body returned by the RBAC-gated resource endpoints."""

    resource: str
    action: str
    user_id: str
    resource_id: Optional[str] = None
    items: List[Any] = Field(default_factory=list)
