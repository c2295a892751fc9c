from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from clinauth.api.middleware import (
    check_endpoint_access,
    get_auth_context,
    get_optional_auth_context,
)
from clinauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    ResourceResponse,
    SessionInfo,
    TokenResponse,
)
from clinauth.logging import get_logger
from clinauth.service.auth import AuthContext
from clinauth.service.errors import ForbiddenError
from clinauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
resource_router = APIRouter(prefix="/api")


def _client_meta(request: Request, user_agent: Optional[str]) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": user_agent,
    }


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
    caller: Optional[AuthContext] = Depends(get_optional_auth_context),
):
    """Create an account and open its first session.

    Self-registration always receives the default role; any other role
    requires a caller allowed to manage users.
    """
    runtime = get_runtime()
    role = body.role or runtime.settings.default_role
    if role != runtime.settings.default_role:
        if caller is None or not runtime.auth.check_permission(caller, "users", "manage"):
            raise ForbiddenError(
                "assigning this role requires user management rights",
                error_code="insufficient_permissions",
                detail={"field": "role"},
            )
    tokens = await runtime.auth.register(
        body.email, body.password, role, **_client_meta(request, user_agent)
    )
    return Envelope(status="ok", data=TokenResponse.from_pair(tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, user_agent: Optional[str] = Header(None)
):
    runtime = get_runtime()
    tokens = await runtime.auth.login(
        body.email, body.password, **_client_meta(request, user_agent)
    )
    return Envelope(status="ok", data=TokenResponse.from_pair(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest, request: Request, user_agent: Optional[str] = Header(None)
):
    """Rotate a refresh token; the presented token is spent either way."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        body.refresh_token, **_client_meta(request, user_agent)
    )
    return Envelope(status="ok", data=TokenResponse.from_pair(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    await get_runtime().auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(ctx: AuthContext = Depends(get_auth_context)):
    count = await get_runtime().auth.logout_all(ctx.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_revoked=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    sessions = await get_runtime().auth.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=ctx.user_id,
            role=ctx.role,
            session_id=ctx.session_id,
            permissions=ctx.permissions,
            sessions=[
                SessionInfo.from_session(s, current_id=ctx.session_id) for s in sessions
            ],
        ),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, ctx: AuthContext = Depends(get_auth_context)
):
    """Change the caller's password; every session, this one included, ends."""
    revoked = await get_runtime().auth.change_password(
        ctx.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=LogoutAllResponse(sessions_revoked=revoked))


# Resource endpoints. Bodies are placeholders; access is decided entirely
# by the endpoint table.


def _resource(
    resource: str, action: str, ctx: AuthContext, resource_id: Optional[str] = None
) -> Envelope:
    return Envelope(
        status="ok",
        data=ResourceResponse(
            resource=resource, action=action, user_id=ctx.user_id, resource_id=resource_id
        ),
    )


@resource_router.get("/profile", response_model=Envelope, tags=["resources"])
async def read_profile(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("profile", "read", ctx, ctx.user_id)


@resource_router.put("/profile", response_model=Envelope, tags=["resources"])
async def update_profile(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("profile", "update", ctx, ctx.user_id)


@resource_router.get("/appointments", response_model=Envelope, tags=["resources"])
async def list_appointments(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("appointments", "read", ctx)


@resource_router.post("/appointments", response_model=Envelope, tags=["resources"])
async def create_appointment(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("appointments", "create", ctx)


@resource_router.put("/appointments/{id}", response_model=Envelope, tags=["resources"])
async def update_appointment(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("appointments", "update", ctx, id)


@resource_router.delete("/appointments/{id}", response_model=Envelope, tags=["resources"])
async def delete_appointment(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("appointments", "delete", ctx, id)


@resource_router.get("/patients", response_model=Envelope, tags=["resources"])
async def list_patients(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("patients", "read", ctx)


@resource_router.post("/patients", response_model=Envelope, tags=["resources"])
async def create_patient(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("patients", "create", ctx)


@resource_router.put("/patients/{id}", response_model=Envelope, tags=["resources"])
async def update_patient(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("patients", "update", ctx, id)


@resource_router.delete("/patients/{id}", response_model=Envelope, tags=["resources"])
async def delete_patient(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("patients", "delete", ctx, id)


@resource_router.get("/medical-records", response_model=Envelope, tags=["resources"])
async def list_medical_records(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("medical_records", "read", ctx)


@resource_router.post("/medical-records", response_model=Envelope, tags=["resources"])
async def create_medical_record(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("medical_records", "create", ctx)


@resource_router.put("/medical-records/{id}", response_model=Envelope, tags=["resources"])
async def update_medical_record(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("medical_records", "update", ctx, id)


@resource_router.get("/users", response_model=Envelope, tags=["resources"])
async def list_users(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("users", "manage", ctx)


@resource_router.post("/users", response_model=Envelope, tags=["resources"])
async def create_user(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("users", "manage", ctx)


@resource_router.put("/users/{id}", response_model=Envelope, tags=["resources"])
async def update_user(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("users", "manage", ctx, id)


@resource_router.delete("/users/{id}", response_model=Envelope, tags=["resources"])
async def delete_user(id: str, ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("users", "manage", ctx, id)


@resource_router.get("/audit-logs", response_model=Envelope, tags=["resources"])
async def list_audit_logs(ctx: AuthContext = Depends(check_endpoint_access)):
    return _resource("audit_logs", "read", ctx)


@resource_router.get("/reports", response_model=Envelope, tags=["resources"])
async def list_reports(ctx: AuthContext = Depends(check_endpoint_access)):
    """Not in the endpoint table, so every role is refused."""
    return _resource("reports", "read", ctx)
