"""Request-level authentication and authorization.

These are FastAPI dependencies. ``get_auth_context`` resolves the bearer
token into an ``AuthContext``; the ``require_*`` factories and
``check_endpoint_access`` gate a route on the RBAC resolver. Path and query
parameters form the authorization context, so ownership checks compare the
caller's id with ids the request actually names.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Depends, Header, Request

from clinauth.logging import get_logger
from clinauth.service import audit as audit_events
from clinauth.service.auth import AuthContext
from clinauth.service.errors import AuthenticationError, ForbiddenError
from clinauth.service.runtime import get_runtime

logger = get_logger(__name__)


def _extract_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("authentication required", error_code="auth_required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authentication required", error_code="auth_required")
    return token.strip()


def _request_scope(request: Request) -> Dict[str, Any]:
    scope: Dict[str, Any] = dict(request.query_params)
    scope.update(request.path_params)
    return scope


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    token = _extract_bearer(authorization)
    ctx = await get_runtime().auth.authenticate(token)
    request.state.auth = ctx
    return ctx


async def get_optional_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[AuthContext]:
    if not authorization:
        return None
    return await get_auth_context(request, authorization)


def require_permission(resource: str, action: str) -> Callable[..., Any]:
    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        if not get_runtime().auth.check_permission(
            ctx, resource, action, _request_scope(request)
        ):
            raise ForbiddenError(
                "insufficient permissions",
                error_code="insufficient_permissions",
                detail={"required": f"{action}:{resource}"},
            )
        return ctx

    return _dependency


def require_role(roles: Iterable[str]) -> Callable[..., Any]:
    allowed = frozenset(roles)

    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        if ctx.role not in allowed:
            get_runtime().audit.record(
                ctx.user_id,
                audit_events.ACCESS_DENIED,
                request.url.path,
                audit_events.DENIED,
                reason="insufficient_role",
                role=ctx.role,
                method=request.method,
                ip_address=_client_ip(request),
            )
            raise ForbiddenError(
                "insufficient role",
                error_code="insufficient_role",
                detail={"required": sorted(allowed)},
            )
        return ctx

    return _dependency


async def check_endpoint_access(
    request: Request, ctx: AuthContext = Depends(get_auth_context)
) -> AuthContext:
    """Gate a route on the endpoint table; unmapped endpoints are denied."""
    runtime = get_runtime()
    path = request.url.path
    if not runtime.rbac.can_access_endpoint(
        ctx, path, request.method, _request_scope(request)
    ):
        runtime.audit.record(
            ctx.user_id,
            audit_events.ENDPOINT_ACCESS_DENIED,
            path,
            audit_events.DENIED,
            method=request.method,
            role=ctx.role,
            ip_address=_client_ip(request),
        )
        raise ForbiddenError(
            "access to this endpoint is denied",
            error_code="endpoint_access_denied",
            detail={"method": request.method, "path": path},
        )
    return ctx
