from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, TypeVar

from clinauth.config import Settings
from clinauth.logging import get_logger
from clinauth.service import audit as audit_events
from clinauth.service.audit import AuditTrail
from clinauth.service.errors import (
    AccountInactive,
    AccountLocked,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidSession,
    ServiceUnavailable,
    UserAlreadyExists,
    ValidationError,
    WeakPassword,
)
from clinauth.service.lockout import LockoutPolicy
from clinauth.service.passwords import Hasher, PasswordPolicy, normalize_email, validate_email
from clinauth.service.rbac import RBACResolver
from clinauth.service.tokens import ExpiredToken, TokenCodec, TokenError
from clinauth.storage.base import (
    REASON_LOGOUT,
    REASON_REVOKED,
    REASON_ROTATED,
    CredentialStore,
    SessionStore,
)
from clinauth.storage.errors import ConstraintViolation, StoreUnavailable
from clinauth.storage.models import Session, TokenPair, User

logger = get_logger(__name__)

T = TypeVar("T")

# Hashed once per service; unknown-email logins verify against it
_DUMMY_PASSWORD = "clinauth-unknown-account-placeholder"


@dataclass
class AuthContext:
    """Identity resolved from a verified access token and a live session."""

    user_id: str
    role: str
    session_id: str
    permissions: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.user_id


class AuthService:
    """Registration, login, token rotation, logout and authorization.

    Credential-store calls are synchronous and run in a worker thread under
    ``store_timeout``. Session-store calls are awaited under the same bound.
    Store faults surface as ``ServiceUnavailable``, never as an auth denial.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        codec: TokenCodec,
        rbac: RBACResolver,
        hasher: Hasher,
        audit: AuditTrail,
        *,
        password_policy: PasswordPolicy | None = None,
        lockout: LockoutPolicy | None = None,
        session_ttl_seconds: int = 7 * 24 * 60 * 60,
        store_timeout: float = 5.0,
        default_role: str = "patient",
        revoke_all_on_reuse: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.codec = codec
        self.rbac = rbac
        self.hasher = hasher
        self.audit = audit
        self.password_policy = password_policy or PasswordPolicy()
        self.lockout = lockout or LockoutPolicy()
        self.session_ttl_seconds = session_ttl_seconds
        self.store_timeout = store_timeout
        self.default_role = default_role
        self.revoke_all_on_reuse = revoke_all_on_reuse
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._dummy_digest = hasher.hash(_DUMMY_PASSWORD)
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        credentials: CredentialStore,
        sessions: SessionStore,
        rbac: RBACResolver,
        hasher: Hasher,
        audit: AuditTrail,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "AuthService":
        codec = TokenCodec(
            settings.access_token_secret,
            settings.refresh_token_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )
        return cls(
            credentials,
            sessions,
            codec,
            rbac,
            hasher,
            audit,
            password_policy=PasswordPolicy(
                min_length=settings.password_min_length,
                require_upper=settings.password_require_upper,
                require_lower=settings.password_require_lower,
                require_digit=settings.password_require_digit,
                require_special=settings.password_require_special,
            ),
            lockout=LockoutPolicy(
                threshold=settings.lockout_threshold,
                duration=timedelta(seconds=settings.lockout_duration_seconds),
            ),
            session_ttl_seconds=settings.refresh_token_ttl_seconds,
            store_timeout=settings.store_timeout_seconds,
            default_role=settings.default_role,
            revoke_all_on_reuse=settings.revoke_all_on_refresh_reuse,
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    # -- store access -----------------------------------------------------

    async def _credential_call(
        self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), self.store_timeout
            )
        except asyncio.TimeoutError as exc:
            self.logger.error("credential_store_timeout", operation=operation)
            raise ServiceUnavailable(
                "credential store timed out", detail={"operation": operation}
            ) from exc
        except StoreUnavailable as exc:
            self.logger.error(
                "credential_store_unavailable", operation=operation, error=exc.message
            )
            raise ServiceUnavailable(
                "credential store unavailable", detail={"operation": operation}
            ) from exc

    async def _session_call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.store_timeout)
        except asyncio.TimeoutError as exc:
            self.logger.error("session_store_timeout", operation=operation)
            raise ServiceUnavailable(
                "session store timed out", detail={"operation": operation}
            ) from exc
        except StoreUnavailable as exc:
            self.logger.error(
                "session_store_unavailable", operation=operation, error=exc.message
            )
            raise ServiceUnavailable(
                "session store unavailable", detail={"operation": operation}
            ) from exc

    async def _verify_password(self, plain: str, digest: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, plain, digest)

    # -- sessions and tokens ----------------------------------------------

    def _remaining_ttl(self, session: Session) -> int:
        expires_at = session.created_at + timedelta(seconds=self.session_ttl_seconds)
        return int((expires_at - self._now()).total_seconds())

    async def _start_session(
        self,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        token_version: int = 1,
    ) -> TokenPair:
        session = Session.new(
            user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            token_version=token_version,
            now=self._now(),
        )
        await self._session_call(
            "create", self.sessions.create(session, self.session_ttl_seconds)
        )
        permissions = sorted(self.rbac.permissions_for(user.role))
        access_token, _ = self.codec.issue_access(user.id, user.role, session.id, permissions)
        refresh_token, _ = self.codec.issue_refresh(user.id, session.id, token_version)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
            session_id=session.id,
            user_id=user.id,
            role=user.role,
        )

    # -- accounts -----------------------------------------------------------

    def _ensure_known_role(self, role: str) -> None:
        if role not in self.rbac.policy.role_permissions:
            raise ValidationError("unknown role", detail={"field": "role"})

    async def create_user(
        self, email: str, password: str, role: Optional[str] = None
    ) -> User:
        """Validate and persist a new account without opening a session."""
        normalized = validate_email(email)
        self.password_policy.validate(password)
        role = role or self.default_role
        self._ensure_known_role(role)

        existing = await self._credential_call(
            "get_user_by_email", self.credentials.get_user_by_email, normalized
        )
        if existing:
            raise UserAlreadyExists()
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            return await self._credential_call(
                "create_user",
                self.credentials.create_user,
                normalized,
                password_hash,
                role=role,
            )
        except ConstraintViolation as exc:
            raise UserAlreadyExists() from exc

    async def register(
        self,
        email: str,
        password: str,
        role: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        try:
            user = await self.create_user(email, password, role)
        except UserAlreadyExists:
            self.audit.record(
                None,
                audit_events.USER_REGISTER,
                "auth",
                audit_events.FAILURE,
                reason="user_exists",
                ip_address=ip_address,
            )
            raise
        tokens = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        self.audit.record(
            user.id,
            audit_events.USER_REGISTER,
            "auth",
            audit_events.SUCCESS,
            role=user.role,
            ip_address=ip_address,
        )
        return tokens

    def _audit_locked(self, user_id: str, ip_address: Optional[str]) -> None:
        self.audit.record(
            user_id,
            audit_events.USER_LOGIN_FAILED,
            "auth",
            audit_events.DENIED,
            reason="account_locked",
            ip_address=ip_address,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        normalized = normalize_email(email) if isinstance(email, str) else ""
        password = password if isinstance(password, str) else ""
        user = None
        if normalized:
            user = await self._credential_call(
                "get_user_by_email", self.credentials.get_user_by_email, normalized
            )
        if user is None:
            await self._verify_password(password, self._dummy_digest)
            self.audit.record(
                None,
                audit_events.USER_LOGIN_FAILED,
                "auth",
                audit_events.FAILURE,
                reason="user_not_found",
                ip_address=ip_address,
            )
            raise InvalidCredentials()

        now = self._now()
        if self.lockout.is_locked(user, now):
            await self._verify_password(password, self._dummy_digest)
            self._audit_locked(user.id, ip_address)
            raise AccountLocked()

        if not await self._verify_password(password, user.password_hash):
            # The store increments the counter; concurrent failures never overwrite each other
            counted = await self._credential_call(
                "record_failed_login",
                self.credentials.record_failed_login,
                user.id,
                threshold=self.lockout.threshold,
                lock_until=self.lockout.lock_deadline(now),
                now=now,
            )
            attempts = counted.failed_login_attempts if counted else None
            if counted is not None and self.lockout.is_locked(counted, now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=attempts,
                    locked_until=counted.locked_until.isoformat(),
                )
            self.audit.record(
                user.id,
                audit_events.USER_LOGIN_FAILED,
                "auth",
                audit_events.FAILURE,
                reason="invalid_password",
                attempts=attempts,
                ip_address=ip_address,
            )
            raise InvalidCredentials()

        # Failures that raced this attempt may have locked the account meanwhile
        current = await self._credential_call("get_user", self.credentials.get_user, user.id)
        if current is not None and self.lockout.is_locked(current, now):
            self._audit_locked(user.id, ip_address)
            raise AccountLocked()

        if not user.is_active:
            self.audit.record(
                user.id,
                audit_events.USER_LOGIN_FAILED,
                "auth",
                audit_events.DENIED,
                reason="account_inactive",
                ip_address=ip_address,
            )
            raise AccountInactive()

        user = self.lockout.record_success(user, now)
        await self._credential_call(
            "update_lock_state",
            self.credentials.update_lock_state,
            user.id,
            user.failed_login_attempts,
            user.locked_until,
            last_login_at=user.last_login_at,
        )
        tokens = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=tokens.session_id)
        self.audit.record(
            user.id,
            audit_events.USER_LOGIN_SUCCESS,
            "auth",
            audit_events.SUCCESS,
            session_id=tokens.session_id,
            ip_address=ip_address,
        )
        return tokens

    # -- rotation -----------------------------------------------------------

    async def _handle_reuse(self, user_id: str, session_id: str) -> None:
        self.logger.warning(
            "refresh_token_reuse_detected", user_id=user_id, session_id=session_id
        )
        revoked = 0
        if self.revoke_all_on_reuse:
            revoked = await self._session_call(
                "invalidate_all_for_user",
                self.sessions.invalidate_all_for_user(user_id, reason=REASON_REVOKED),
            )
        self.audit.record(
            user_id,
            audit_events.REFRESH_TOKEN_REUSE,
            "session",
            audit_events.DENIED,
            session_id=session_id,
            sessions_revoked=revoked,
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenError as exc:
            self.audit.record(
                None,
                audit_events.TOKEN_REFRESH_FAILED,
                "session",
                audit_events.FAILURE,
                reason="expired" if isinstance(exc, ExpiredToken) else "malformed",
            )
            raise InvalidRefreshToken() from exc

        session = await self._session_call(
            "claim", self.sessions.claim(claims.session_id, reason=REASON_ROTATED)
        )
        if session is None:
            reason = await self._session_call(
                "invalidation_reason", self.sessions.invalidation_reason(claims.session_id)
            )
            if reason == REASON_ROTATED:
                await self._handle_reuse(claims.user_id, claims.session_id)
            self.audit.record(
                claims.user_id,
                audit_events.TOKEN_REFRESH_FAILED,
                "session",
                audit_events.FAILURE,
                reason=reason or "session_not_found",
                session_id=claims.session_id,
            )
            raise InvalidSession()

        if session.user_id != claims.user_id or session.token_version != claims.token_version:
            self.logger.warning(
                "refresh_session_mismatch",
                user_id=claims.user_id,
                session_id=claims.session_id,
            )
            raise InvalidSession()

        user = await self._credential_call("get_user", self.credentials.get_user, session.user_id)
        if user is None or not user.is_active:
            raise InvalidSession()

        tokens = await self._start_session(
            user,
            ip_address=ip_address or session.ip_address,
            user_agent=user_agent or session.user_agent,
            token_version=session.token_version + 1,
        )
        self.audit.record(
            user.id,
            audit_events.TOKEN_REFRESH,
            "session",
            audit_events.SUCCESS,
            old_session_id=session.id,
            session_id=tokens.session_id,
        )
        return tokens

    # -- logout -------------------------------------------------------------

    async def logout(self, refresh_token: str) -> None:
        """Invalidate the token's session; already-gone sessions still succeed."""
        try:
            claims = self.codec.verify_refresh(refresh_token, allow_expired=True)
        except TokenError as exc:
            raise InvalidRefreshToken() from exc
        removed = await self._session_call(
            "invalidate", self.sessions.invalidate(claims.session_id, reason=REASON_LOGOUT)
        )
        self.audit.record(
            claims.user_id,
            audit_events.USER_LOGOUT,
            "session",
            audit_events.SUCCESS,
            session_id=claims.session_id,
            already_invalid=not removed,
        )

    async def logout_all(self, user_id: str) -> int:
        count = await self._session_call(
            "invalidate_all_for_user",
            self.sessions.invalidate_all_for_user(user_id, reason=REASON_REVOKED),
        )
        self.logger.info("sessions_revoked", user_id=user_id, count=count)
        self.audit.record(
            user_id,
            audit_events.ALL_SESSIONS_LOGOUT,
            "session",
            audit_events.SUCCESS,
            sessions_revoked=count,
        )
        return count

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self._session_call("list_for_user", self.sessions.list_for_user(user_id))

    # -- access -------------------------------------------------------------

    async def authenticate(self, access_token: str) -> AuthContext:
        try:
            claims = self.codec.verify_access(access_token)
        except TokenError as exc:
            raise InvalidAccessToken() from exc

        session = await self._session_call("get", self.sessions.get(claims.session_id))
        if session is None or not session.is_active or session.user_id != claims.user_id:
            raise InvalidSession()
        # Touch keeps the original expiry so the session never outlives its refresh token
        remaining = self._remaining_ttl(session)
        if remaining <= 0:
            raise InvalidSession()
        session.last_activity = self._now()
        if not await self._session_call("update", self.sessions.update(session, remaining)):
            # Invalidated between the read and the touch
            raise InvalidSession()
        return AuthContext(
            user_id=claims.user_id,
            role=claims.role,
            session_id=claims.session_id,
            permissions=list(claims.permissions),
        )

    def check_permission(
        self,
        context: AuthContext,
        resource: str,
        action: str,
        scope: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        allowed = self.rbac.has_permission(context, resource, action, scope)
        self.audit.record(
            context.user_id,
            audit_events.ACCESS_GRANTED if allowed else audit_events.ACCESS_DENIED,
            resource,
            audit_events.SUCCESS if allowed else audit_events.DENIED,
            permission=f"{action}:{resource}",
            role=context.role,
        )
        return allowed

    async def authorize(
        self,
        access_token: str,
        resource: str,
        action: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Return whether the token holder may perform ``action`` on ``resource``.

        A denial is a normal ``False``; invalid tokens and dead sessions raise.
        """
        auth_ctx = await self.authenticate(access_token)
        return self.check_permission(auth_ctx, resource, action, context)

    # -- credentials management ---------------------------------------------

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and end every session; returns sessions ended."""
        user = await self._credential_call("get_user", self.credentials.get_user, user_id)
        if user is None:
            raise InvalidCredentials()
        if not await self._verify_password(current_password, user.password_hash):
            self.audit.record(
                user_id,
                audit_events.PASSWORD_CHANGE,
                "auth",
                audit_events.FAILURE,
                reason="invalid_password",
            )
            raise InvalidCredentials()
        self.password_policy.validate(new_password)
        if new_password == current_password:
            raise WeakPassword(failed=["must_differ"])

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        await self._credential_call(
            "update_password", self.credentials.update_password, user_id, password_hash
        )
        await self._credential_call(
            "update_lock_state", self.credentials.update_lock_state, user_id, 0, None
        )
        revoked = await self._session_call(
            "invalidate_all_for_user",
            self.sessions.invalidate_all_for_user(user_id, reason=REASON_REVOKED),
        )
        self.audit.record(
            user_id,
            audit_events.PASSWORD_CHANGE,
            "auth",
            audit_events.SUCCESS,
            sessions_revoked=revoked,
        )
        return revoked

    async def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        """Change a role; live sessions end so new tokens carry the new role."""
        self._ensure_known_role(role)
        user = await self._credential_call(
            "update_user_role", self.credentials.update_user_role, user_id, role
        )
        if user is None:
            return None
        await self._session_call(
            "invalidate_all_for_user",
            self.sessions.invalidate_all_for_user(user_id, reason=REASON_REVOKED),
        )
        self.logger.info("user_role_updated", user_id=user_id, role=role)
        return user
