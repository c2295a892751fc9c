from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from clinauth.config import Settings, get_settings, reset_settings_cache
from clinauth.logging import get_logger
from clinauth.service.audit import AuditSink, AuditTrail, StructlogAuditSink
from clinauth.service.auth import AuthService
from clinauth.service.passwords import Argon2Hasher
from clinauth.service.rbac import RBACResolver, default_policy
from clinauth.storage.base import CredentialStore, SessionStore
from clinauth.storage.memory import MemoryCredentialStore, MemorySessionStore
from clinauth.storage.postgres import PostgresCredentialStore
from clinauth.storage.redis_sessions import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the stores and services shared by every request.

    This is the only place that chooses between the in-memory and the
    networked store implementations.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.credentials: CredentialStore
        self.sessions: SessionStore
        if self.settings.use_memory_store:
            self.credentials = MemoryCredentialStore()
            self.sessions = MemorySessionStore(
                tombstone_ttl_seconds=self.settings.refresh_token_ttl_seconds,
                clock=clock,
            )
        else:
            try:
                credentials = PostgresCredentialStore(
                    self.settings.database_url,
                    operation_timeout=self.settings.store_timeout_seconds,
                )
                credentials.ensure_schema()
                sessions = RedisSessionStore(
                    self.settings.redis_url,
                    tombstone_ttl_seconds=self.settings.refresh_token_ttl_seconds,
                    operation_timeout=self.settings.store_timeout_seconds,
                )
                sessions.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    database_url=_mask_url_password(self.settings.database_url),
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.credentials = credentials
            self.sessions = sessions
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres+redis",
        )

        self.audit = AuditTrail(audit_sink or StructlogAuditSink(), clock=clock)
        # Policy tables are built once and never mutated afterwards
        self.rbac = RBACResolver(default_policy())
        self.auth = AuthService.from_settings(
            self.settings,
            self.credentials,
            self.sessions,
            self.rbac,
            Argon2Hasher(),
            self.audit,
            clock=clock,
        )

    async def close(self) -> None:
        await self.sessions.close()
        close_credentials = getattr(self.credentials, "close", None)
        if close_credentials is not None:
            close_credentials()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(runtime_override: Runtime | None = None) -> Runtime:
    """Replace the Runtime singleton; refused outside TEST_MODE."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = runtime_override or Runtime(settings)
        return runtime
