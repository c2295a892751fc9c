from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from clinauth.storage.models import Session, User

# Tombstone reasons recorded when a session stops being live
REASON_LOGOUT = "logout"
REASON_ROTATED = "rotated"
REASON_REVOKED = "revoked"


class CredentialStore(Protocol):
    """Relational user-record store consumed by the auth core."""

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str,
        is_active: bool = True,
    ) -> User: ...

    def update_lock_state(
        self,
        user_id: str,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> None: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        """Atomically count one failed login and return the updated user.

        An elapsed lock restarts the count at 1. Reaching ``threshold``
        sets ``locked_until`` to ``lock_until``.
        """
        ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_active(self, user_id: str, is_active: bool) -> None: ...


class SessionStore(Protocol):
    """TTL key-value store holding live sessions.

    Missing and expired keys read as ``None``. Backend failures raise
    ``StoreUnavailable`` (or ``StoreTimeout``) from every method.
    """

    async def create(self, session: Session, ttl_seconds: int) -> None: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def update(self, session: Session, ttl_seconds: int) -> bool: ...

    async def invalidate(self, session_id: str, *, reason: str = REASON_LOGOUT) -> bool: ...

    async def claim(
        self, session_id: str, *, reason: str = REASON_ROTATED
    ) -> Optional[Session]:
        """Atomically take a live session out of the store.

        Exactly one concurrent caller receives the session; every other
        caller receives ``None``.
        """
        ...

    async def invalidate_all_for_user(
        self, user_id: str, *, reason: str = REASON_REVOKED
    ) -> int: ...

    async def list_for_user(self, user_id: str) -> List[Session]: ...

    async def invalidation_reason(self, session_id: str) -> Optional[str]: ...

    async def close(self) -> None: ...
