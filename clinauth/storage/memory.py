from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from clinauth.service.lockout import count_failure
from clinauth.storage.base import REASON_LOGOUT, REASON_REVOKED, REASON_ROTATED
from clinauth.storage.errors import ConstraintViolation
from clinauth.storage.models import Session, User

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryCredentialStore:
    """In-process user store for tests and local development."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str,
        is_active: bool = True,
    ) -> User:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            return copy.copy(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(self._normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return copy.copy(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def update_lock_state(
        self,
        user_id: str,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            updated = replace(
                user,
                failed_login_attempts=failed_login_attempts,
                locked_until=locked_until,
            )
            if last_login_at is not None:
                updated.last_login_at = last_login_at
            self.users[user_id] = updated

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = count_failure(
                user, threshold=threshold, lock_until=lock_until, now=now
            )
            self.users[user_id] = updated
            return copy.copy(updated)

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                self.users[user_id] = replace(user, password_hash=password_hash)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, role=role)
            self.users[user_id] = updated
            return copy.copy(updated)

    def set_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                self.users[user_id] = replace(user, is_active=is_active)


class MemorySessionStore:
    """Dict-backed session store with per-key expiry.

    Expiry is evaluated lazily against ``clock`` so tests can move time
    forward without sleeping.
    """

    def __init__(self, *, tombstone_ttl_seconds: int, clock: Clock | None = None) -> None:
        self._clock = clock or _utcnow
        self.tombstone_ttl_seconds = tombstone_ttl_seconds
        self._sessions: Dict[str, Tuple[Session, datetime]] = {}
        self._tombstones: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, session_id: str) -> Optional[Session]:
        entry = self._sessions.get(session_id)
        if not entry:
            return None
        session, expires_at = entry
        if expires_at <= self._clock():
            self._sessions.pop(session_id, None)
            return None
        return session

    def _tombstone(self, session_id: str, reason: str) -> None:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._tombstones.items() if expires_at <= now]
        for sid in expired:
            del self._tombstones[sid]
        self._tombstones[session_id] = (
            reason,
            now + timedelta(seconds=self.tombstone_ttl_seconds),
        )

    async def create(self, session: Session, ttl_seconds: int) -> None:
        with self._lock:
            if self._live_entry(session.id) or session.id in self._tombstones:
                raise ConstraintViolation(
                    "session id already used", {"session_id": session.id}
                )
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
            self._sessions[session.id] = (copy.copy(session), expires_at)

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._live_entry(session_id)
            return copy.copy(session) if session else None

    async def update(self, session: Session, ttl_seconds: int) -> bool:
        with self._lock:
            if not self._live_entry(session.id):
                return False
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
            self._sessions[session.id] = (copy.copy(session), expires_at)
            return True

    async def invalidate(self, session_id: str, *, reason: str = REASON_LOGOUT) -> bool:
        with self._lock:
            session = self._live_entry(session_id)
            self._sessions.pop(session_id, None)
            if session is None:
                return False
            self._tombstone(session_id, reason)
            return True

    async def claim(
        self, session_id: str, *, reason: str = REASON_ROTATED
    ) -> Optional[Session]:
        with self._lock:
            session = self._live_entry(session_id)
            if session is None or not session.is_active:
                return None
            self._sessions.pop(session_id, None)
            self._tombstone(session_id, reason)
            return copy.copy(session)

    async def invalidate_all_for_user(
        self, user_id: str, *, reason: str = REASON_REVOKED
    ) -> int:
        with self._lock:
            targets = [
                sid
                for sid, (session, _) in self._sessions.items()
                if session.user_id == user_id
            ]
            for sid in targets:
                self._sessions.pop(sid, None)
                self._tombstone(sid, reason)
            return len(targets)

    async def list_for_user(self, user_id: str) -> List[Session]:
        with self._lock:
            live = []
            for sid in list(self._sessions):
                session = self._live_entry(sid)
                if session and session.user_id == user_id:
                    live.append(copy.copy(session))
            return live

    async def invalidation_reason(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._tombstones.get(session_id)
            if not entry:
                return None
            reason, expires_at = entry
            if expires_at <= self._clock():
                self._tombstones.pop(session_id, None)
                return None
            return reason

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._tombstones.clear()
