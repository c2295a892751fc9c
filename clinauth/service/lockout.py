"""Account lockout policy.

Pure functions over a user's failed-attempt counter and lockout timestamp.
Nothing here reads or writes a store.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from clinauth.storage.models import User

DEFAULT_THRESHOLD = 5
DEFAULT_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = DEFAULT_THRESHOLD
    duration: timedelta = DEFAULT_DURATION

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be >= 1")

    def is_locked(self, user: User, now: datetime) -> bool:
        return user.locked_until is not None and user.locked_until > now

    def lock_deadline(self, now: datetime) -> datetime:
        return now + self.duration

    def record_success(self, user: User, now: datetime) -> User:
        return replace(
            user, failed_login_attempts=0, locked_until=None, last_login_at=now
        )


def count_failure(
    user: User, *, threshold: int, lock_until: datetime, now: datetime
) -> User:
    """Count a failed attempt; an elapsed lock starts a fresh count.

    Reaching ``threshold`` locks the account until ``lock_until``. Stores
    apply this under their own write lock.
    """
    attempts = user.failed_login_attempts + 1
    locked_until = user.locked_until
    if locked_until is not None and locked_until <= now:
        attempts, locked_until = 1, None
    if attempts >= threshold:
        locked_until = lock_until
    return replace(user, failed_login_attempts=attempts, locked_until=locked_until)
