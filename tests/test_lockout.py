from datetime import datetime, timedelta, timezone

import pytest

from clinauth.service.lockout import LockoutPolicy, count_failure
from clinauth.storage.models import User

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return LockoutPolicy(threshold=5, duration=timedelta(minutes=30))


@pytest.fixture
def user():
    return User(id="u1", email="bob@example.com", password_hash="x")


def _fail(policy, user, now=NOW):
    return count_failure(
        user, threshold=policy.threshold, lock_until=policy.lock_deadline(now), now=now
    )


def test_failures_below_threshold_do_not_lock(policy, user):
    for _ in range(4):
        user = _fail(policy, user)

    assert user.failed_login_attempts == 4
    assert user.locked_until is None
    assert not policy.is_locked(user, NOW)


def test_fifth_failure_locks_for_duration(policy, user):
    for _ in range(5):
        user = _fail(policy, user)

    assert user.locked_until == NOW + timedelta(minutes=30)
    assert policy.is_locked(user, NOW)
    assert policy.is_locked(user, NOW + timedelta(minutes=29, seconds=59))
    assert not policy.is_locked(user, NOW + timedelta(minutes=30))


def test_count_failure_returns_a_new_user(policy, user):
    updated = _fail(policy, user)

    assert updated is not user
    assert user.failed_login_attempts == 0


def test_record_success_clears_counter_and_lock(policy, user):
    for _ in range(5):
        user = _fail(policy, user)

    user = policy.record_success(user, NOW)

    assert user.failed_login_attempts == 0
    assert user.locked_until is None
    assert user.last_login_at == NOW


def test_failure_after_elapsed_lock_starts_a_fresh_count(policy, user):
    for _ in range(5):
        user = _fail(policy, user)

    still_locked = _fail(policy, user, NOW + timedelta(minutes=10))
    assert still_locked.failed_login_attempts == 6
    assert still_locked.locked_until == NOW + timedelta(minutes=40)

    later = NOW + timedelta(minutes=31)
    restarted = _fail(policy, user, later)
    assert restarted.failed_login_attempts == 1
    assert restarted.locked_until is None
    assert not policy.is_locked(restarted, later)


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        LockoutPolicy(threshold=0)
